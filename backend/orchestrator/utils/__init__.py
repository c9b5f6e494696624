"""Utility modules."""

from orchestrator.utils.errors import ErrorCode, OrchestratorError
from orchestrator.utils.json_utils import ORJSONResponse, json_dumps, json_loads

__all__ = [
    "ErrorCode",
    "OrchestratorError",
    "ORJSONResponse",
    "json_dumps",
    "json_loads",
]
