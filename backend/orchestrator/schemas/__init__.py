"""Pydantic schemas for API requests, responses and webhook payloads."""

from orchestrator.schemas.common import (
    BaseSchema,
    ErrorDetail,
    ErrorResponse,
    SuccessResponse,
)
from orchestrator.schemas.events import (
    EventAck,
    EventModel,
    MatchZyEvent,
    parse_event,
)
from orchestrator.schemas.requests import (
    CreateTournamentRequest,
    PlayerRequest,
    SaveServerRequest,
    SaveTeamRequest,
    TournamentSettingsRequest,
    VetoActionRequest,
    VetoStepRequest,
)
from orchestrator.schemas.responses import (
    BracketResponse,
    HealthCheckResponse,
    MatchListResponse,
    MatchResponse,
    ServerResponse,
    TeamResponse,
    TournamentResponse,
)

__all__ = [
    # Common
    "BaseSchema",
    "ErrorDetail",
    "ErrorResponse",
    "SuccessResponse",
    # Events
    "EventAck",
    "EventModel",
    "MatchZyEvent",
    "parse_event",
    # Requests
    "CreateTournamentRequest",
    "PlayerRequest",
    "SaveServerRequest",
    "SaveTeamRequest",
    "TournamentSettingsRequest",
    "VetoActionRequest",
    "VetoStepRequest",
    # Responses
    "BracketResponse",
    "HealthCheckResponse",
    "MatchListResponse",
    "MatchResponse",
    "ServerResponse",
    "TeamResponse",
    "TournamentResponse",
]
