"""API dependencies for authentication and engine access."""

import secrets
import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from orchestrator.config import Settings, get_settings
from orchestrator.tournament.engine import OrchestrationEngine
from orchestrator.tournament.matchzy import WEBHOOK_HEADER
from orchestrator.utils.errors import WebhookAuthError

# HTTP Bearer security scheme (match config fetched by game servers)
security = HTTPBearer(auto_error=False)


def get_trace_id(x_trace_id: Annotated[str | None, Header()] = None) -> str:
    """Get or generate trace ID for request tracking."""
    return x_trace_id or str(uuid.uuid4())


def get_engine(request: Request) -> OrchestrationEngine:
    """Return the engine created during application startup."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": {
                    "code": "SERVICE_UNAVAILABLE",
                    "message": "Orchestration engine is not running",
                    "details": {},
                }
            },
        )
    return engine


def _matches(provided: str | None, expected: str) -> bool:
    return provided is not None and secrets.compare_digest(provided, expected)


async def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Require the admin API key in ``X-Admin-Key``.

    Raises:
        HTTPException: If the key is missing or wrong
    """
    if not _matches(x_admin_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "UNAUTHORIZED",
                    "message": "Invalid or missing admin key",
                    "details": {},
                }
            },
        )


async def require_webhook_token(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Require the shared webhook secret configured on the game servers."""
    if not _matches(request.headers.get(WEBHOOK_HEADER), settings.webhook_token):
        raise WebhookAuthError()


async def require_config_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Match config downloads authenticate with ``Authorization: Bearer <webhook token>``."""
    token = credentials.credentials if credentials else None
    if not _matches(token, settings.webhook_token):
        raise WebhookAuthError("Invalid or missing bearer token")


# Type aliases for cleaner dependency injection
Engine = Annotated[OrchestrationEngine, Depends(get_engine)]
TraceId = Annotated[str, Depends(get_trace_id)]
AdminAuth = Depends(require_admin)
WebhookAuth = Depends(require_webhook_token)
ConfigAuth = Depends(require_config_token)
