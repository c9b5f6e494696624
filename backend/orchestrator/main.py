"""FastAPI application entry point.

CS2 tournament orchestrator: brackets, veto, server allocation over RCON
and MatchZy webhook ingestion.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from orchestrator.api import api_router
from orchestrator.config import Settings, get_settings
from orchestrator.logging_config import configure_logging, get_logger
from orchestrator.schemas import HealthCheckResponse
from orchestrator.tournament.distributed_lock import LockAcquisitionError
from orchestrator.tournament.engine import OrchestrationEngine
from orchestrator.tournament.repository import InMemoryRepository, TournamentRepository
from orchestrator.tournament.sql_repository import SqlRepository
from orchestrator.utils import db
from orchestrator.utils.errors import ErrorCode, OrchestratorError
from orchestrator.utils.json_utils import ORJSONResponse
from orchestrator.utils.redis_client import close_redis, get_redis_client, init_redis

APP_VERSION = "1.0.0"

logger = get_logger(__name__)


# =============================================================================
# Lifespan Events
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    settings: Settings = app.state.settings
    logger.info("application_starting", env=settings.app_env)

    try:
        repository: TournamentRepository
        if settings.database_url:
            session_factory = await db.init_db(settings)
            repository = SqlRepository(session_factory)
            logger.info("database_connected")
        else:
            repository = InMemoryRepository()
            logger.warning("database_not_configured", detail="using in-memory repository")

        redis_instance = None
        if settings.redis_url:
            redis_instance = await init_redis(settings)
            logger.info("redis_connected")
        else:
            logger.warning("redis_not_configured", detail="using process-local locks")

        engine = OrchestrationEngine.from_settings(settings, repository, redis_instance)
        await engine.initialize()
        app.state.engine = engine

        logger.info("application_started")
    except Exception as e:
        logger.error("startup_failed", error=str(e))
        raise

    yield

    logger.info("application_stopping")
    try:
        await app.state.engine.shutdown()
        await close_redis()
        await db.close_db()
        logger.info("application_stopped")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


# =============================================================================
# Middleware
# =============================================================================


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware to add X-Request-ID header to all requests and responses."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = datetime.now(timezone.utc)

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        duration = (datetime.now(timezone.utc) - start_time).total_seconds()
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration=round(duration, 3),
            request_id=request_id,
        )
        return response


# =============================================================================
# Error Handlers
# =============================================================================

HTTP_STATUS_BY_CODE = {
    ErrorCode.INVALID_REQUEST.value: status.HTTP_400_BAD_REQUEST,
    ErrorCode.VALIDATION_FAILED.value: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_BRACKET.value: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_VETO_ACTION.value: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_PAYLOAD.value: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED.value: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.FORBIDDEN.value: status.HTTP_403_FORBIDDEN,
    ErrorCode.TOURNAMENT_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.MATCH_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.SERVER_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.TEAM_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_TOURNAMENT_STATE.value: status.HTTP_409_CONFLICT,
    ErrorCode.STATE_CONFLICT.value: status.HTTP_409_CONFLICT,
}


def get_request_id(request: Request) -> str:
    """Get request ID from request state or headers."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID", str(uuid.uuid4()))


def create_error_response(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    trace_id: str | None = None,
) -> dict[str, Any]:
    """Create standardized error response."""
    return {
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
        "traceId": trace_id,
    }


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> ORJSONResponse:
    """Handle domain errors raised by the engine."""
    trace_id = get_request_id(request)
    status_code = HTTP_STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    logger.warning(
        "orchestrator_error",
        code=exc.code,
        message=exc.message,
        status=status_code,
        trace_id=trace_id,
    )

    return ORJSONResponse(
        status_code=status_code,
        content=create_error_response(
            code=exc.code,
            message=exc.message,
            details=exc.details,
            trace_id=trace_id,
        ),
    )


async def lock_error_handler(request: Request, exc: LockAcquisitionError) -> ORJSONResponse:
    """Another operation holds the tournament; the caller may retry."""
    trace_id = get_request_id(request)
    logger.warning("lock_busy", error=str(exc), trace_id=trace_id)
    return ORJSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content=create_error_response(
            code="RESOURCE_BUSY",
            message="Another operation is in progress, retry shortly",
            trace_id=trace_id,
        ),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    """Request body / query validation failures."""
    trace_id = get_request_id(request)
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=create_error_response(
            code=ErrorCode.VALIDATION_FAILED.value,
            message="Request validation failed",
            details={"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
            ]},
            trace_id=trace_id,
        ),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> ORJSONResponse:
    """Handle HTTP exceptions."""
    trace_id = get_request_id(request)

    # Check if detail is already formatted
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        content = dict(exc.detail)
        content["traceId"] = trace_id
    else:
        content = create_error_response(
            code="HTTP_ERROR",
            message=str(exc.detail),
            trace_id=trace_id,
        )

    return ORJSONResponse(
        status_code=exc.status_code,
        content=content,
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    """Handle unexpected exceptions."""
    trace_id = get_request_id(request)

    logger.error(
        "unexpected_error",
        error_type=type(exc).__name__,
        error_message=str(exc),
        trace_id=trace_id,
        exc_info=True,
    )

    # Don't expose internal error details in production
    message = "Internal server error"
    if request.app.state.settings.app_debug:
        message = f"{type(exc).__name__}: {exc}"

    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            code=ErrorCode.INTERNAL_ERROR.value,
            message=message,
            trace_id=trace_id,
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    app.add_exception_handler(LockAcquisitionError, lock_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)


# =============================================================================
# Health Check
# =============================================================================


async def health_check(request: Request) -> dict[str, Any]:
    """Check application health status.

    Returns:
        Health status including database and Redis connectivity.
    """
    health_status: dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "services": {
            "database": "not configured",
            "redis": "not configured",
            "engine": "running" if getattr(request.app.state, "engine", None) else "stopped",
        },
    }

    overall_healthy = True

    if db.engine is not None:
        try:
            async with db.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["services"]["database"] = "healthy"
        except Exception as e:
            health_status["services"]["database"] = f"unhealthy: {e}"
            overall_healthy = False
            logger.error("database_health_check_failed", error=str(e))

    current_redis = get_redis_client()
    if current_redis is not None:
        try:
            await current_redis.ping()
            health_status["services"]["redis"] = "healthy"
        except Exception as e:
            health_status["services"]["redis"] = f"unhealthy: {e}"
            overall_healthy = False
            logger.error("redis_health_check_failed", error=str(e))

    if not overall_healthy:
        health_status["status"] = "degraded"

    return health_status


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the application; the engine itself is created by the lifespan."""
    settings = settings or get_settings()
    configure_logging(
        log_level=settings.log_level,
        json_logs=settings.app_env == "production",
        app_env=settings.app_env,
    )

    app = FastAPI(
        title="CS2 Tournament Orchestrator",
        version=APP_VERSION,
        description="Brackets, map veto, server allocation and MatchZy event ingestion",
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings

    app.add_middleware(RequestIDMiddleware)

    cors_origins = [origin.strip() for origin in settings.cors_origins.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Admin-Key"],
        expose_headers=["X-Request-ID"],
    )

    register_exception_handlers(app)
    app.add_api_route(
        "/health",
        health_check,
        methods=["GET"],
        response_model=HealthCheckResponse,
        tags=["Health"],
    )
    app.include_router(api_router)
    return app


app = create_app()


# =============================================================================
# Development / Production Server
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    if settings.app_debug:
        uvicorn.run(
            "orchestrator.main:app",
            host=settings.app_host,
            port=settings.app_port,
            reload=True,
            log_level=settings.log_level.lower(),
        )
    else:
        # One worker: the allocation loop and event bus live in this process
        uvicorn.run(
            "orchestrator.main:app",
            host=settings.app_host,
            port=settings.app_port,
            log_level=settings.log_level.lower(),
            access_log=True,
            timeout_keep_alive=5,
        )
