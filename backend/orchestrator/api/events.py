"""MatchZy webhook ingestion."""

from typing import Any

import pydantic
from fastapi import APIRouter, Request

from orchestrator.api.deps import Engine, WebhookAuth
from orchestrator.logging_config import clear_context, get_logger
from orchestrator.schemas import ErrorResponse, EventAck, parse_event
from orchestrator.utils.errors import ErrorCode, ValidationError
from orchestrator.utils.json_utils import json_loads

logger = get_logger(__name__)

router = APIRouter(prefix="/events", tags=["Events"])


@router.post(
    "/report",
    dependencies=[WebhookAuth],
    responses={401: {"model": ErrorResponse, "description": "Invalid webhook token"}},
)
async def ingest_report(request: Request, engine: Engine) -> EventAck:
    """Match report upload; stored against the match named by ``matchid``."""
    body = await request.body()
    try:
        payload = json_loads(body)
    except ValueError as e:
        raise ValidationError("Body is not valid JSON", code=ErrorCode.INVALID_PAYLOAD) from e
    if not isinstance(payload, dict):
        raise ValidationError("Report must be a JSON object", code=ErrorCode.INVALID_PAYLOAD)

    accepted = await engine.record_report(payload)
    return EventAck(accepted=accepted, reason=None if accepted else "unknown_match")


# Registered after "/report" so the literal path wins
@router.post(
    "/{slug}",
    response_model=EventAck,
    dependencies=[WebhookAuth],
    responses={
        400: {"model": ErrorResponse, "description": "Malformed payload"},
        401: {"model": ErrorResponse, "description": "Invalid webhook token"},
    },
)
async def ingest_event(slug: str, request: Request, engine: Engine) -> EventAck:
    """Apply one server event to the match it references.

    Late, duplicate and out-of-order events are acknowledged with
    ``accepted=false`` so the server does not retry them.
    """
    payload = await _read_payload(request)
    try:
        event = parse_event(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Malformed event payload",
            {"event": payload.get("event"), "errors": e.errors(include_url=False)},
            code=ErrorCode.INVALID_PAYLOAD,
        ) from e

    try:
        result = await engine.handle_server_event(slug, event, payload)
    finally:
        clear_context()
    return EventAck(accepted=result.accepted, reason=result.reason)


async def _read_payload(request: Request) -> dict[str, Any]:
    body = await request.body()
    try:
        payload = json_loads(body)
    except ValueError as e:
        raise ValidationError("Body is not valid JSON", code=ErrorCode.INVALID_PAYLOAD) from e
    if not isinstance(payload, dict) or "event" not in payload:
        raise ValidationError("Payload must be an object with an event field", code=ErrorCode.INVALID_PAYLOAD)
    return payload
