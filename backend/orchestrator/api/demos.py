"""Demo uploads from game servers."""

from typing import Any

from fastapi import APIRouter, Request, status

from orchestrator.api.deps import Engine, WebhookAuth
from orchestrator.schemas import ErrorResponse
from orchestrator.utils.errors import ErrorCode, ValidationError

router = APIRouter(prefix="/demos", tags=["Demos"])

# MatchZy sends its own headers; older Get5-compatible builds use the Get5 names
FILENAME_HEADERS = ("MatchZy-FileName", "Get5-FileName")
MATCH_ID_HEADERS = ("MatchZy-MatchId", "Get5-MatchId")
MAP_NUMBER_HEADERS = ("MatchZy-MapNumber", "Get5-MapNumber")


def _header(request: Request, names: tuple[str, ...]) -> str | None:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None


@router.post(
    "/{slug}/upload",
    dependencies=[WebhookAuth],
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Missing upload headers"},
        401: {"model": ErrorResponse, "description": "Invalid webhook token"},
        404: {"model": ErrorResponse, "description": "Match not found"},
    },
)
async def upload_demo(slug: str, request: Request, engine: Engine) -> dict[str, Any]:
    """Stream the request body to the demo store."""
    filename = _header(request, FILENAME_HEADERS)
    if not filename:
        raise ValidationError(
            "Missing demo filename header",
            {"expected": list(FILENAME_HEADERS)},
            code=ErrorCode.INVALID_PAYLOAD,
        )

    header_match = _header(request, MATCH_ID_HEADERS)
    if header_match and header_match != slug:
        raise ValidationError(
            "Match id header does not match the upload path",
            {"path": slug, "header": header_match},
            code=ErrorCode.INVALID_PAYLOAD,
        )

    raw_map = _header(request, MAP_NUMBER_HEADERS)
    map_number = int(raw_map) + 1 if raw_map and raw_map.isdigit() else None

    stored = await engine.store_demo(slug, filename, map_number, request.stream())
    return {"matchSlug": slug, "mapNumber": map_number, **stored}
