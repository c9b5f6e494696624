"""Match endpoints: config download, summary, veto and admin actions."""

from typing import Any

from fastapi import APIRouter, Query

from orchestrator.api.deps import AdminAuth, ConfigAuth, Engine
from orchestrator.schemas import ErrorResponse, MatchResponse, VetoActionRequest
from orchestrator.tournament.models import TeamSlot
from orchestrator.utils.json_utils import ORJSONResponse

router = APIRouter(prefix="/matches", tags=["Matches"])


# Registered before "/{slug}" so the suffix is not swallowed by the slug
@router.get(
    "/{slug}.json",
    dependencies=[ConfigAuth],
    responses={
        401: {"model": ErrorResponse, "description": "Invalid bearer token"},
        404: {"model": ErrorResponse, "description": "Match or config not found"},
    },
)
async def get_match_config(slug: str, engine: Engine) -> ORJSONResponse:
    """MatchZy match configuration, fetched by the server via ``matchzy_loadmatch_url``."""
    config = await engine.get_match_config(slug)
    return ORJSONResponse(content=config.to_dict())


@router.get(
    "/{slug}",
    response_model=MatchResponse,
    responses={404: {"model": ErrorResponse, "description": "Match not found"}},
)
async def get_match(slug: str, engine: Engine) -> MatchResponse:
    return MatchResponse.from_match(await engine.get_match(slug))


# =============================================================================
# Veto
# =============================================================================


@router.get(
    "/{slug}/veto",
    responses={
        404: {"model": ErrorResponse, "description": "Match not found"},
        409: {"model": ErrorResponse, "description": "Veto not started"},
    },
)
async def get_veto(
    slug: str,
    engine: Engine,
    team: TeamSlot = Query(..., description="Viewing team (team1 or team2)"),
) -> dict[str, Any]:
    """Veto state from the viewing team's perspective."""
    return await engine.veto_view(slug, team)


@router.post(
    "/{slug}/veto",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid veto action"},
        404: {"model": ErrorResponse, "description": "Match not found"},
        409: {"model": ErrorResponse, "description": "Veto not started"},
    },
)
async def submit_veto_action(
    slug: str,
    request_body: VetoActionRequest,
    engine: Engine,
) -> dict[str, Any]:
    """Apply one ban, pick or side choice. Completing the veto readies the match."""
    state = await engine.submit_veto_action(
        slug,
        request_body.team,
        request_body.action,
        request_body.map_name,
        request_body.side,
    )
    return state.view_for(request_body.team)


@router.post(
    "/{slug}/veto/simulate",
    dependencies=[AdminAuth],
    responses={404: {"model": ErrorResponse, "description": "Match not found"}},
)
async def simulate_veto(slug: str, engine: Engine) -> dict[str, Any]:
    """Play the remaining veto steps with random legal actions."""
    state = await engine.simulate_veto(slug)
    return state.to_dict()


# =============================================================================
# Admin actions
# =============================================================================


@router.post(
    "/{slug}/allocate",
    dependencies=[AdminAuth],
    responses={
        404: {"model": ErrorResponse, "description": "Match not found"},
        409: {"model": ErrorResponse, "description": "Match is not ready"},
    },
)
async def allocate_match(slug: str, engine: Engine) -> dict[str, Any]:
    """Load one ready match onto the first available server."""
    result = await engine.allocate_match(slug)
    return result.to_dict()


@router.post(
    "/{slug}/restart",
    dependencies=[AdminAuth],
    responses={
        404: {"model": ErrorResponse, "description": "Match not found"},
        409: {"model": ErrorResponse, "description": "Match is not loaded or live"},
    },
)
async def restart_match(slug: str, engine: Engine) -> dict[str, Any]:
    """End the match on its server, return it to ready and reallocate."""
    summary = await engine.restart_match(slug)
    return summary.to_dict()
