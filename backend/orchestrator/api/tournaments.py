"""Tournament administration endpoints (X-Admin-Key)."""

from typing import Any

from fastapi import APIRouter, Query, status

from orchestrator.api.deps import AdminAuth, Engine
from orchestrator.schemas import (
    BracketResponse,
    CreateTournamentRequest,
    ErrorResponse,
    MatchListResponse,
    MatchResponse,
    SuccessResponse,
    TournamentResponse,
    TournamentSettingsRequest,
)
from orchestrator.tournament.models import TournamentSettings, VetoStep

router = APIRouter(prefix="/tournaments", tags=["Tournaments"], dependencies=[AdminAuth])


def _to_settings(request: TournamentSettingsRequest) -> TournamentSettings:
    return TournamentSettings(
        third_place_match=request.third_place_match,
        seeding_method=request.seeding_method,
        veto_enabled=request.veto_enabled,
        custom_veto_order={
            fmt.value: tuple(VetoStep(team=s.team, action=s.action) for s in steps)
            for fmt, steps in request.custom_veto_order.items()
        },
        swiss_rounds=request.swiss_rounds,
        team_size=request.team_size,
        round_limit_type=request.round_limit_type,
        max_rounds=request.max_rounds,
        overtime_enabled=request.overtime_enabled,
    )


@router.put(
    "",
    response_model=BracketResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid bracket or map pool"},
        404: {"model": ErrorResponse, "description": "Unknown team"},
        409: {"model": ErrorResponse, "description": "Another tournament is in progress"},
    },
)
async def create_tournament(request_body: CreateTournamentRequest, engine: Engine) -> BracketResponse:
    """Create the tournament and generate its bracket.

    Replaces a previous tournament that has not started yet.
    """
    tournament = await engine.create_tournament(
        name=request_body.name,
        tournament_type=request_body.type,
        match_format=request_body.format,
        maps=request_body.maps,
        team_ids=request_body.team_ids,
        player_ids=request_body.player_ids,
        settings=_to_settings(request_body.settings),
        tournament_id=request_body.id,
    )
    matches = await engine.list_matches(tournament.id)
    return BracketResponse(
        tournament=TournamentResponse.from_tournament(tournament),
        matches=[MatchResponse.from_match(m) for m in matches],
    )


@router.get(
    "/{tournament_id}",
    response_model=TournamentResponse,
    responses={404: {"model": ErrorResponse, "description": "Tournament not found"}},
)
async def get_tournament(tournament_id: str, engine: Engine) -> TournamentResponse:
    return TournamentResponse.from_tournament(await engine.get_tournament(tournament_id))


@router.get(
    "/{tournament_id}/matches",
    response_model=MatchListResponse,
    responses={404: {"model": ErrorResponse, "description": "Tournament not found"}},
)
async def list_matches(tournament_id: str, engine: Engine) -> MatchListResponse:
    matches = await engine.list_matches(tournament_id)
    return MatchListResponse(matches=[MatchResponse.from_match(m) for m in matches])


@router.delete(
    "/{tournament_id}",
    response_model=SuccessResponse,
    responses={404: {"model": ErrorResponse, "description": "Tournament not found"}},
)
async def delete_tournament(tournament_id: str, engine: Engine) -> SuccessResponse:
    """End any running matches, then delete the tournament and its matches."""
    await engine.delete_tournament(tournament_id)
    return SuccessResponse(message="Tournament deleted")


# =============================================================================
# Lifecycle operations
# =============================================================================


@router.post(
    "/{tournament_id}/start",
    responses={
        404: {"model": ErrorResponse, "description": "Tournament not found"},
        409: {"model": ErrorResponse, "description": "Tournament already started or finished"},
    },
)
async def start_tournament(tournament_id: str, engine: Engine) -> dict[str, Any]:
    """Open first-round matches and allocate every ready match.

    Matches that find no server are reported as failed and retried later.
    """
    summary = await engine.start_tournament(tournament_id)
    return summary.to_dict()


@router.post(
    "/{tournament_id}/restart",
    responses={
        404: {"model": ErrorResponse, "description": "Tournament not found"},
        409: {"model": ErrorResponse, "description": "Tournament finished"},
    },
)
async def restart_tournament(tournament_id: str, engine: Engine) -> dict[str, Any]:
    """End loaded/live matches, return them to ready and reallocate."""
    summary = await engine.restart_tournament(tournament_id)
    return summary.to_dict()


@router.post(
    "/{tournament_id}/reset",
    responses={404: {"model": ErrorResponse, "description": "Tournament not found"}},
)
async def reset_tournament(tournament_id: str, engine: Engine) -> dict[str, Any]:
    """Back to setup; the bracket and seeded teams are kept."""
    return await engine.reset_tournament(tournament_id)


@router.post(
    "/{tournament_id}/allocate",
    responses={
        404: {"model": ErrorResponse, "description": "Tournament not found"},
        409: {"model": ErrorResponse, "description": "Tournament finished"},
    },
)
async def allocate(tournament_id: str, engine: Engine) -> dict[str, Any]:
    """Run one allocation pass now."""
    summary = await engine.allocate(tournament_id)
    return summary.to_dict()


@router.post(
    "/{tournament_id}/bracket/regenerate",
    response_model=MatchListResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Tournament not found"},
        409: {"model": ErrorResponse, "description": "Tournament in progress (pass force=true)"},
    },
)
async def regenerate_bracket(
    tournament_id: str,
    engine: Engine,
    force: bool = Query(default=False, description="Allow regenerating a live tournament"),
) -> MatchListResponse:
    """Discard every match and generate a fresh bracket."""
    matches = await engine.regenerate_bracket(tournament_id, force=force)
    return MatchListResponse(matches=[MatchResponse.from_match(m) for m in matches])
