"""Server pool and team roster administration (X-Admin-Key)."""

from typing import Any

from fastapi import APIRouter

from orchestrator.api.deps import AdminAuth, Engine
from orchestrator.schemas import (
    ErrorResponse,
    PlayerRequest,
    SaveServerRequest,
    SaveTeamRequest,
    ServerResponse,
    TeamResponse,
)
from orchestrator.tournament.models import Player, Server, Team

router = APIRouter(tags=["Servers"], dependencies=[AdminAuth])


@router.get("/servers/availability")
async def server_availability(engine: Engine) -> dict[str, Any]:
    """Probe every enabled server and report which ones can take a match."""
    servers = await engine.server_availability()
    return {
        "servers": servers,
        "available": sum(1 for s in servers if s["available"]),
        "total": len(servers),
    }


@router.put(
    "/servers/{server_id}",
    response_model=ServerResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid server"}},
)
async def save_server(server_id: str, request_body: SaveServerRequest, engine: Engine) -> ServerResponse:
    """Register or update a server. Occupancy is kept as allocation left it."""
    server = await engine.save_server(
        Server(
            id=server_id,
            name=request_body.name,
            host=request_body.host,
            port=request_body.port,
            password=request_body.password,
            enabled=request_body.enabled,
            matchzy_config=dict(request_body.matchzy_config),
        )
    )
    return ServerResponse.from_server(server)


@router.put(
    "/teams/{team_id}",
    response_model=TeamResponse,
    responses={400: {"model": ErrorResponse, "description": "Invalid roster"}},
)
async def save_team(team_id: str, request_body: SaveTeamRequest, engine: Engine) -> TeamResponse:
    """Create or replace a team roster; its players are registered too."""
    players = tuple(
        Player(steam_id=p.steam_id, name=p.name, rating=p.rating) for p in request_body.players
    )
    await engine.register_players(players)
    team = await engine.save_team(
        Team(id=team_id, name=request_body.name, tag=request_body.tag, players=players)
    )
    return TeamResponse.from_team(team)


@router.put("/players")
async def register_players(request_body: list[PlayerRequest], engine: Engine) -> dict[str, Any]:
    """Register players for shuffle tournaments (ratings are read-only here)."""
    await engine.register_players(
        [Player(steam_id=p.steam_id, name=p.name, rating=p.rating) for p in request_body]
    )
    return {"registered": len(request_body)}
