"""API response schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.schemas.common import BaseSchema
from orchestrator.tournament.models import Match, Server, Team, Tournament


class ResponseSchema(BaseSchema):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        serialize_by_alias=True,
    )


# =============================================================================
# Tournaments
# =============================================================================


class TournamentResponse(ResponseSchema):
    """Tournament summary."""

    id: str
    name: str
    type: str
    format: str
    status: str
    maps: list[str]
    team_ids: list[str] = Field(..., alias="teamIds")
    player_ids: list[str] = Field(..., alias="playerIds")
    settings: dict[str, Any]
    created_at: datetime = Field(..., alias="createdAt")
    started_at: datetime | None = Field(None, alias="startedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")

    @classmethod
    def from_tournament(cls, tournament: Tournament) -> "TournamentResponse":
        return cls(
            id=tournament.id,
            name=tournament.name,
            type=tournament.type.value,
            format=tournament.format.value,
            status=tournament.status.value,
            maps=list(tournament.maps),
            team_ids=list(tournament.team_ids),
            player_ids=list(tournament.player_ids),
            settings=tournament.settings.to_dict(),
            created_at=tournament.created_at,
            started_at=tournament.started_at,
            completed_at=tournament.completed_at,
        )


# =============================================================================
# Matches
# =============================================================================


class MatchResponse(ResponseSchema):
    """Bracket node as shown to admins and brackets UIs."""

    slug: str
    tournament_id: str = Field(..., alias="tournamentId")
    round: int
    match_number: int = Field(..., alias="matchNumber")
    match_id: int | None = Field(None, alias="matchId")
    bracket: str
    status: str
    team1_id: str | None = Field(None, alias="team1Id")
    team2_id: str | None = Field(None, alias="team2Id")
    winner_id: str | None = Field(None, alias="winnerId")
    server_id: str | None = Field(None, alias="serverId")
    team1_score: int = Field(0, alias="team1Score")
    team2_score: int = Field(0, alias="team2Score")
    veto_status: str | None = Field(None, alias="vetoStatus")
    maps: list[str] = Field(default_factory=list)
    connected_players: int = Field(0, alias="connectedPlayers")
    live: dict[str, Any] | None = None
    demo_file: str | None = Field(None, alias="demoFile")
    winner_to: dict[str, Any] | None = Field(None, alias="winnerTo")
    loser_to: dict[str, Any] | None = Field(None, alias="loserTo")
    loaded_at: datetime | None = Field(None, alias="loadedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")

    @classmethod
    def from_match(cls, match: Match) -> "MatchResponse":
        maps: list[str] = []
        if match.config is not None:
            maps = list(match.config.maplist)
        elif match.veto_state is not None:
            maps = [m.map_name for m in match.veto_state.picked_maps]
        return cls(
            slug=match.slug,
            tournament_id=match.tournament_id,
            round=match.round,
            match_number=match.match_number,
            match_id=match.match_id,
            bracket=match.bracket.value,
            status=match.status.value,
            team1_id=match.team1_id,
            team2_id=match.team2_id,
            winner_id=match.winner_id,
            server_id=match.server_id,
            team1_score=match.team1_score,
            team2_score=match.team2_score,
            veto_status=match.veto_state.status.value if match.veto_state else None,
            maps=maps,
            connected_players=len(match.connected_players),
            live=match.live_snapshot.to_dict() if match.live_snapshot else None,
            demo_file=match.demo_file,
            winner_to=match.winner_to.to_dict() if match.winner_to else None,
            loser_to=match.loser_to.to_dict() if match.loser_to else None,
            loaded_at=match.loaded_at,
            completed_at=match.completed_at,
        )


class MatchListResponse(BaseModel):
    matches: list[MatchResponse]


class BracketResponse(BaseModel):
    """Tournament together with its matches."""

    tournament: TournamentResponse
    matches: list[MatchResponse]


# =============================================================================
# Servers & Teams
# =============================================================================


class ServerResponse(ResponseSchema):
    """Server without its RCON password."""

    id: str
    name: str
    host: str
    port: int
    enabled: bool
    current_match: str | None = Field(None, alias="currentMatch")

    @classmethod
    def from_server(cls, server: Server) -> "ServerResponse":
        return cls(
            id=server.id,
            name=server.name,
            host=server.host,
            port=server.port,
            enabled=server.enabled,
            current_match=server.current_match,
        )


class TeamResponse(ResponseSchema):
    id: str
    name: str
    tag: str | None = None
    players: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_team(cls, team: Team) -> "TeamResponse":
        return cls(
            id=team.id,
            name=team.name,
            tag=team.tag,
            players=[p.to_dict() for p in team.players],
        )


# =============================================================================
# Health
# =============================================================================


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    timestamp: datetime
    services: dict[str, str] = Field(default_factory=dict)
