"""API request schemas."""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orchestrator.tournament.models import (
    MatchFormat,
    SeedingMethod,
    Side,
    TeamSlot,
    TournamentType,
    VetoActionKind,
)

# MatchZy map names (de_mirage, cs_office, workshop ids are not supported)
MAP_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")
STEAM_ID_PATTERN = re.compile(r"^\d{17}$")


class RequestSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# =============================================================================
# Teams & Players
# =============================================================================


class PlayerRequest(RequestSchema):
    """Roster entry."""

    steam_id: str = Field(..., alias="steamId", description="SteamID64")
    name: str = Field(..., min_length=1, max_length=64)
    rating: float = Field(default=1000.0, ge=0)

    @field_validator("steam_id")
    @classmethod
    def validate_steam_id(cls, v: str) -> str:
        if not STEAM_ID_PATTERN.match(v):
            raise ValueError("steamId must be a 17 digit SteamID64")
        return v


class SaveTeamRequest(RequestSchema):
    """Create or replace a team."""

    name: str = Field(..., min_length=1, max_length=100)
    tag: str | None = Field(default=None, max_length=16)
    players: list[PlayerRequest] = Field(default_factory=list)

    @field_validator("players")
    @classmethod
    def validate_unique_players(cls, v: list[PlayerRequest]) -> list[PlayerRequest]:
        ids = [p.steam_id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate players in roster")
        return v


# =============================================================================
# Servers
# =============================================================================


class SaveServerRequest(RequestSchema):
    """Register or update a game server."""

    name: str = Field(..., min_length=1, max_length=100)
    host: str = Field(..., min_length=1, max_length=255)
    port: int = Field(..., ge=1, le=65535)
    password: str = Field(..., min_length=1, max_length=255, description="RCON password")
    enabled: bool = True
    matchzy_config: dict[str, str] = Field(
        default_factory=dict,
        alias="matchzyConfig",
        description="Per-server MatchZy convar overrides",
    )


# =============================================================================
# Tournaments
# =============================================================================


class VetoStepRequest(RequestSchema):
    team: TeamSlot
    action: VetoActionKind


class TournamentSettingsRequest(RequestSchema):
    third_place_match: bool = Field(default=False, alias="thirdPlaceMatch")
    seeding_method: SeedingMethod = Field(default=SeedingMethod.RANDOM, alias="seedingMethod")
    veto_enabled: bool = Field(default=True, alias="vetoEnabled")
    custom_veto_order: dict[MatchFormat, list[VetoStepRequest]] = Field(
        default_factory=dict,
        alias="customVetoOrder",
    )
    swiss_rounds: int | None = Field(default=None, ge=1, alias="swissRounds")
    team_size: int = Field(default=5, ge=1, le=5, alias="teamSize")
    round_limit_type: str = Field(default="first_to_13", alias="roundLimitType")
    max_rounds: int = Field(default=24, ge=1, alias="maxRounds")
    overtime_enabled: bool = Field(default=True, alias="overtimeEnabled")

    @field_validator("round_limit_type")
    @classmethod
    def validate_round_limit_type(cls, v: str) -> str:
        if v not in ("first_to_13", "max_rounds"):
            raise ValueError("roundLimitType must be first_to_13 or max_rounds")
        return v


class CreateTournamentRequest(RequestSchema):
    """Create (or replace) the active tournament."""

    id: str | None = Field(default=None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=100)
    type: TournamentType
    format: MatchFormat
    maps: list[str] = Field(..., min_length=1)
    team_ids: list[str] = Field(default_factory=list, alias="teamIds")
    player_ids: list[str] = Field(default_factory=list, alias="playerIds")
    settings: TournamentSettingsRequest = Field(default_factory=TournamentSettingsRequest)

    @field_validator("maps")
    @classmethod
    def validate_maps(cls, v: list[str]) -> list[str]:
        for name in v:
            if not MAP_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid map name: {name}")
        return v

    @model_validator(mode="after")
    def validate_participants(self) -> "CreateTournamentRequest":
        if self.type == TournamentType.SHUFFLE:
            if len(self.player_ids) < 2 * self.settings.team_size:
                raise ValueError("Shuffle needs at least two full teams of players")
        elif len(self.team_ids) < 2:
            raise ValueError("At least two teams are required")
        return self


# =============================================================================
# Veto
# =============================================================================


class VetoActionRequest(RequestSchema):
    """One veto decision from a team."""

    team: TeamSlot
    action: VetoActionKind
    map_name: str | None = Field(default=None, alias="mapName")
    side: Side | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> "VetoActionRequest":
        if self.action == VetoActionKind.SIDE_PICK:
            if self.side is None:
                raise ValueError("side is required for side_pick")
        elif not self.map_name:
            raise ValueError("mapName is required for ban and pick")
        return self
