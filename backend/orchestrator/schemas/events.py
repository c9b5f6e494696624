"""
MatchZy webhook payloads.

Payloads are validated here, at the HTTP boundary, into one model per
``event`` value. Events outside ``KNOWN_EVENTS`` are recorded by the
reconciler and otherwise ignored.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class EventModel(BaseModel):
    """Base for webhook payloads; unknown keys are kept for the event log."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    # MatchZy sends the numeric match id; some builds send it as a string
    matchid: Optional[Union[int, str]] = None


# =============================================================================
# Nested structures
# =============================================================================


class EventPlayer(BaseModel):
    model_config = ConfigDict(extra="allow")

    steamid: str
    name: str = ""
    user_id: Optional[int] = None
    side: Optional[str] = None


class PlayerStatLine(BaseModel):
    """One player's stats inside a map result."""

    model_config = ConfigDict(extra="allow")

    steamid: str
    name: str = ""
    stats: dict[str, int] = Field(default_factory=dict)


class EventTeamScore(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    name: Optional[str] = None
    series_score: int = 0
    score: int = 0
    score_ct: int = 0
    score_t: int = 0
    players: list[PlayerStatLine] = Field(default_factory=list)


class EventWinner(BaseModel):
    model_config = ConfigDict(extra="allow")

    side: Optional[str] = None
    team: Literal["team1", "team2"]


# =============================================================================
# Events
# =============================================================================


class SeriesStartEvent(EventModel):
    event: Literal["series_start"]
    num_maps: int = 1
    team1: Optional[EventTeamScore] = None
    team2: Optional[EventTeamScore] = None


class GoingLiveEvent(EventModel):
    event: Literal["going_live"]
    map_number: int = 0


class RoundEndEvent(EventModel):
    event: Literal["round_end"]
    map_number: int = 0
    round_number: int
    round_time: Optional[int] = None
    reason: Optional[int] = None
    winner: Optional[EventWinner] = None
    team1: EventTeamScore
    team2: EventTeamScore


class MapResultEvent(EventModel):
    event: Literal["map_result"]
    map_number: int = 0
    map_name: Optional[str] = None
    team1: EventTeamScore
    team2: EventTeamScore
    winner: Optional[EventWinner] = None


class SeriesEndEvent(EventModel):
    event: Literal["series_end"]
    team1_series_score: int = 0
    team2_series_score: int = 0
    winner: Optional[EventWinner] = None
    time_until_restore: Optional[int] = None


class PlayerConnectEvent(EventModel):
    event: Literal["player_connect"]
    player: EventPlayer


class PlayerDisconnectEvent(EventModel):
    event: Literal["player_disconnect"]
    player: EventPlayer


class DemoUploadEndedEvent(EventModel):
    event: Literal["demo_upload_ended"]
    map_number: int = 0
    filename: str
    success: bool = True


MatchZyEvent = Annotated[
    Union[
        SeriesStartEvent,
        GoingLiveEvent,
        RoundEndEvent,
        MapResultEvent,
        SeriesEndEvent,
        PlayerConnectEvent,
        PlayerDisconnectEvent,
        DemoUploadEndedEvent,
    ],
    Field(discriminator="event"),
]

KNOWN_EVENTS = frozenset(
    {
        "series_start",
        "going_live",
        "round_end",
        "map_result",
        "series_end",
        "player_connect",
        "player_disconnect",
        "demo_upload_ended",
    }
)

_event_adapter: TypeAdapter[Any] = TypeAdapter(MatchZyEvent)


def parse_event(payload: dict[str, Any]) -> Optional[EventModel]:
    """
    Validate a raw payload.

    Returns None for events this service does not handle.
    Raises pydantic.ValidationError for malformed known events.
    """
    if payload.get("event") not in KNOWN_EVENTS:
        return None
    return _event_adapter.validate_python(payload)


class EventAck(BaseModel):
    """Webhook response; always 200 so servers do not retry discarded events."""

    accepted: bool
    reason: Optional[str] = None
