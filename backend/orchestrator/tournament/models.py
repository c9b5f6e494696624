"""
Orchestration Data Models.

Immutable state representations for tournaments, matches, servers and the
JSON blobs (veto state, match config) that travel with a match.
All mutations go through the repository.
"""

from enum import Enum, auto
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple, FrozenSet
from uuid import uuid4

from orchestrator.utils.errors import ErrorCode


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TournamentType(Enum):
    """Bracket topology."""

    SINGLE_ELIMINATION = "single_elimination"
    DOUBLE_ELIMINATION = "double_elimination"
    ROUND_ROBIN = "round_robin"
    SWISS = "swiss"
    SHUFFLE = "shuffle"  # ad hoc teams balanced per round


class TournamentStatus(Enum):
    """Tournament lifecycle states."""

    SETUP = "setup"
    READY = "ready"  # bracket generated
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MatchFormat(Enum):
    """Best-of-N series format."""

    BO1 = "bo1"
    BO3 = "bo3"
    BO5 = "bo5"

    @property
    def num_maps(self) -> int:
        return int(self.value[2:])


class MatchStatus(Enum):
    """Match lifecycle states (linear, see lifecycle.ALLOWED_TRANSITIONS)."""

    PENDING = "pending"
    READY = "ready"
    LOADED = "loaded"
    LIVE = "live"
    COMPLETED = "completed"


class BracketSide(Enum):
    """Which part of the bracket a match belongs to."""

    WINNERS = "winners"
    LOSERS = "losers"
    GRAND_FINAL = "grand_final"
    THIRD_PLACE = "third_place"
    ROUND_ROBIN = "round_robin"
    SWISS = "swiss"
    SHUFFLE = "shuffle"


class TeamSlot(Enum):
    TEAM1 = "team1"
    TEAM2 = "team2"

    @property
    def other(self) -> "TeamSlot":
        return TeamSlot.TEAM2 if self is TeamSlot.TEAM1 else TeamSlot.TEAM1


class Side(Enum):
    CT = "CT"
    T = "T"

    @property
    def opposite(self) -> "Side":
        return Side.T if self is Side.CT else Side.CT


class VetoActionKind(Enum):
    BAN = "ban"
    PICK = "pick"
    SIDE_PICK = "side_pick"


class VetoStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SeedingMethod(Enum):
    RANDOM = "random"
    MANUAL = "manual"


class ServerStatus(Enum):
    """Server status as reported by the MatchZy tournament convars."""

    IDLE = "idle"
    LOADING = "loading"
    WARMUP = "warmup"
    KNIFE = "knife"
    LIVE = "live"
    PAUSED = "paused"
    HALFTIME = "halftime"
    POSTGAME = "postgame"
    ERROR = "error"
    OFFLINE = "offline"  # probe failed


class OrchestratorEventType(Enum):
    """Event types for the orchestration event bus."""

    # Tournament
    BRACKET_GENERATED = auto()
    TOURNAMENT_STARTED = auto()
    TOURNAMENT_RESTARTED = auto()
    TOURNAMENT_RESET = auto()
    TOURNAMENT_DELETED = auto()
    TOURNAMENT_COMPLETED = auto()
    ROUND_GENERATED = auto()

    # Veto
    VETO_ACTION = auto()
    VETO_COMPLETED = auto()

    # Match lifecycle
    MATCH_READY = auto()
    MATCH_LOADED = auto()
    MATCH_LIVE = auto()
    MATCH_COMPLETED = auto()
    MATCH_RESET = auto()

    # Allocation / servers
    ALLOCATION_COMPLETED = auto()
    SERVER_EVENT_DISCARDED = auto()


# =============================================================================
# Teams & Players
# =============================================================================


@dataclass(frozen=True)
class Player:
    """A player as seen by the orchestrator (rating is read-only here)."""

    steam_id: str
    name: str
    rating: float = 1000.0
    matches_played: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steam_id": self.steam_id,
            "name": self.name,
            "rating": self.rating,
            "matches_played": self.matches_played,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Player":
        return cls(
            steam_id=str(data["steam_id"]),
            name=data.get("name", ""),
            rating=float(data.get("rating", 1000.0)),
            matches_played=int(data.get("matches_played", 0)),
        )


@dataclass(frozen=True)
class Team:
    """Team roster."""

    id: str
    name: str
    tag: Optional[str] = None
    players: Tuple[Player, ...] = ()

    @property
    def display_tag(self) -> str:
        return self.tag or self.name[:4].upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tag": self.tag,
            "players": [p.to_dict() for p in self.players],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Team":
        return cls(
            id=data["id"],
            name=data["name"],
            tag=data.get("tag"),
            players=tuple(Player.from_dict(p) for p in data.get("players", [])),
        )


# =============================================================================
# Veto State
# =============================================================================


@dataclass(frozen=True)
class VetoStep:
    """One canonical step: who acts and what they must do."""

    team: TeamSlot
    action: VetoActionKind

    def to_dict(self) -> Dict[str, Any]:
        return {"team": self.team.value, "action": self.action.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VetoStep":
        return cls(team=TeamSlot(data["team"]), action=VetoActionKind(data["action"]))


@dataclass(frozen=True)
class VetoAction:
    """A decision taken for a canonical step."""

    step: int  # 1-based
    team: TeamSlot
    action: VetoActionKind
    map_name: Optional[str] = None
    side: Optional[Side] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "team": self.team.value,
            "action": self.action.value,
            "map_name": self.map_name,
            "side": self.side.value if self.side else None,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VetoAction":
        return cls(
            step=int(data["step"]),
            team=TeamSlot(data["team"]),
            action=VetoActionKind(data["action"]),
            map_name=data.get("map_name"),
            side=Side(data["side"]) if data.get("side") else None,
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class PickedMap:
    """A map in the final series, with optional side assignment."""

    map_number: int
    map_name: str
    picked_by: str  # "team1" | "team2" | "decider"
    knife_round: bool = False
    side_team1: Optional[Side] = None
    side_team2: Optional[Side] = None

    @property
    def has_sides(self) -> bool:
        return self.side_team1 is not None and self.side_team2 is not None

    def with_side(self, chooser: TeamSlot, side: Side) -> "PickedMap":
        """Return new instance with the chooser on ``side`` and the opponent opposite."""
        side_team1 = side if chooser is TeamSlot.TEAM1 else side.opposite
        return PickedMap(
            map_number=self.map_number,
            map_name=self.map_name,
            picked_by=self.picked_by,
            knife_round=False,
            side_team1=side_team1,
            side_team2=side_team1.opposite,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "map_number": self.map_number,
            "map_name": self.map_name,
            "picked_by": self.picked_by,
            "knife_round": self.knife_round,
            "side_team1": self.side_team1.value if self.side_team1 else None,
            "side_team2": self.side_team2.value if self.side_team2 else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PickedMap":
        return cls(
            map_number=int(data["map_number"]),
            map_name=data["map_name"],
            picked_by=data["picked_by"],
            knife_round=bool(data.get("knife_round", False)),
            side_team1=Side(data["side_team1"]) if data.get("side_team1") else None,
            side_team2=Side(data["side_team2"]) if data.get("side_team2") else None,
        )


@dataclass(frozen=True)
class VetoState:
    """
    Map veto state for one match.

    ``actions`` is append-only and applied strictly in step order; the veto
    is complete exactly when len(actions) == len(steps).
    """

    VERSION = 1

    format: MatchFormat
    steps: Tuple[VetoStep, ...]
    map_pool: Tuple[str, ...]
    available_maps: Tuple[str, ...]
    team1_id: Optional[str] = None
    team2_id: Optional[str] = None
    actions: Tuple[VetoAction, ...] = ()
    banned_maps: Tuple[str, ...] = ()
    picked_maps: Tuple[PickedMap, ...] = ()
    status: VetoStatus = VetoStatus.IN_PROGRESS
    completed_at: Optional[datetime] = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def current_step(self) -> int:
        """1-based index of the next step to play."""
        return len(self.actions) + 1

    @property
    def next_step(self) -> Optional[VetoStep]:
        if len(self.actions) >= len(self.steps):
            return None
        return self.steps[len(self.actions)]

    @property
    def is_complete(self) -> bool:
        return self.status == VetoStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        step = self.next_step
        return {
            "version": self.VERSION,
            "format": self.format.value,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "actions": [a.to_dict() for a in self.actions],
            "map_pool": list(self.map_pool),
            "available_maps": list(self.available_maps),
            "banned_maps": list(self.banned_maps),
            "picked_maps": [m.to_dict() for m in self.picked_maps],
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "current_turn": step.team.value if step else None,
            "current_action": step.action.value if step else None,
            "team1_id": self.team1_id,
            "team2_id": self.team2_id,
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VetoState":
        version = data.get("version", cls.VERSION)
        if version != cls.VERSION:
            raise ValueError(f"Unsupported veto state version: {version}")
        return cls(
            format=MatchFormat(data["format"]),
            steps=tuple(VetoStep.from_dict(s) for s in data["steps"]),
            map_pool=tuple(data.get("map_pool", [])),
            available_maps=tuple(data.get("available_maps", [])),
            team1_id=data.get("team1_id"),
            team2_id=data.get("team2_id"),
            actions=tuple(VetoAction.from_dict(a) for a in data.get("actions", [])),
            banned_maps=tuple(data.get("banned_maps", [])),
            picked_maps=tuple(PickedMap.from_dict(m) for m in data.get("picked_maps", [])),
            status=VetoStatus(data.get("status", VetoStatus.IN_PROGRESS.value)),
            completed_at=_parse_dt(data.get("completed_at")),
        )

    def view_for(self, viewer: TeamSlot) -> Dict[str, Any]:
        """
        Team-relative summary.

        Both teams receive the same shape: ``self``/``opponent`` replace
        absolute team1/team2 labels so the second team never has to
        translate fields.
        """

        def relative(slot_value: str) -> str:
            if slot_value == "decider":
                return "decider"
            return "self" if slot_value == viewer.value else "opponent"

        def own_side(picked: PickedMap) -> Optional[Side]:
            return picked.side_team1 if viewer is TeamSlot.TEAM1 else picked.side_team2

        step = self.next_step
        return {
            "status": self.status.value,
            "format": self.format.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "your_turn": step is not None and step.team is viewer,
            "current_action": step.action.value if step else None,
            "available_maps": list(self.available_maps),
            "banned_maps": list(self.banned_maps),
            "picked_maps": [
                {
                    "map_number": m.map_number,
                    "map_name": m.map_name,
                    "picked_by": relative(m.picked_by),
                    "knife_round": m.knife_round,
                    "your_side": own_side(m).value if own_side(m) else None,
                    "opponent_side": own_side(m).opposite.value if own_side(m) else None,
                }
                for m in self.picked_maps
            ],
            "actions": [
                {
                    "step": a.step,
                    "by": relative(a.team.value),
                    "action": a.action.value,
                    "map_name": a.map_name,
                    "side": a.side.value if a.side else None,
                }
                for a in self.actions
            ],
        }


# =============================================================================
# Match Config
# =============================================================================


@dataclass(frozen=True)
class TeamConfig:
    """Frozen roster as sent to the game server."""

    id: str
    name: str
    tag: str
    players: Dict[str, str] = field(default_factory=dict)  # steam_id -> name
    series_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tag": self.tag,
            "players": dict(self.players),
            "series_score": self.series_score,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamConfig":
        return cls(
            id=data["id"],
            name=data["name"],
            tag=data.get("tag") or data["name"][:4].upper(),
            players={str(k): v for k, v in data.get("players", {}).items()},
            series_score=int(data.get("series_score", 0)),
        )


@dataclass(frozen=True)
class MatchConfig:
    """
    MatchZy match configuration.

    Written once when a match is first allocated, never mutated afterward.
    """

    VERSION = 1

    matchid: int
    num_maps: int
    maplist: Tuple[str, ...]
    map_sides: Tuple[str, ...]
    team1: TeamConfig
    team2: TeamConfig
    players_per_team: int = 5
    min_players_to_ready: int = 1
    min_spectators_to_ready: int = 0
    wingman: bool = False
    skip_veto: bool = True
    spectators: Dict[str, str] = field(default_factory=dict)
    cvars: Dict[str, str] = field(default_factory=dict)

    @property
    def expected_players_team1(self) -> int:
        return len(self.team1.players)

    @property
    def expected_players_team2(self) -> int:
        return len(self.team2.players)

    @property
    def expected_players_total(self) -> int:
        return self.expected_players_team1 + self.expected_players_team2

    def team_of(self, steam_id: str) -> Optional[TeamSlot]:
        """Resolve a player's side strictly from the frozen rosters."""
        in_team1 = steam_id in self.team1.players
        in_team2 = steam_id in self.team2.players
        if in_team1 == in_team2:
            # Unknown, or listed on both rosters
            return None
        return TeamSlot.TEAM1 if in_team1 else TeamSlot.TEAM2

    def team_id(self, slot: TeamSlot) -> str:
        return self.team1.id if slot is TeamSlot.TEAM1 else self.team2.id

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "version": self.VERSION,
            "matchid": self.matchid,
            "num_maps": self.num_maps,
            "maplist": list(self.maplist),
            "map_sides": list(self.map_sides),
            "players_per_team": self.players_per_team,
            "min_players_to_ready": self.min_players_to_ready,
            "min_spectators_to_ready": self.min_spectators_to_ready,
            "wingman": self.wingman,
            "skip_veto": self.skip_veto,
            "expected_players_total": self.expected_players_total,
            "expected_players_team1": self.expected_players_team1,
            "expected_players_team2": self.expected_players_team2,
            "team1": self.team1.to_dict(),
            "team2": self.team2.to_dict(),
            "spectators": {"players": dict(self.spectators)},
        }
        if self.cvars:
            data["cvars"] = dict(self.cvars)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MatchConfig":
        version = data.get("version", cls.VERSION)
        if version != cls.VERSION:
            raise ValueError(f"Unsupported match config version: {version}")
        return cls(
            matchid=int(data["matchid"]),
            num_maps=int(data["num_maps"]),
            maplist=tuple(data["maplist"]),
            map_sides=tuple(data.get("map_sides", [])),
            team1=TeamConfig.from_dict(data["team1"]),
            team2=TeamConfig.from_dict(data["team2"]),
            players_per_team=int(data.get("players_per_team", 5)),
            min_players_to_ready=int(data.get("min_players_to_ready", 1)),
            min_spectators_to_ready=int(data.get("min_spectators_to_ready", 0)),
            wingman=bool(data.get("wingman", False)),
            skip_veto=bool(data.get("skip_veto", True)),
            spectators=dict(data.get("spectators", {}).get("players", {})),
            cvars={k: str(v) for k, v in data.get("cvars", {}).items()},
        )


# =============================================================================
# Tournament
# =============================================================================


@dataclass(frozen=True)
class TournamentSettings:
    """Tournament options that shape brackets, veto and match configs."""

    third_place_match: bool = False
    seeding_method: SeedingMethod = SeedingMethod.RANDOM
    veto_enabled: bool = True
    custom_veto_order: Dict[str, Tuple[VetoStep, ...]] = field(default_factory=dict)
    swiss_rounds: Optional[int] = None

    # Shuffle
    team_size: int = 5
    round_limit_type: str = "first_to_13"  # or "max_rounds"
    max_rounds: int = 24
    overtime_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "third_place_match": self.third_place_match,
            "seeding_method": self.seeding_method.value,
            "veto_enabled": self.veto_enabled,
            "custom_veto_order": {
                fmt: [s.to_dict() for s in steps]
                for fmt, steps in self.custom_veto_order.items()
            },
            "swiss_rounds": self.swiss_rounds,
            "team_size": self.team_size,
            "round_limit_type": self.round_limit_type,
            "max_rounds": self.max_rounds,
            "overtime_enabled": self.overtime_enabled,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TournamentSettings":
        data = data or {}
        return cls(
            third_place_match=bool(data.get("third_place_match", False)),
            seeding_method=SeedingMethod(data.get("seeding_method", "random")),
            veto_enabled=bool(data.get("veto_enabled", True)),
            custom_veto_order={
                fmt: tuple(VetoStep.from_dict(s) for s in steps)
                for fmt, steps in (data.get("custom_veto_order") or {}).items()
            },
            swiss_rounds=data.get("swiss_rounds"),
            team_size=int(data.get("team_size", 5)),
            round_limit_type=data.get("round_limit_type", "first_to_13"),
            max_rounds=int(data.get("max_rounds", 24)),
            overtime_enabled=bool(data.get("overtime_enabled", True)),
        )


@dataclass(frozen=True)
class Tournament:
    """Tournament definition and status."""

    id: str
    name: str
    type: TournamentType
    format: MatchFormat
    maps: Tuple[str, ...]
    team_ids: Tuple[str, ...] = ()
    player_ids: Tuple[str, ...] = ()  # shuffle registrations
    status: TournamentStatus = TournamentStatus.SETUP
    settings: TournamentSettings = field(default_factory=TournamentSettings)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def requires_veto(self) -> bool:
        return self.type != TournamentType.SHUFFLE and self.settings.veto_enabled

    @property
    def is_active(self) -> bool:
        return self.status not in (TournamentStatus.COMPLETED, TournamentStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "format": self.format.value,
            "maps": list(self.maps),
            "team_ids": list(self.team_ids),
            "player_ids": list(self.player_ids),
            "status": self.status.value,
            "settings": self.settings.to_dict(),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


# =============================================================================
# Match
# =============================================================================


@dataclass(frozen=True)
class AdvancementLink:
    """Where a match result sends a team next."""

    slug: str
    slot: TeamSlot

    def to_dict(self) -> Dict[str, Any]:
        return {"slug": self.slug, "slot": self.slot.value}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AdvancementLink"]:
        if not data:
            return None
        return cls(slug=data["slug"], slot=TeamSlot(data["slot"]))


@dataclass(frozen=True)
class LiveSnapshot:
    """Most recent live score for a match."""

    map_number: int
    round_number: int
    team1_score: int
    team2_score: int
    received_at: datetime = field(default_factory=utcnow)

    @property
    def sequence(self) -> Tuple[int, int]:
        return (self.map_number, self.round_number)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "map_number": self.map_number,
            "round_number": self.round_number,
            "team1_score": self.team1_score,
            "team2_score": self.team2_score,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["LiveSnapshot"]:
        if not data:
            return None
        return cls(
            map_number=int(data["map_number"]),
            round_number=int(data["round_number"]),
            team1_score=int(data["team1_score"]),
            team2_score=int(data["team2_score"]),
            received_at=_parse_dt(data.get("received_at")) or utcnow(),
        )


@dataclass(frozen=True)
class Match:
    """
    Match node in the bracket graph.

    Invariant: ``server_id`` is set if and only if status is loaded or live.
    """

    slug: str
    tournament_id: str
    round: int
    match_number: int
    match_id: Optional[int] = None  # numeric id sent to MatchZy, assigned on insert
    bracket: BracketSide = BracketSide.WINNERS
    team1_id: Optional[str] = None
    team2_id: Optional[str] = None
    status: MatchStatus = MatchStatus.PENDING
    winner_id: Optional[str] = None
    server_id: Optional[str] = None
    config: Optional[MatchConfig] = None
    veto_state: Optional[VetoState] = None
    winner_to: Optional[AdvancementLink] = None
    loser_to: Optional[AdvancementLink] = None
    team1_score: int = 0  # series score
    team2_score: int = 0
    connected_players: FrozenSet[str] = frozenset()
    live_snapshot: Optional[LiveSnapshot] = None
    demo_file: Optional[str] = None
    rating_processed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    loaded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def has_both_teams(self) -> bool:
        return self.team1_id is not None and self.team2_id is not None

    @property
    def sort_key(self) -> Tuple[int, int, str]:
        return (self.round, self.match_number, self.slug)

    def team_id(self, slot: TeamSlot) -> Optional[str]:
        return self.team1_id if slot is TeamSlot.TEAM1 else self.team2_id

    def slot_of(self, team_id: str) -> Optional[TeamSlot]:
        if team_id == self.team1_id:
            return TeamSlot.TEAM1
        if team_id == self.team2_id:
            return TeamSlot.TEAM2
        return None

    def loser_id(self) -> Optional[str]:
        if self.winner_id is None or not self.has_both_teams:
            return None
        return self.team2_id if self.winner_id == self.team1_id else self.team1_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "match_id": self.match_id,
            "tournament_id": self.tournament_id,
            "round": self.round,
            "match_number": self.match_number,
            "bracket": self.bracket.value,
            "team1_id": self.team1_id,
            "team2_id": self.team2_id,
            "status": self.status.value,
            "winner_id": self.winner_id,
            "server_id": self.server_id,
            "config": self.config.to_dict() if self.config else None,
            "veto_state": self.veto_state.to_dict() if self.veto_state else None,
            "winner_to": self.winner_to.to_dict() if self.winner_to else None,
            "loser_to": self.loser_to.to_dict() if self.loser_to else None,
            "team1_score": self.team1_score,
            "team2_score": self.team2_score,
            "connected_players": sorted(self.connected_players),
            "live_snapshot": self.live_snapshot.to_dict() if self.live_snapshot else None,
            "demo_file": self.demo_file,
            "rating_processed": self.rating_processed,
            "loaded_at": _iso(self.loaded_at),
            "completed_at": _iso(self.completed_at),
        }


# =============================================================================
# Servers
# =============================================================================


@dataclass(frozen=True)
class Server:
    """Game server reachable over RCON."""

    id: str
    name: str
    host: str
    port: int
    password: str
    enabled: bool = True
    current_match: Optional[str] = None  # soft occupancy marker
    matchzy_config: Dict[str, str] = field(default_factory=dict)

    @property
    def is_occupied(self) -> bool:
        return self.current_match is not None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        # Never expose the RCON password
        return {
            "id": self.id,
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "enabled": self.enabled,
            "current_match": self.current_match,
        }


@dataclass(frozen=True)
class ServerAvailability:
    """Result of probing one server."""

    server_id: str
    online: bool
    status: ServerStatus
    match_slug: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "online": self.online,
            "status": self.status.value,
            "match_slug": self.match_slug,
            "checked_at": self.checked_at.isoformat(),
            "error": self.error,
        }


# =============================================================================
# Operation Results
# =============================================================================


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command sequence sent to a server."""

    success: bool
    responses: Tuple[str, ...] = ()
    total: int = 0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    @property
    def completed(self) -> int:
        """How many commands (in order) were confirmed."""
        return len(self.responses)

    @property
    def timed_out(self) -> bool:
        return self.error_code == ErrorCode.COMMAND_TIMEOUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "timed_out": self.timed_out,
            "completed": self.completed,
            "total": self.total,
            "responses": list(self.responses),
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
        }


@dataclass(frozen=True)
class AllocationResult:
    """Per-match outcome of one allocation pass."""

    match_slug: str
    success: bool
    server_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matchSlug": self.match_slug,
            "serverId": self.server_id,
            "success": self.success,
            "error": self.error,
            "errorCode": self.error_code.value if self.error_code else None,
        }


@dataclass(frozen=True)
class AllocationSummary:
    """Aggregate of one allocation pass."""

    results: Tuple[AllocationResult, ...] = ()

    @property
    def allocated(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allocated": self.allocated,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class EndMatchesSummary:
    """Outcome of forcing servers to end their current matches."""

    matches_ended: int = 0
    matches_ended_failed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)  # server_id -> error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matchesEnded": self.matches_ended,
            "matchesEndedFailed": self.matches_ended_failed,
            "failures": dict(self.failures),
        }


@dataclass(frozen=True)
class RestartSummary:
    """Outcome of a tournament restart."""

    restarted: int
    restart_failed: int
    matches_reset: int
    allocation: AllocationSummary
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restarted": self.restarted,
            "restartFailed": self.restart_failed,
            "matchesReset": self.matches_reset,
            "failures": dict(self.failures),
            "allocation": self.allocation.to_dict(),
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a lifecycle transition attempt."""

    applied: bool
    match: Optional[Match] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class MapResult:
    """Final score of one map in a series."""

    map_number: int
    map_name: Optional[str]
    team1_score: int
    team2_score: int
    winner: Optional[TeamSlot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "map_number": self.map_number,
            "map_name": self.map_name,
            "team1_score": self.team1_score,
            "team2_score": self.team2_score,
            "winner": self.winner.value if self.winner else None,
        }


@dataclass(frozen=True)
class PlayerStats:
    """Per-player statistics from a final match report."""

    steam_id: str
    name: str
    team: Optional[TeamSlot]
    team_id: Optional[str]
    stats: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steam_id": self.steam_id,
            "name": self.name,
            "team": self.team.value if self.team else None,
            "team_id": self.team_id,
            "stats": dict(self.stats),
        }


@dataclass(frozen=True)
class OrchestratorEvent:
    """
    Event for the orchestration event bus.

    All lifecycle changes emit events for:
    - Triggering allocation passes
    - Audit logging
    - Dashboards
    """

    event_id: str = field(default_factory=lambda: str(uuid4()))
    event_type: OrchestratorEventType = OrchestratorEventType.MATCH_READY
    tournament_id: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    data: Dict[str, Any] = field(default_factory=dict)

    match_slug: Optional[str] = None
    server_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.name,
            "tournament_id": self.tournament_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
            "match_slug": self.match_slug,
            "server_id": self.server_id,
        }


def sort_matches(matches: List[Match]) -> List[Match]:
    """Deterministic (round, match number, slug) order."""
    return sorted(matches, key=lambda m: m.sort_key)
