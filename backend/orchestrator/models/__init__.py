"""Database models."""

from orchestrator.models.base import Base, JSONType, TimestampMixin
from orchestrator.models.match import (
    MapResultRecord,
    MatchEventRecord,
    MatchRecord,
    PlayerStatsRecord,
)
from orchestrator.models.server import ServerRecord
from orchestrator.models.tournament import PlayerRecord, TeamRecord, TournamentRecord

__all__ = [
    # Base
    "Base",
    "JSONType",
    "TimestampMixin",
    # Tournament
    "TournamentRecord",
    "TeamRecord",
    "PlayerRecord",
    # Match
    "MatchRecord",
    "MatchEventRecord",
    "MapResultRecord",
    "PlayerStatsRecord",
    # Server
    "ServerRecord",
]
