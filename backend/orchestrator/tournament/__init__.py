"""
CS2 tournament orchestration core.

This module provides:
- Bracket generation (single/double elimination, round robin, swiss, shuffle)
- Map veto sequencing for BO1/BO3/BO5
- Match lifecycle transitions and bracket progression
- Server allocation over RCON with bounded command timeouts
- MatchZy webhook reconciliation
"""

from .engine import OrchestrationEngine
from .models import (
    Match,
    MatchConfig,
    MatchFormat,
    MatchStatus,
    OrchestratorEvent,
    OrchestratorEventType,
    Player,
    Server,
    Team,
    Tournament,
    TournamentSettings,
    TournamentStatus,
    TournamentType,
    VetoState,
)
from .allocation import AllocationEngine
from .brackets import BracketGenerator
from .dispatcher import CommandDispatcher
from .event_bus import OrchestratorEventBus
from .lifecycle import MatchStateMachine
from .reconciler import EventReconciler
from .repository import InMemoryRepository, TournamentRepository
from .servers import ServerRegistry
from .veto import VetoSequencer, VetoService

__all__ = [
    "OrchestrationEngine",
    "Match",
    "MatchConfig",
    "MatchFormat",
    "MatchStatus",
    "OrchestratorEvent",
    "OrchestratorEventType",
    "Player",
    "Server",
    "Team",
    "Tournament",
    "TournamentSettings",
    "TournamentStatus",
    "TournamentType",
    "VetoState",
    "AllocationEngine",
    "BracketGenerator",
    "CommandDispatcher",
    "OrchestratorEventBus",
    "MatchStateMachine",
    "EventReconciler",
    "InMemoryRepository",
    "TournamentRepository",
    "ServerRegistry",
    "VetoSequencer",
    "VetoService",
]
