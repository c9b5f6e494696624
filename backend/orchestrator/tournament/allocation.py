"""
Allocation Engine.

Pairs ready matches with available servers and pushes the load sequence.

Pass outline (one pass per tournament at a time, ALLOCATION lock):
1. Ready matches in (round, match number, slug) order
2. Available servers in id order
3. Greedy zip; matches left over fail with NO_AVAILABLE_SERVERS
4. Per pair, concurrently: freeze config -> claim server -> load -> ready->loaded
5. Any failure releases the claim and leaves the match ready

Partial allocation is never an error: results carry per-match detail.
"""

import asyncio
import random
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import (
    ErrorCode,
    MatchNotFoundError,
    OrchestratorError,
    StateConflictError,
    TeamNotFoundError,
    TournamentNotFoundError,
    TournamentStateError,
)
from . import matchzy
from .dispatcher import CommandDispatcher
from .distributed_lock import LockManager, LockType
from .event_bus import OrchestratorEventBus
from .lifecycle import MatchStateMachine
from .match_config import build_match_config
from .models import (
    AllocationResult,
    AllocationSummary,
    EndMatchesSummary,
    Match,
    MatchConfig,
    MatchStatus,
    OrchestratorEventType,
    RestartSummary,
    Server,
    Tournament,
    TournamentStatus,
    utcnow,
)
from .repository import TournamentRepository
from .servers import ServerRegistry

logger = get_logger(__name__)

NOT_ALLOCATABLE = (TournamentStatus.COMPLETED, TournamentStatus.CANCELLED)
ACTIVE_STATUSES = (MatchStatus.LOADED, MatchStatus.LIVE)


class AllocationEngine:
    """Scheduler for ready matches over the server pool."""

    def __init__(
        self,
        repository: TournamentRepository,
        registry: ServerRegistry,
        dispatcher: CommandDispatcher,
        lifecycle: MatchStateMachine,
        locks: LockManager,
        event_bus: OrchestratorEventBus,
        base_url: str,
        webhook_token: str,
        server_defaults: Optional[Dict] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher
        self.lifecycle = lifecycle
        self.locks = locks
        self.event_bus = event_bus
        self.base_url = base_url.rstrip("/")
        self.webhook_token = webhook_token
        # chat_prefix / knife_enabled_default / minimum_ready_required
        self.server_defaults = server_defaults or {}
        self.rng = rng or random.Random()

    # =========================================================================
    # Allocation
    # =========================================================================

    async def allocate(self, tournament_id: str) -> AllocationSummary:
        """
        One allocation pass over the tournament's ready matches.

        Raises:
            TournamentNotFoundError: No such tournament
            TournamentStateError: Tournament completed or cancelled
        """
        tournament = await self._require_allocatable(tournament_id)

        async with self.locks.lock(tournament_id, LockType.ALLOCATION):
            ready = await self.repository.list_matches(tournament_id, [MatchStatus.READY])
            if not ready:
                return AllocationSummary()

            servers = await self.registry.available_servers()
            pairs = list(zip(ready, servers))
            unpaired = ready[len(pairs):]

            outcomes = await asyncio.gather(
                *(self._load(tournament, match, server) for match, server in pairs),
                return_exceptions=True,
            )

            results: List[AllocationResult] = []
            for (match, server), outcome in zip(pairs, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        "allocation_load_crashed",
                        match_slug=match.slug,
                        server_id=server.id,
                        error=str(outcome),
                    )
                    await self.registry.release(server.id, match.slug)
                    outcome = AllocationResult(
                        match_slug=match.slug,
                        success=False,
                        server_id=server.id,
                        error=str(outcome),
                        error_code=ErrorCode.COMMAND_FAILED,
                    )
                results.append(outcome)

            for match in unpaired:
                results.append(
                    AllocationResult(
                        match_slug=match.slug,
                        success=False,
                        error="No available servers",
                        error_code=ErrorCode.NO_AVAILABLE_SERVERS,
                    )
                )

        summary = AllocationSummary(results=tuple(results))
        logger.info(
            "allocation_pass_completed",
            tournament_id=tournament_id,
            ready=len(ready),
            servers=len(servers),
            allocated=summary.allocated,
            failed=summary.failed,
        )
        await self.event_bus.emit(
            OrchestratorEventType.ALLOCATION_COMPLETED,
            tournament_id,
            allocated=summary.allocated,
            failed=summary.failed,
        )
        return summary

    async def allocate_match(self, slug: str) -> AllocationResult:
        """Allocate one ready match onto the first available server."""
        match = await self.repository.get_match(slug)
        if match is None:
            raise MatchNotFoundError(slug)
        tournament = await self._require_allocatable(match.tournament_id)

        async with self.locks.lock(tournament.id, LockType.ALLOCATION):
            match = await self.repository.get_match(slug)
            if match is None:
                raise MatchNotFoundError(slug)
            if match.status != MatchStatus.READY:
                raise StateConflictError(slug, match.status.value, [MatchStatus.READY.value])

            servers = await self.registry.available_servers()
            if not servers:
                return AllocationResult(
                    match_slug=slug,
                    success=False,
                    error="No available servers",
                    error_code=ErrorCode.NO_AVAILABLE_SERVERS,
                )
            return await self._load(tournament, match, servers[0])

    async def _load(self, tournament: Tournament, match: Match, server: Server) -> AllocationResult:
        def failure(code: ErrorCode, error: str) -> AllocationResult:
            return AllocationResult(
                match_slug=match.slug,
                success=False,
                server_id=server.id,
                error=error,
                error_code=code,
            )

        # Config is written before the load command: the server fetches it
        try:
            config = await self._freeze_config(tournament, match)
        except OrchestratorError as e:
            logger.warning("allocation_config_failed", match_slug=match.slug, error=e.message)
            return failure(e.code, e.message)
        if config is None:
            return failure(ErrorCode.STATE_CONFLICT, "Match is no longer ready")

        if not await self.registry.claim(server.id, match.slug):
            return failure(ErrorCode.SERVER_CLAIMED, f"Server {server.id} was claimed concurrently")

        result = await self.dispatcher.load_match(
            server,
            self.base_url,
            self.webhook_token,
            match.slug,
            self._server_config(server),
        )
        if not result.success:
            await self.registry.release(server.id, match.slug)
            return failure(result.error_code or ErrorCode.COMMAND_FAILED, result.error or "Load failed")

        transition = await self.lifecycle.mark_loaded(match.slug, server.id, config)
        if not transition.applied:
            # The server is already running the match: stop it before freeing the claim
            ended = await self.dispatcher.end_match(server)
            if not ended.success:
                logger.warning(
                    "orphaned_load_not_ended",
                    match_slug=match.slug,
                    server_id=server.id,
                    error=ended.error,
                )
            await self.registry.release(server.id, match.slug)
            return failure(ErrorCode.STATE_CONFLICT, transition.reason or "Transition rejected")

        logger.info(
            "match_allocated",
            match_slug=match.slug,
            server_id=server.id,
            commands=result.total,
        )
        return AllocationResult(match_slug=match.slug, success=True, server_id=server.id)

    async def _freeze_config(self, tournament: Tournament, match: Match) -> Optional[MatchConfig]:
        if match.config is not None:
            return match.config

        team1 = await self.repository.get_team(match.team1_id)
        if team1 is None:
            raise TeamNotFoundError(match.team1_id)
        team2 = await self.repository.get_team(match.team2_id)
        if team2 is None:
            raise TeamNotFoundError(match.team2_id)

        config = build_match_config(match, tournament, team1, team2, self.rng)
        updated = await self.repository.compare_and_update(
            match.slug, [MatchStatus.READY], config=config
        )
        return updated.config if updated else None

    def _server_config(self, server: Server) -> List[str]:
        return matchzy.server_config_commands(
            chat_prefix=self.server_defaults.get("chat_prefix"),
            knife_enabled_default=self.server_defaults.get("knife_enabled_default"),
            minimum_ready_required=self.server_defaults.get("minimum_ready_required"),
            overrides=server.matchzy_config,
        )

    # =========================================================================
    # Start / Restart
    # =========================================================================

    async def start_tournament(self, tournament_id: str) -> AllocationSummary:
        """Generate the bracket if needed, open playable matches, then allocate."""
        async with self.locks.lock(tournament_id, LockType.TOURNAMENT):
            tournament = await self._require_allocatable(tournament_id)
            if tournament.status == TournamentStatus.IN_PROGRESS:
                raise TournamentStateError(
                    "Tournament is already in progress", tournament.status.value
                )

            matches = await self.repository.list_matches(tournament_id)
            if not matches:
                matches = await self.lifecycle.install_bracket(tournament)

            tournament = replace(
                tournament, status=TournamentStatus.IN_PROGRESS, started_at=utcnow()
            )
            await self.repository.save_tournament(tournament)

            opened = 0
            for match in matches:
                if match.status == MatchStatus.PENDING and match.has_both_teams:
                    if (await self.lifecycle.open_match(match.slug)).applied:
                        opened += 1

            logger.info("tournament_started", tournament_id=tournament_id, opened=opened)
            await self.event_bus.emit(
                OrchestratorEventType.TOURNAMENT_STARTED, tournament_id, opened=opened
            )

        return await self.allocate(tournament_id)

    async def restart_tournament(self, tournament_id: str) -> RestartSummary:
        """
        Restart every loaded/live match: end it on its server (best effort),
        return it to ready, then run an allocation pass.
        """
        async with self.locks.lock(tournament_id, LockType.TOURNAMENT):
            await self._require_allocatable(tournament_id)
            active = await self.repository.list_matches(tournament_id, ACTIVE_STATUSES)

            ended = await self.end_active_matches(tournament_id, active)

            matches_reset = 0
            for match in active:
                if (await self.lifecycle.return_to_ready(match.slug)).applied:
                    matches_reset += 1

            await self.event_bus.emit(
                OrchestratorEventType.TOURNAMENT_RESTARTED,
                tournament_id,
                matches_reset=matches_reset,
            )

        allocation = await self.allocate(tournament_id)
        summary = RestartSummary(
            restarted=ended.matches_ended,
            restart_failed=ended.matches_ended_failed,
            matches_reset=matches_reset,
            allocation=allocation,
            failures=ended.failures,
        )
        logger.info(
            "tournament_restarted",
            tournament_id=tournament_id,
            restarted=summary.restarted,
            restart_failed=summary.restart_failed,
            matches_reset=matches_reset,
            allocated=allocation.allocated,
        )
        return summary

    async def restart_match(self, slug: str) -> RestartSummary:
        """Restart one loaded/live match and reallocate."""
        match = await self.repository.get_match(slug)
        if match is None:
            raise MatchNotFoundError(slug)
        await self._require_allocatable(match.tournament_id)

        async with self.locks.lock(match.tournament_id, LockType.MATCH, slug):
            match = await self.repository.get_match(slug)
            if match is None:
                raise MatchNotFoundError(slug)
            if match.status not in ACTIVE_STATUSES:
                raise StateConflictError(slug, match.status.value, [s.value for s in ACTIVE_STATUSES])

            ended = await self.end_active_matches(match.tournament_id, [match])
            transition = await self.lifecycle.return_to_ready(slug)

        allocation = await self.allocate(match.tournament_id)
        return RestartSummary(
            restarted=ended.matches_ended,
            restart_failed=ended.matches_ended_failed,
            matches_reset=1 if transition.applied else 0,
            allocation=allocation,
            failures=ended.failures,
        )

    async def end_active_matches(
        self,
        tournament_id: str,
        matches: Optional[Sequence[Match]] = None,
    ) -> EndMatchesSummary:
        """
        Send the end-match command to every distinct server holding an
        active match. Does not change match state; failures are counted.
        """
        if matches is None:
            matches = await self.repository.list_matches(tournament_id, ACTIVE_STATUSES)

        server_ids = sorted({m.server_id for m in matches if m.server_id})
        if not server_ids:
            return EndMatchesSummary()

        servers: List[Server] = []
        failures: Dict[str, str] = {}
        for server_id in server_ids:
            server = await self.repository.get_server(server_id)
            if server is None:
                failures[server_id] = "Server no longer exists"
            else:
                servers.append(server)

        results = await asyncio.gather(
            *(self.dispatcher.end_match(server) for server in servers),
            return_exceptions=True,
        )

        ended = 0
        for server, result in zip(servers, results):
            if isinstance(result, BaseException):
                failures[server.id] = str(result)
            elif result.success:
                ended += 1
            else:
                failures[server.id] = result.error or "End match failed"

        if failures:
            logger.warning(
                "end_matches_partial_failure",
                tournament_id=tournament_id,
                failures=failures,
            )
        return EndMatchesSummary(
            matches_ended=ended,
            matches_ended_failed=len(failures),
            failures=failures,
        )

    async def _require_allocatable(self, tournament_id: str) -> Tournament:
        tournament = await self.repository.get_tournament(tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        if tournament.status in NOT_ALLOCATABLE:
            raise TournamentStateError(
                f"Tournament is {tournament.status.value}", tournament.status.value
            )
        return tournament
