"""
Orchestration Engine.

Wires the components together and exposes the administrative operations.

Components:
─────────────────────────────────────────────────────────────────
    ServerRegistry      server pool, probing, claims
    CommandDispatcher   time-bounded RCON sequences
    VetoService         map veto per match
    MatchStateMachine   status transitions, bracket progression
    AllocationEngine    ready matches -> servers
    EventReconciler     MatchZy webhooks -> transitions
─────────────────────────────────────────────────────────────────

Allocation runs when a match becomes ready or a server frees up
(event-bus trigger) and, as a safety net, from a background poll loop.
"""

import asyncio
import random
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

import redis.asyncio as redis

from orchestrator.config import Settings
from orchestrator.logging_config import get_logger
from orchestrator.schemas.events import EventModel
from orchestrator.utils.async_utils import cancel_task_safe, create_safe_task
from orchestrator.utils.errors import (
    MatchNotFoundError,
    OrchestratorError,
    TeamNotFoundError,
    TournamentNotFoundError,
    TournamentStateError,
    ValidationError,
)
from .allocation import ACTIVE_STATUSES, AllocationEngine
from .demos import DemoStore
from .dispatcher import CommandDispatcher, RconTransport
from .distributed_lock import (
    DistributedLockManager,
    LocalLockManager,
    LockAcquisitionError,
    LockManager,
    LockType,
    MultiLockManager,
)
from .event_bus import OrchestratorEventBus
from .lifecycle import MatchStateMachine
from .models import (
    AllocationResult,
    AllocationSummary,
    Match,
    MatchConfig,
    MatchFormat,
    MatchStatus,
    OrchestratorEvent,
    OrchestratorEventType,
    Player,
    RestartSummary,
    Server,
    Team,
    TeamSlot,
    Tournament,
    TournamentSettings,
    TournamentStatus,
    TournamentType,
    Side,
    VetoActionKind,
    VetoState,
)
from .rating import HttpRatingPipeline, NullRatingPipeline, RatingPipeline
from .reconciler import EventReconciler, ReconcileResult
from .repository import TournamentRepository
from .servers import ServerRegistry
from .shuffle import shuffle_round_team_prefix
from .veto import VetoService, get_veto_order, required_pool_size

logger = get_logger(__name__)

ALLOCATION_TRIGGERS = {OrchestratorEventType.MATCH_READY, OrchestratorEventType.MATCH_COMPLETED}


def _admin_locks(tournament_id: str) -> List[Tuple[str, LockType, Optional[str]]]:
    """Locks held by regenerate, reset and delete: no start, allocation pass or
    completion can interleave with them."""
    return [
        (tournament_id, LockType.TOURNAMENT, None),
        (tournament_id, LockType.ALLOCATION, None),
        (tournament_id, LockType.PROGRESSION, None),
    ]


class OrchestrationEngine:
    """Facade over the orchestration core."""

    def __init__(
        self,
        repository: TournamentRepository,
        dispatcher: CommandDispatcher,
        locks: LockManager,
        event_bus: OrchestratorEventBus,
        base_url: str,
        webhook_token: str,
        rating: Optional[RatingPipeline] = None,
        server_defaults: Optional[Dict[str, Any]] = None,
        probe_enabled: bool = True,
        poll_interval: float = 10.0,
        drain_timeout: float = 2.0,
        demo_dir: str = "data/demos",
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.locks = locks
        self.multi_lock = MultiLockManager(locks)
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout

        self.lifecycle = MatchStateMachine(repository, event_bus, locks, rng=rng)
        self.registry = ServerRegistry(repository, dispatcher, probe_enabled)
        self.allocation = AllocationEngine(
            repository,
            self.registry,
            dispatcher,
            self.lifecycle,
            locks,
            event_bus,
            base_url=base_url,
            webhook_token=webhook_token,
            server_defaults=server_defaults,
            rng=rng,
        )
        self.veto = VetoService(repository, locks, event_bus, self.lifecycle)
        self.reconciler = EventReconciler(
            repository,
            self.lifecycle,
            event_bus,
            locks,
            rating or NullRatingPipeline(),
        )
        self.demos = DemoStore(demo_dir)

        # Background work
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._trigger_subscription: Optional[str] = None
        self._scheduled: Set[str] = set()
        self._trigger_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: TournamentRepository,
        redis_client: Optional[redis.Redis] = None,
        transport: Optional[RconTransport] = None,
    ) -> "OrchestrationEngine":
        """Build an engine from settings; Redis (if given) backs locks and the event stream."""
        if redis_client is not None:
            locks: LockManager = DistributedLockManager(
                redis_client,
                default_lock_timeout_ms=settings.lock_timeout_ms,
                default_acquire_timeout_ms=settings.lock_acquire_timeout_ms,
            )
        else:
            locks = LocalLockManager(
                default_lock_timeout_ms=settings.lock_timeout_ms,
                default_acquire_timeout_ms=settings.lock_acquire_timeout_ms,
            )

        rating: RatingPipeline = (
            HttpRatingPipeline(settings.rating_service_url)
            if settings.rating_service_url
            else NullRatingPipeline()
        )

        return cls(
            repository=repository,
            dispatcher=CommandDispatcher(
                command_timeout=settings.rcon_command_timeout,
                call_timeout=settings.rcon_call_timeout,
                encoding=settings.rcon_encoding,
                transport=transport,
            ),
            locks=locks,
            event_bus=OrchestratorEventBus(redis_client),
            base_url=settings.public_base_url,
            webhook_token=settings.webhook_token,
            rating=rating,
            server_defaults={
                "chat_prefix": settings.matchzy_chat_prefix,
                "knife_enabled_default": settings.matchzy_knife_enabled_default,
                "minimum_ready_required": settings.matchzy_minimum_ready_required,
            },
            probe_enabled=settings.server_probe_enabled,
            poll_interval=settings.allocation_poll_interval,
            drain_timeout=settings.drain_timeout,
            demo_dir=settings.demo_dir,
        )

    async def initialize(self) -> None:
        """Subscribe the allocation trigger and start the poll loop."""
        self._running = True
        self._trigger_subscription = self.event_bus.subscribe(
            ALLOCATION_TRIGGERS, self._on_allocation_trigger
        )
        if self.poll_interval > 0:
            self._poll_task = asyncio.create_task(self._allocation_loop())
        logger.info("orchestration_engine_started", poll_interval=self.poll_interval)

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        self._running = False
        if self._trigger_subscription:
            self.event_bus.unsubscribe(self._trigger_subscription)
            self._trigger_subscription = None
        await cancel_task_safe(self._poll_task)
        self._poll_task = None
        for task in list(self._trigger_tasks):
            await cancel_task_safe(task)
        await self.locks.cleanup_all()
        logger.info("orchestration_engine_stopped")

    # =========================================================================
    # Tournament Lifecycle
    # =========================================================================

    async def create_tournament(
        self,
        name: str,
        tournament_type: TournamentType,
        match_format: MatchFormat,
        maps: Sequence[str],
        team_ids: Sequence[str] = (),
        player_ids: Sequence[str] = (),
        settings: Optional[TournamentSettings] = None,
        tournament_id: Optional[str] = None,
    ) -> Tournament:
        """
        Create the tournament and generate its bracket.

        Only one tournament exists at a time. Match slugs are shared between
        brackets, so every previous tournament, finished or not yet started,
        is deleted with its matches; one in progress must be reset or
        deleted first.
        """
        settings = settings or TournamentSettings()
        tournament = Tournament(
            id=tournament_id or str(uuid4()),
            name=name,
            type=tournament_type,
            format=match_format,
            maps=tuple(maps),
            team_ids=tuple(team_ids),
            player_ids=tuple(player_ids),
            settings=settings,
        )
        await self._validate_new_tournament(tournament)

        existing = await self.repository.list_tournaments()
        for previous in existing:
            if previous.status == TournamentStatus.IN_PROGRESS:
                raise TournamentStateError(
                    f"Tournament {previous.id} is in progress", previous.status.value
                )
        for previous in existing:
            await self.delete_tournament(previous.id)

        await self.repository.save_tournament(tournament)
        await self.lifecycle.install_bracket(tournament)

        tournament = replace(tournament, status=TournamentStatus.READY)
        await self.repository.save_tournament(tournament)
        logger.info(
            "tournament_created",
            tournament_id=tournament.id,
            type=tournament.type.value,
            format=tournament.format.value,
            teams=len(tournament.team_ids),
            players=len(tournament.player_ids),
        )
        return tournament

    async def _validate_new_tournament(self, tournament: Tournament) -> None:
        if not tournament.maps:
            raise ValidationError("At least one map is required")
        if len(set(tournament.maps)) != len(tournament.maps):
            raise ValidationError("Duplicate maps in pool", {"maps": list(tournament.maps)})

        if tournament.type == TournamentType.SHUFFLE:
            players = await self.repository.get_players(tournament.player_ids)
            if len(players) != len(tournament.player_ids):
                missing = sorted(set(tournament.player_ids) - {p.steam_id for p in players})
                raise ValidationError("Unknown players", {"steamIds": missing})
            self.lifecycle.shuffle.validate(tournament, len(players))
            return

        for team_id in tournament.team_ids:
            if await self.repository.get_team(team_id) is None:
                raise TeamNotFoundError(team_id)
        self.lifecycle.brackets.validate(tournament.type, len(tournament.team_ids))

        if tournament.requires_veto:
            steps = get_veto_order(tournament.format, tournament.settings.custom_veto_order)
            needed = required_pool_size(tournament.format, steps)
            if len(tournament.maps) != needed:
                raise ValidationError(
                    f"Veto for {tournament.format.value} needs exactly {needed} maps",
                    {"maps": len(tournament.maps), "required": needed},
                )
        elif len(tournament.maps) < tournament.format.num_maps:
            raise ValidationError(
                f"{tournament.format.value} needs at least {tournament.format.num_maps} maps",
                {"maps": len(tournament.maps)},
            )

    async def get_tournament(self, tournament_id: str) -> Tournament:
        tournament = await self.repository.get_tournament(tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return tournament

    async def list_matches(self, tournament_id: str) -> List[Match]:
        await self.get_tournament(tournament_id)
        return await self.repository.list_matches(tournament_id)

    async def get_match(self, slug: str) -> Match:
        match = await self.repository.get_match(slug)
        if match is None:
            raise MatchNotFoundError(slug)
        return match

    async def get_match_config(self, slug: str) -> MatchConfig:
        """Frozen config served to the game server."""
        match = await self.get_match(slug)
        if match.config is None:
            raise MatchNotFoundError(slug)
        return match.config

    async def regenerate_bracket(self, tournament_id: str, force: bool = False) -> List[Match]:
        """
        Replace every match of the tournament with a fresh bracket.

        Refuses while the tournament is in progress unless ``force``; a forced
        run ends loaded/live matches on their servers first.
        """
        async with self.multi_lock.multi_lock(_admin_locks(tournament_id)):
            tournament = await self.get_tournament(tournament_id)
            if tournament.status == TournamentStatus.IN_PROGRESS and not force:
                raise TournamentStateError(
                    "Tournament is in progress; pass force to regenerate",
                    tournament.status.value,
                )

            await self._end_and_drain(tournament_id)
            matches = await self.lifecycle.install_bracket(tournament)

            await self.repository.save_tournament(
                replace(
                    tournament,
                    status=TournamentStatus.READY,
                    started_at=None,
                    completed_at=None,
                )
            )
        logger.info("bracket_regenerated", tournament_id=tournament_id, force=force)
        return matches

    async def reset_tournament(self, tournament_id: str) -> Dict[str, Any]:
        """
        Back to setup: every match pending with veto, server and scores cleared.
        The bracket and seeded team assignments are preserved.
        """
        async with self.multi_lock.multi_lock(_admin_locks(tournament_id)):
            tournament = await self.get_tournament(tournament_id)
            ended = await self._end_and_drain(tournament_id)

            matches = await self.repository.list_matches(tournament_id)
            if tournament.type == TournamentType.SHUFFLE:
                matches_reset = await self._reset_shuffle(tournament, matches)
            else:
                fed = await self.lifecycle.fed_slots(matches)
                matches_reset = 0
                for match in matches:
                    if (await self.lifecycle.reset_match(match.slug, fed[match.slug])).applied:
                        matches_reset += 1

            await self.repository.save_tournament(
                replace(
                    tournament,
                    status=TournamentStatus.SETUP,
                    started_at=None,
                    completed_at=None,
                )
            )
            await self.event_bus.emit(
                OrchestratorEventType.TOURNAMENT_RESET,
                tournament_id,
                matches_reset=matches_reset,
            )

        logger.info("tournament_reset", tournament_id=tournament_id, matches_reset=matches_reset)
        return {"matchesReset": matches_reset, **ended.to_dict()}

    async def _reset_shuffle(self, tournament: Tournament, matches: Sequence[Match]) -> int:
        """Keep round 1 (reset); later rounds and their teams are discarded."""
        first_round: List[Match] = []
        for match in matches:
            if match.round != 1:
                continue
            result = await self.lifecycle.reset_match(match.slug, set())
            if result.match is not None:
                first_round.append(result.match)
        await self.repository.replace_matches(tournament.id, first_round)

        for round_number in range(2, len(tournament.maps) + 1):
            await self.repository.delete_teams(shuffle_round_team_prefix(round_number))

        players = await self.repository.get_players(tournament.player_ids)
        await self.repository.save_players([replace(p, matches_played=0) for p in players])
        return len(first_round)

    async def delete_tournament(self, tournament_id: str) -> None:
        async with self.multi_lock.multi_lock(_admin_locks(tournament_id)):
            await self.get_tournament(tournament_id)
            await self._end_and_drain(tournament_id)
            await self.repository.delete_tournament(tournament_id)
            await self.event_bus.emit(OrchestratorEventType.TOURNAMENT_DELETED, tournament_id)
        logger.info("tournament_deleted", tournament_id=tournament_id)

    async def _end_and_drain(self, tournament_id: str):
        """End active matches on their servers, then wait (bounded) for in-flight commands."""
        active = await self.repository.list_matches(tournament_id, ACTIVE_STATUSES)
        ended = await self.allocation.end_active_matches(tournament_id, active)
        servers = await self.repository.list_servers()
        drained = await self.dispatcher.drain([s.id for s in servers], self.drain_timeout)
        if not drained:
            logger.warning("drain_incomplete", tournament_id=tournament_id)
        return ended

    # =========================================================================
    # Allocation
    # =========================================================================

    async def start_tournament(self, tournament_id: str) -> AllocationSummary:
        return await self.allocation.start_tournament(tournament_id)

    async def restart_tournament(self, tournament_id: str) -> RestartSummary:
        return await self.allocation.restart_tournament(tournament_id)

    async def allocate(self, tournament_id: str) -> AllocationSummary:
        return await self.allocation.allocate(tournament_id)

    async def allocate_match(self, slug: str) -> AllocationResult:
        return await self.allocation.allocate_match(slug)

    async def restart_match(self, slug: str) -> RestartSummary:
        return await self.allocation.restart_match(slug)

    async def _on_allocation_trigger(self, event: OrchestratorEvent) -> None:
        # Handlers run inside the publisher's critical section: schedule, never wait
        if event.tournament_id:
            self._schedule_allocation(event.tournament_id)

    def _schedule_allocation(self, tournament_id: str) -> None:
        if not self._running or tournament_id in self._scheduled:
            return
        self._scheduled.add(tournament_id)
        task = create_safe_task(
            self._run_triggered_allocation(tournament_id),
            name=f"allocate-{tournament_id}",
        )
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)

    async def _run_triggered_allocation(self, tournament_id: str) -> None:
        self._scheduled.discard(tournament_id)
        tournament = await self.repository.get_tournament(tournament_id)
        if tournament is None or tournament.status != TournamentStatus.IN_PROGRESS:
            return
        try:
            await self.allocation.allocate(tournament_id)
        except OrchestratorError as e:
            logger.warning("triggered_allocation_failed", tournament_id=tournament_id, error=e.message)
        except LockAcquisitionError:
            # An admin operation holds the tournament; the poll loop retries
            logger.info("triggered_allocation_skipped", tournament_id=tournament_id)

    async def _allocation_loop(self) -> None:
        """Retry allocation for ready matches that found no server earlier."""
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)

                tournament = await self.repository.get_active_tournament()
                if tournament is None or tournament.status != TournamentStatus.IN_PROGRESS:
                    continue

                ready = await self.repository.list_matches(tournament.id, [MatchStatus.READY])
                if ready:
                    await self.allocation.allocate(tournament.id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("allocation_loop_error", error=str(e), exc_info=True)

    # =========================================================================
    # Veto
    # =========================================================================

    async def submit_veto_action(
        self,
        slug: str,
        team: TeamSlot,
        action: VetoActionKind,
        map_name: Optional[str] = None,
        side: Optional[Side] = None,
    ) -> VetoState:
        return await self.veto.submit_action(slug, team, action, map_name, side)

    async def veto_view(self, slug: str, team: TeamSlot) -> Dict[str, Any]:
        return (await self.veto.get_state(slug)).view_for(team)

    async def simulate_veto(self, slug: str, rng: Optional[random.Random] = None) -> VetoState:
        return await self.veto.simulate(slug, rng)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_server_event(
        self,
        slug: str,
        event: Optional[EventModel],
        payload: Dict[str, Any],
    ) -> ReconcileResult:
        return await self.reconciler.reconcile(slug, event, payload)

    # =========================================================================
    # Servers / teams / players
    # =========================================================================

    async def save_server(self, server: Server) -> Server:
        return await self.registry.save_server(server)

    async def server_availability(self) -> List[Dict[str, Any]]:
        return await self.registry.availability_report()

    async def save_team(self, team: Team) -> Team:
        await self.repository.save_teams([team])
        logger.info("team_saved", team_id=team.id, players=len(team.players))
        return team

    async def register_players(self, players: Sequence[Player]) -> None:
        """Save players; appearance counts of known players are kept."""
        known = await self.repository.get_players([p.steam_id for p in players])
        existing = {p.steam_id: p for p in known}
        await self.repository.save_players(
            [
                replace(p, matches_played=existing[p.steam_id].matches_played)
                if p.steam_id in existing
                else p
                for p in players
            ]
        )

    # =========================================================================
    # Server uploads
    # =========================================================================

    async def store_demo(
        self,
        slug: str,
        filename: str,
        map_number: Optional[int],
        chunks: AsyncIterator[bytes],
    ) -> Dict[str, Any]:
        """Write an uploaded demo and point the match at it."""
        await self.get_match(slug)
        path, size = await self.demos.save(slug, filename, chunks)
        await self.repository.update_match(slug, demo_file=path)
        await self.repository.record_event(
            slug, "demo_uploaded", {"file": path, "map_number": map_number, "size": size}
        )
        return {"file": path, "size": size}

    async def record_report(self, payload: Dict[str, Any]) -> bool:
        """Keep a server's match report in the event log of the match named by ``matchid``."""
        match = await self._match_for_report(payload.get("matchid"))
        if match is None:
            logger.info("match_report_discarded", matchid=payload.get("matchid"))
            return False
        await self.repository.record_event(match.slug, "match_report", payload)
        logger.info("match_report_recorded", match_slug=match.slug)
        return True

    async def _match_for_report(self, matchid: Any) -> Optional[Match]:
        # Numeric ids come from MatchZy; a slug is accepted from manual uploads
        if isinstance(matchid, bool) or matchid in (None, ""):
            return None
        if isinstance(matchid, int) or str(matchid).isdigit():
            return await self.repository.get_match_by_id(int(matchid))
        return await self.repository.get_match(str(matchid))
