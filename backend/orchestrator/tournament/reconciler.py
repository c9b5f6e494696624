"""
Event Reconciler.

Applies MatchZy webhook events to match state. Events arrive out of band
and may race administrator actions, so every effect is gated on the match
being in a status that accepts the event; anything else is discarded and
reported, never raised.

Accepting statuses:
    series_start        loaded, live      (informational)
    going_live          loaded -> live    (live: later maps, no-op)
    player_connect      loaded, live
    player_disconnect   loaded, live
    round_end           live              (stale snapshots dropped)
    map_result          live
    series_end          live -> completed (stats, rating once)
    demo_upload_ended   loaded, live, completed

Events are routed by the slug in the webhook URL; a ``matchid`` in the
payload must be the match's numeric id. MatchZy numbers maps from 0;
stored map numbers are 1-based.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from orchestrator.logging_config import bind_context, get_logger
from orchestrator.schemas.events import (
    DemoUploadEndedEvent,
    EventModel,
    GoingLiveEvent,
    MapResultEvent,
    PlayerConnectEvent,
    PlayerDisconnectEvent,
    RoundEndEvent,
    SeriesEndEvent,
    SeriesStartEvent,
)
from .distributed_lock import LockManager, LockType
from .event_bus import OrchestratorEventBus
from .lifecycle import MatchStateMachine
from .models import (
    LiveSnapshot,
    MapResult,
    Match,
    MatchStatus,
    OrchestratorEventType,
    PlayerStats,
    TeamSlot,
)
from .rating import RatingPipeline
from .repository import TournamentRepository

logger = get_logger(__name__)

CONNECTED_STATUSES = (MatchStatus.LOADED, MatchStatus.LIVE)
DEMO_STATUSES = (MatchStatus.LOADED, MatchStatus.LIVE, MatchStatus.COMPLETED)


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one webhook event."""

    accepted: bool
    event: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"accepted": self.accepted, "reason": self.reason}


class EventReconciler:
    """Maps server events onto lifecycle transitions."""

    def __init__(
        self,
        repository: TournamentRepository,
        lifecycle: MatchStateMachine,
        event_bus: OrchestratorEventBus,
        locks: LockManager,
        rating: RatingPipeline,
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.event_bus = event_bus
        self.locks = locks
        self.rating = rating

        self._handlers = {
            "series_start": self._on_series_start,
            "going_live": self._on_going_live,
            "player_connect": self._on_player_connect,
            "player_disconnect": self._on_player_disconnect,
            "round_end": self._on_round_end,
            "map_result": self._on_map_result,
            "series_end": self._on_series_end,
            "demo_upload_ended": self._on_demo_upload_ended,
        }

    async def reconcile(
        self,
        slug: str,
        event: Optional[EventModel],
        payload: Dict[str, Any],
    ) -> ReconcileResult:
        """
        Apply one event.

        Args:
            slug: Match slug from the webhook path
            event: Parsed payload, None for events this service does not handle
            payload: Raw payload, kept in the event log
        """
        event_name = str(payload.get("event", "unknown"))
        bind_context(match_slug=slug, event_type=event_name)

        match = await self.repository.get_match(slug)
        if match is None:
            return await self._discard(None, slug, event_name, "unknown match")

        if event is None:
            await self.repository.record_event(slug, event_name, payload)
            logger.debug("webhook_event_ignored", match_slug=slug, event_type=event_name)
            return ReconcileResult(accepted=True, event=event_name, reason="ignored")

        if event.matchid not in (None, "") and str(event.matchid) != str(match.match_id):
            return await self._discard(match, slug, event_name, "matchid does not match")

        async with self.locks.lock(match.tournament_id, LockType.MATCH, slug):
            match = await self.repository.get_match(slug)
            if match is None:
                return await self._discard(None, slug, event_name, "match deleted")

            reason = await self._handlers[event_name](match, event)
            if reason is not None:
                return await self._discard(match, slug, event_name, reason)

            await self.repository.record_event(slug, event_name, payload)

        logger.info("webhook_event_applied", match_slug=slug, event_type=event_name)
        return ReconcileResult(accepted=True, event=event_name)

    async def _discard(
        self,
        match: Optional[Match],
        slug: str,
        event_name: str,
        reason: str,
    ) -> ReconcileResult:
        logger.info(
            "webhook_event_discarded",
            match_slug=slug,
            event_type=event_name,
            reason=reason,
            status=match.status.value if match else None,
        )
        await self.event_bus.emit(
            OrchestratorEventType.SERVER_EVENT_DISCARDED,
            match.tournament_id if match else "",
            match_slug=slug,
            event=event_name,
            reason=reason,
        )
        return ReconcileResult(accepted=False, event=event_name, reason=reason)

    # =========================================================================
    # Handlers (return None when applied, else the discard reason)
    # =========================================================================

    async def _on_series_start(self, match: Match, event: SeriesStartEvent) -> Optional[str]:
        if match.status not in CONNECTED_STATUSES:
            return f"match is {match.status.value}"
        return None

    async def _on_going_live(self, match: Match, event: GoingLiveEvent) -> Optional[str]:
        if match.status == MatchStatus.LIVE:
            # Fired again for every later map of a series
            return None
        result = await self.lifecycle.mark_live(match.slug)
        return None if result.applied else result.reason

    async def _on_player_connect(self, match: Match, event: PlayerConnectEvent) -> Optional[str]:
        if match.status not in CONNECTED_STATUSES:
            return f"match is {match.status.value}"

        steam_id = event.player.steamid
        if match.config is not None and match.config.team_of(steam_id) is None:
            logger.warning("unrostered_player_connected", match_slug=match.slug, steam_id=steam_id)

        updated = await self.repository.compare_and_update(
            match.slug,
            CONNECTED_STATUSES,
            connected_players=match.connected_players | {steam_id},
        )
        return None if updated else "status changed"

    async def _on_player_disconnect(
        self, match: Match, event: PlayerDisconnectEvent
    ) -> Optional[str]:
        if match.status not in CONNECTED_STATUSES:
            return f"match is {match.status.value}"

        updated = await self.repository.compare_and_update(
            match.slug,
            CONNECTED_STATUSES,
            connected_players=match.connected_players - {event.player.steamid},
        )
        return None if updated else "status changed"

    async def _on_round_end(self, match: Match, event: RoundEndEvent) -> Optional[str]:
        if match.status != MatchStatus.LIVE:
            return f"match is {match.status.value}"

        snapshot = LiveSnapshot(
            map_number=event.map_number + 1,
            round_number=event.round_number,
            team1_score=event.team1.score,
            team2_score=event.team2.score,
        )
        current = match.live_snapshot
        if current is not None and snapshot.sequence < current.sequence:
            return "stale snapshot"

        updated = await self.repository.compare_and_update(
            match.slug, [MatchStatus.LIVE], live_snapshot=snapshot
        )
        return None if updated else "status changed"

    async def _on_map_result(self, match: Match, event: MapResultEvent) -> Optional[str]:
        if match.status != MatchStatus.LIVE:
            return f"match is {match.status.value}"

        map_name = event.map_name
        if map_name is None and match.config and event.map_number < len(match.config.maplist):
            map_name = match.config.maplist[event.map_number]

        await self.repository.record_map_result(
            match.slug,
            MapResult(
                map_number=event.map_number + 1,
                map_name=map_name,
                team1_score=event.team1.score,
                team2_score=event.team2.score,
                winner=TeamSlot(event.winner.team) if event.winner else None,
            ),
        )
        updated = await self.repository.compare_and_update(
            match.slug,
            [MatchStatus.LIVE],
            team1_score=event.team1.series_score,
            team2_score=event.team2.series_score,
        )
        return None if updated else "status changed"

    async def _on_series_end(self, match: Match, event: SeriesEndEvent) -> Optional[str]:
        if match.status != MatchStatus.LIVE:
            return f"match is {match.status.value}"

        winner_id = match.team_id(TeamSlot(event.winner.team)) if event.winner else None
        stats = await self._collect_player_stats(match)

        result = await self.lifecycle.mark_completed(
            match.slug,
            winner_id,
            team1_score=event.team1_series_score,
            team2_score=event.team2_series_score,
        )
        if not result.applied:
            return result.reason

        await self.repository.record_player_stats(match.slug, stats)
        await self._submit_rating(result.match, stats)
        return None

    async def _on_demo_upload_ended(
        self, match: Match, event: DemoUploadEndedEvent
    ) -> Optional[str]:
        if match.status not in DEMO_STATUSES:
            return f"match is {match.status.value}"
        if not event.success:
            return "demo upload failed"

        await self.repository.update_match(match.slug, demo_file=event.filename)
        return None

    # =========================================================================
    # Completion helpers
    # =========================================================================

    async def _collect_player_stats(self, match: Match) -> List[PlayerStats]:
        """Sum per-map stats from recorded map results; teams from the frozen config."""
        latest: Dict[int, MapResultEvent] = {}
        for entry in await self.repository.list_events(match.slug):
            if entry["event_type"] != "map_result":
                continue
            parsed = MapResultEvent.model_validate(entry["payload"])
            latest[parsed.map_number] = parsed

        totals: Dict[str, Dict[str, int]] = {}
        names: Dict[str, str] = {}
        for result in latest.values():
            for team in (result.team1, result.team2):
                for line in team.players:
                    bucket = totals.setdefault(line.steamid, {})
                    for key, value in line.stats.items():
                        bucket[key] = bucket.get(key, 0) + value
                    names[line.steamid] = line.name

        stats = []
        for steam_id in sorted(totals):
            slot = match.config.team_of(steam_id) if match.config else None
            stats.append(
                PlayerStats(
                    steam_id=steam_id,
                    name=names.get(steam_id, ""),
                    team=slot,
                    team_id=match.config.team_id(slot) if slot and match.config else None,
                    stats=totals[steam_id],
                )
            )
        return stats

    async def _submit_rating(self, match: Match, stats: List[PlayerStats]) -> None:
        if match.rating_processed:
            return

        map_results = await self.repository.list_map_results(match.slug)
        try:
            processed = await self.rating.process_match(match, stats, map_results)
        except Exception as e:
            logger.error("rating_pipeline_failed", match_slug=match.slug, error=str(e), exc_info=True)
            return

        if processed:
            await self.repository.update_match(match.slug, rating_processed=True)
