"""
Orchestrator Event Bus.

Every lifecycle change is published here:
1. Fan-Out: one event reaches every matching local handler independently
2. Isolation: a failing handler never affects the publisher or other handlers
3. Audit stream: when Redis is configured, events are appended to a stream
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
)
from uuid import uuid4

import redis.asyncio as redis

from orchestrator.logging_config import get_logger
from orchestrator.utils.json_utils import json_dumps
from .models import OrchestratorEvent, OrchestratorEventType

logger = get_logger(__name__)


EventHandler = Callable[[OrchestratorEvent], Awaitable[None]]


@dataclass
class Subscription:
    """Event subscription metadata."""

    subscription_id: str
    event_types: Set[OrchestratorEventType]
    handler: EventHandler
    tournament_id: Optional[str] = None  # None = all tournaments
    is_active: bool = True


@dataclass
class EventMetrics:
    """Event processing metrics."""

    events_published: int = 0
    events_processed: int = 0
    events_failed: int = 0
    stream_failures: int = 0
    avg_processing_time_ms: float = 0.0
    last_event_time: Optional[datetime] = None


class OrchestratorEventBus:
    """
    In-process event bus with an optional Redis stream for audit.

    Handlers must not call back into code that waits on the publisher's
    locks; long work should be scheduled as a task.
    """

    STREAM_KEY = "orchestrator:events"
    STREAM_MAX_LEN = 10000

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client

        self._subscriptions: Dict[str, Subscription] = {}
        self._handlers_by_type: Dict[OrchestratorEventType, List[Subscription]] = (
            defaultdict(list)
        )
        self._metrics = EventMetrics()

    def subscribe(
        self,
        event_types: Set[OrchestratorEventType],
        handler: EventHandler,
        tournament_id: Optional[str] = None,
    ) -> str:
        """
        Subscribe to orchestrator events.

        Args:
            event_types: Set of event types to listen for
            handler: Async function to call on event
            tournament_id: Filter for specific tournament (None = all)

        Returns:
            Subscription ID for unsubscribe
        """
        subscription_id = str(uuid4())
        subscription = Subscription(
            subscription_id=subscription_id,
            event_types=event_types,
            handler=handler,
            tournament_id=tournament_id,
        )

        self._subscriptions[subscription_id] = subscription
        for event_type in event_types:
            self._handlers_by_type[event_type].append(subscription)

        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        subscription = self._subscriptions.pop(subscription_id, None)
        if not subscription:
            return False

        subscription.is_active = False
        for event_type in subscription.event_types:
            self._handlers_by_type[event_type] = [
                h
                for h in self._handlers_by_type[event_type]
                if h.subscription_id != subscription_id
            ]
        return True

    async def publish(self, event: OrchestratorEvent) -> None:
        """Dispatch to local handlers, then append to the audit stream."""
        await self._dispatch_local(event)

        if self.redis is not None:
            await self._publish_to_stream(event)

        self._metrics.events_published += 1
        self._metrics.last_event_time = datetime.now(timezone.utc)

    async def emit(
        self,
        event_type: OrchestratorEventType,
        tournament_id: str,
        match_slug: Optional[str] = None,
        server_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        """Build and publish an event in one call."""
        await self.publish(
            OrchestratorEvent(
                event_type=event_type,
                tournament_id=tournament_id,
                match_slug=match_slug,
                server_id=server_id,
                data=data,
            )
        )

    async def _publish_to_stream(self, event: OrchestratorEvent) -> Optional[str]:
        """Append one event to the Redis stream. Failures are counted, not raised."""
        data = {
            "event_id": event.event_id,
            "event_type": event.event_type.name,
            "tournament_id": event.tournament_id,
            "timestamp": event.timestamp.isoformat(),
            "data": json_dumps(event.data),
            "match_slug": event.match_slug or "",
            "server_id": event.server_id or "",
        }

        try:
            return await self.redis.xadd(
                self.STREAM_KEY,
                data,
                maxlen=self.STREAM_MAX_LEN,
                approximate=True,
            )
        except redis.RedisError as e:
            self._metrics.stream_failures += 1
            logger.warning(
                "event_stream_append_failed",
                event_type=event.event_type.name,
                error=str(e),
            )
            return None

    async def _dispatch_local(self, event: OrchestratorEvent) -> None:
        """Run all matching handlers concurrently; individual failures are isolated."""
        handlers = self._handlers_by_type.get(event.event_type, [])

        tasks = []
        for subscription in handlers:
            if not subscription.is_active:
                continue
            if (
                subscription.tournament_id
                and subscription.tournament_id != event.tournament_id
            ):
                continue

            tasks.append(
                asyncio.create_task(self._safe_handler_call(subscription.handler, event))
            )

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_handler_call(
        self,
        handler: EventHandler,
        event: OrchestratorEvent,
    ) -> None:
        try:
            start_time = time.monotonic()
            await handler(event)
            elapsed_ms = (time.monotonic() - start_time) * 1000

            total = self._metrics.events_processed
            avg = self._metrics.avg_processing_time_ms
            self._metrics.avg_processing_time_ms = (avg * total + elapsed_ms) / (
                total + 1
            )
            self._metrics.events_processed += 1

        except Exception as e:
            self._metrics.events_failed += 1
            logger.error(
                "event_handler_failed",
                event_type=event.event_type.name,
                tournament_id=event.tournament_id,
                error=str(e),
                exc_info=True,
            )

    def get_metrics(self) -> EventMetrics:
        return self._metrics
