"""Orchestrator event bus tests."""

import pytest
import redis.asyncio as redis

from orchestrator.tournament.event_bus import OrchestratorEventBus
from orchestrator.tournament.models import OrchestratorEventType

READY = OrchestratorEventType.MATCH_READY
COMPLETED = OrchestratorEventType.MATCH_COMPLETED


class MockStreamRedis:
    def __init__(self, fail=False):
        self.entries = []
        self.fail = fail

    async def xadd(self, key, fields, maxlen=None, approximate=True):
        if self.fail:
            raise redis.ConnectionError("stream unavailable")
        self.entries.append((key, fields))
        return f"{len(self.entries)}-0"


class TestEventBus:
    @pytest.mark.asyncio
    async def test_fan_out_by_type(self):
        bus = OrchestratorEventBus()
        seen = []

        async def on_ready(event):
            seen.append(("ready", event.match_slug))

        async def on_any(event):
            seen.append(("any", event.event_type))

        bus.subscribe({READY}, on_ready)
        bus.subscribe({READY, COMPLETED}, on_any)

        await bus.emit(READY, "t1", match_slug="r1m1")
        await bus.emit(COMPLETED, "t1", match_slug="r1m1", winner="team-1")

        assert ("ready", "r1m1") in seen
        assert ("any", READY) in seen
        assert ("any", COMPLETED) in seen
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        bus = OrchestratorEventBus()
        delivered = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            delivered.append(event.data)

        bus.subscribe({COMPLETED}, broken)
        bus.subscribe({COMPLETED}, healthy)

        await bus.emit(COMPLETED, "t1", winner="team-2")

        assert delivered == [{"winner": "team-2"}]
        metrics = bus.get_metrics()
        assert metrics.events_failed == 1
        assert metrics.events_processed == 1
        assert metrics.events_published == 1

    @pytest.mark.asyncio
    async def test_tournament_filter(self):
        bus = OrchestratorEventBus()
        seen = []

        async def handler(event):
            seen.append(event.tournament_id)

        bus.subscribe({READY}, handler, tournament_id="t2")
        await bus.emit(READY, "t1")
        await bus.emit(READY, "t2")

        assert seen == ["t2"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = OrchestratorEventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        sub_id = bus.subscribe({READY}, handler)
        assert bus.unsubscribe(sub_id)
        assert not bus.unsubscribe(sub_id)

        await bus.emit(READY, "t1")
        assert seen == []


class TestAuditStream:
    @pytest.mark.asyncio
    async def test_events_appended(self):
        client = MockStreamRedis()
        bus = OrchestratorEventBus(client)

        await bus.emit(COMPLETED, "t1", match_slug="gf", server_id="srv-1", winner="team-1")

        key, fields = client.entries[0]
        assert key == OrchestratorEventBus.STREAM_KEY
        assert fields["event_type"] == "MATCH_COMPLETED"
        assert fields["match_slug"] == "gf"
        assert '"winner"' in fields["data"]

    @pytest.mark.asyncio
    async def test_stream_failure_does_not_block_handlers(self):
        bus = OrchestratorEventBus(MockStreamRedis(fail=True))
        seen = []

        async def handler(event):
            seen.append(event)

        bus.subscribe({READY}, handler)
        await bus.emit(READY, "t1")

        assert len(seen) == 1
        assert bus.get_metrics().stream_failures == 1
