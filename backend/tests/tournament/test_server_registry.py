"""Server registry tests: availability filtering and occupancy claims."""

from dataclasses import replace

import pytest

from orchestrator.tournament.models import ServerStatus
from orchestrator.tournament.servers import ServerRegistry
from orchestrator.utils.errors import ServerNotFoundError


@pytest.fixture
def registry(repository, dispatcher):
    return ServerRegistry(repository, dispatcher)


class TestAvailability:
    @pytest.mark.asyncio
    async def test_only_idle_online_unoccupied(self, registry, repository, rcon, make_servers):
        servers = await make_servers(5)
        rcon.status["10.0.0.2:27015"] = "live"
        rcon.failures["10.0.0.3:27015"] = ConnectionRefusedError("down")
        await repository.save_server(replace(servers[3], enabled=False))
        await registry.claim("srv-5", "r1m1")

        available = await registry.available_servers()

        assert [s.id for s in available] == ["srv-1"]
        assert registry.cached_availability("srv-3").status is ServerStatus.OFFLINE
        # Disabled servers are never probed
        assert rcon.sent_to("10.0.0.4:27015") == []

    @pytest.mark.asyncio
    async def test_reachability_check_disabled(self, repository, dispatcher, rcon, make_servers):
        await make_servers(2)
        registry = ServerRegistry(repository, dispatcher, probe_enabled=False)

        available = await registry.available_servers()

        assert [s.id for s in available] == ["srv-1", "srv-2"]
        assert rcon.commands == []

    @pytest.mark.asyncio
    async def test_report(self, registry, rcon, make_servers):
        await make_servers(2)
        rcon.status["10.0.0.2:27015"] = "warmup"
        rcon.current["10.0.0.2:27015"] = "r1m1"

        report = {entry["id"]: entry for entry in await registry.availability_report()}

        assert report["srv-1"]["available"] is True
        assert report["srv-2"]["available"] is False
        assert report["srv-2"]["availability"]["status"] == "warmup"
        assert report["srv-2"]["availability"]["match_slug"] == "r1m1"
        assert "password" not in report["srv-1"]


class TestOccupancy:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, registry, make_servers):
        await make_servers(2)

        assert await registry.claim("srv-1", "r1m1")
        assert not await registry.claim("srv-1", "r1m2")
        # A match holds at most one server
        assert not await registry.claim("srv-2", "r1m1")

    @pytest.mark.asyncio
    async def test_release_checks_match(self, registry, make_servers):
        await make_servers(1)
        await registry.claim("srv-1", "r1m1")

        assert not await registry.release("srv-1", "r1m2")
        assert await registry.release("srv-1", "r1m1")
        assert not (await registry.get_server("srv-1")).is_occupied

    @pytest.mark.asyncio
    async def test_save_never_writes_occupancy(self, registry, repository, make_servers):
        [server] = await make_servers(1)
        await registry.claim("srv-1", "r1m1")

        await registry.save_server(replace(server, enabled=False, current_match="r1m2"))
        assert (await repository.get_server("srv-1")).current_match == "r1m1"

        await registry.save_server(replace(server, id="srv-9", current_match="r1m3"))
        assert not (await repository.get_server("srv-9")).is_occupied

    @pytest.mark.asyncio
    async def test_unknown_server(self, registry):
        with pytest.raises(ServerNotFoundError):
            await registry.get_server("missing")
