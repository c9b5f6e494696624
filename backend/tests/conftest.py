"""Shared fixtures: fake RCON transport, in-memory repository and a wired engine."""

import asyncio
import os
import random
from typing import Awaitable, Callable, Dict, List, Optional

import pytest

# Settings are read at import time by orchestrator.main
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("WEBHOOK_TOKEN", "test-webhook-token-4f1c9a7e")
os.environ.setdefault("ADMIN_API_KEY", "test-operator-key-b83d02e6")
os.environ.setdefault("ALLOCATION_POLL_INTERVAL", "0")

from orchestrator.schemas.events import parse_event  # noqa: E402
from orchestrator.tournament.dispatcher import CommandDispatcher  # noqa: E402
from orchestrator.tournament.distributed_lock import LocalLockManager  # noqa: E402
from orchestrator.tournament.engine import OrchestrationEngine  # noqa: E402
from orchestrator.tournament.event_bus import OrchestratorEventBus  # noqa: E402
from orchestrator.tournament.models import Player, Server, Team  # noqa: E402
from orchestrator.tournament.repository import InMemoryRepository  # noqa: E402

WEBHOOK_TOKEN = os.environ["WEBHOOK_TOKEN"]
ADMIN_API_KEY = os.environ["ADMIN_API_KEY"]
BASE_URL = "http://orchestrator.test"

MAP_POOL = (
    "de_ancient",
    "de_anubis",
    "de_dust2",
    "de_inferno",
    "de_mirage",
    "de_nuke",
    "de_vertigo",
)


# =============================================================================
# Fake RCON
# =============================================================================


class FakeRcon:
    """Stands in for ``rcon.source.rcon``; records every command per address."""

    def __init__(self):
        self.commands: List[tuple] = []
        self.status: Dict[str, str] = {}  # address -> matchzy_tournament_status
        self.current: Dict[str, str] = {}  # address -> matchzy_tournament_match
        self.failures: Dict[str, BaseException] = {}
        self.fail_commands: Dict[str, str] = {}  # address -> rejected command prefix
        self.delay: float = 0.0

    async def __call__(
        self,
        command: str,
        host: str,
        port: int,
        passwd: str,
        encoding: str = "utf-8",
        timeout: Optional[float] = None,
    ) -> str:
        address = f"{host}:{port}"
        if self.delay:
            await asyncio.sleep(self.delay)
        if address in self.failures:
            raise self.failures[address]
        prefix = self.fail_commands.get(address)
        if prefix and command.startswith(prefix):
            raise ConnectionResetError(f"{command.split()[0]} rejected")
        self.commands.append((address, command))

        if command == "matchzy_tournament_status":
            return f'"{command}" = "{self.status.get(address, "idle")}"'
        if command == "matchzy_tournament_match":
            return f'"{command}" = "{self.current.get(address, "")}"'
        if command == "matchzy_tournament_updated":
            return f'"{command}" = "0"'
        return ""

    def sent_to(self, address: str) -> List[str]:
        return [c for a, c in self.commands if a == address]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def map_pool():
    return MAP_POOL


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def rcon():
    return FakeRcon()


@pytest.fixture
def dispatcher(rcon):
    return CommandDispatcher(command_timeout=0.5, call_timeout=1.0, transport=rcon)


@pytest.fixture
def engine(repository, dispatcher, tmp_path):
    """Engine with the poll loop disabled; allocation is driven explicitly."""
    return OrchestrationEngine(
        repository=repository,
        dispatcher=dispatcher,
        locks=LocalLockManager(default_acquire_timeout_ms=2000),
        event_bus=OrchestratorEventBus(),
        base_url=BASE_URL,
        webhook_token=WEBHOOK_TOKEN,
        poll_interval=0,
        drain_timeout=0.1,
        demo_dir=str(tmp_path / "demos"),
        rng=random.Random(7),
    )


def _steam_id(n: int) -> str:
    return str(76561198000000000 + n)


@pytest.fixture
def make_teams(repository) -> Callable[..., Awaitable[List[Team]]]:
    """Save ``count`` teams of ``size`` players each."""

    async def factory(count: int, size: int = 5) -> List[Team]:
        teams = []
        for t in range(1, count + 1):
            players = tuple(
                Player(steam_id=_steam_id(t * 100 + p), name=f"team{t}-p{p}")
                for p in range(1, size + 1)
            )
            teams.append(Team(id=f"team-{t}", name=f"Team {t}", tag=f"T{t}", players=players))
        await repository.save_teams(teams)
        return teams

    return factory


@pytest.fixture
def make_players(repository) -> Callable[..., Awaitable[List[Player]]]:
    """Save ``count`` players with spread ratings."""

    async def factory(count: int) -> List[Player]:
        players = [
            Player(steam_id=_steam_id(5000 + i), name=f"player{i}", rating=800.0 + 37.0 * i)
            for i in range(1, count + 1)
        ]
        await repository.save_players(players)
        return players

    return factory


@pytest.fixture
def make_servers(repository) -> Callable[..., Awaitable[List[Server]]]:
    async def factory(count: int) -> List[Server]:
        servers = [
            Server(
                id=f"srv-{i}",
                name=f"Server {i}",
                host=f"10.0.0.{i}",
                port=27015,
                password="rcon-secret",
            )
            for i in range(1, count + 1)
        ]
        for server in servers:
            await repository.save_server(server)
        return servers

    return factory


@pytest.fixture
def send_event(engine):
    """Deliver a webhook payload through the reconciler."""

    async def factory(slug: str, payload: dict):
        match = await engine.repository.get_match(slug)
        payload = {"matchid": match.match_id if match else None, **payload}
        return await engine.handle_server_event(slug, parse_event(payload), payload)

    return factory


@pytest.fixture
def finish_match(send_event):
    """Take a loaded match live and end the series for ``winner``."""

    async def factory(slug: str, winner: str = "team1"):
        await send_event(slug, {"event": "going_live", "map_number": 0})
        won = 1 if winner == "team1" else 0
        return await send_event(
            slug,
            {
                "event": "series_end",
                "team1_series_score": won,
                "team2_series_score": 1 - won,
                "winner": {"team": winner},
            },
        )

    return factory
