"""
PostgreSQL repository tests.

Needs a disposable database in TEST_DATABASE_URL; skipped otherwise.
"""

import os
from dataclasses import replace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from orchestrator.models import Base
from orchestrator.tournament.brackets import BracketGenerator
from orchestrator.tournament.models import (
    MatchFormat,
    MatchStatus,
    Player,
    Server,
    Team,
    Tournament,
    TournamentType,
)
from orchestrator.tournament.sql_repository import SqlRepository

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")

MAPS = ("de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo")


@pytest_asyncio.fixture
async def sql_repository():
    """Fresh tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=NullPool, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield SqlRepository(factory)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def seed(repository) -> Tournament:
    teams = [Team(id=f"team-{i}", name=f"Team {i}", players=()) for i in range(1, 5)]
    await repository.save_teams(teams)
    tournament = Tournament(
        id="cup",
        name="Cup",
        type=TournamentType.SINGLE_ELIMINATION,
        format=MatchFormat.BO1,
        maps=MAPS,
        team_ids=("team-1", "team-2", "team-3", "team-4"),
    )
    await repository.save_tournament(tournament)
    await repository.replace_matches("cup", BracketGenerator().generate(tournament, teams))
    return tournament


class TestSqlRepository:
    @pytest.mark.asyncio
    async def test_bracket_round_trip(self, sql_repository):
        await seed(sql_repository)

        matches = await sql_repository.list_matches("cup")

        assert [m.slug for m in matches] == ["r1m1", "r1m2", "r2m1"]
        assert matches[0].winner_to.slug == "r2m1"
        assert (await sql_repository.get_tournament("cup")).maps == MAPS

    @pytest.mark.asyncio
    async def test_compare_and_update(self, sql_repository):
        await seed(sql_repository)

        updated = await sql_repository.compare_and_update(
            "r1m1", [MatchStatus.PENDING], status=MatchStatus.READY
        )
        assert updated.status == MatchStatus.READY

        stale = await sql_repository.compare_and_update(
            "r1m1", [MatchStatus.PENDING], status=MatchStatus.LOADED
        )
        assert stale is None
        assert (await sql_repository.get_match("r1m1")).status == MatchStatus.READY

    @pytest.mark.asyncio
    async def test_server_claim_is_exclusive(self, sql_repository):
        await seed(sql_repository)
        for i in (1, 2):
            await sql_repository.save_server(
                Server(id=f"srv-{i}", name=f"Server {i}", host=f"10.0.0.{i}", port=27015, password="x")
            )

        assert await sql_repository.claim_server("srv-1", "r1m1")
        assert not await sql_repository.claim_server("srv-1", "r1m2")
        assert not await sql_repository.claim_server("srv-2", "r1m1")

        assert not await sql_repository.release_server("srv-1", "r1m2")
        assert await sql_repository.release_server("srv-1", "r1m1")
        assert (await sql_repository.get_server("srv-1")).current_match is None

    @pytest.mark.asyncio
    async def test_save_server_keeps_claim(self, sql_repository):
        await seed(sql_repository)
        server = Server(id="srv-1", name="Server 1", host="10.0.0.1", port=27015, password="x")
        await sql_repository.save_server(server)
        assert await sql_repository.claim_server("srv-1", "r1m1")

        saved = await sql_repository.save_server(replace(server, name="Renamed", port=27016))

        assert saved.current_match == "r1m1"
        stored = await sql_repository.get_server("srv-1")
        assert stored.name == "Renamed"
        assert stored.port == 27016
        assert stored.current_match == "r1m1"

    @pytest.mark.asyncio
    async def test_matches_get_numeric_ids(self, sql_repository):
        await seed(sql_repository)

        matches = await sql_repository.list_matches("cup")
        ids = [m.match_id for m in matches]

        assert all(isinstance(i, int) for i in ids)
        assert len(set(ids)) == 3
        assert (await sql_repository.get_match_by_id(ids[1])).slug == "r1m2"
        assert await sql_repository.get_match_by_id(max(ids) + 1) is None

    @pytest.mark.asyncio
    async def test_players_upsert(self, sql_repository):
        await sql_repository.save_players([Player(steam_id="76561198000000101", name="a")])
        await sql_repository.save_players(
            [Player(steam_id="76561198000000101", name="renamed", matches_played=2)]
        )

        [player] = await sql_repository.get_players(["76561198000000101"])
        assert player.name == "renamed"
        assert player.matches_played == 2
