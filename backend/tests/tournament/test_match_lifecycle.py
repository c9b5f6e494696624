"""
Match lifecycle tests.

Covers:
- Allowed transitions and compare-and-update rejections
- Server release on completion and restart
- Winner advancement and tournament completion
- Reset with fed slots cleared
"""

import pytest
import pytest_asyncio

from orchestrator.tournament.distributed_lock import LocalLockManager
from orchestrator.tournament.event_bus import OrchestratorEventBus
from orchestrator.tournament.lifecycle import MatchStateMachine, can_transition
from orchestrator.tournament.models import (
    MatchConfig,
    MatchFormat,
    MatchStatus,
    OrchestratorEventType,
    SeedingMethod,
    TeamConfig,
    TeamSlot,
    Tournament,
    TournamentSettings,
    TournamentStatus,
    TournamentType,
)

CONFIG = MatchConfig(
    matchid=1,
    num_maps=1,
    maplist=("de_mirage",),
    map_sides=("knife",),
    team1=TeamConfig(id="team-1", name="Team 1", tag="T1"),
    team2=TeamConfig(id="team-2", name="Team 2", tag="T2"),
)


@pytest.fixture
def bus():
    return OrchestratorEventBus()


@pytest.fixture
def machine(repository, bus):
    return MatchStateMachine(repository, bus, LocalLockManager(default_acquire_timeout_ms=500))


@pytest_asyncio.fixture
async def bracket(machine, repository, make_teams, make_servers, map_pool):
    """Four-team SE bracket, veto off, tournament in progress."""
    await make_teams(4)
    await make_servers(2)
    tournament = Tournament(
        id="cup",
        name="Cup",
        type=TournamentType.SINGLE_ELIMINATION,
        format=MatchFormat.BO1,
        maps=map_pool,
        team_ids=("team-1", "team-2", "team-3", "team-4"),
        status=TournamentStatus.IN_PROGRESS,
        settings=TournamentSettings(veto_enabled=False, seeding_method=SeedingMethod.MANUAL),
    )
    await repository.save_tournament(tournament)
    await machine.install_bracket(tournament)
    return tournament


async def take_live(machine, repository, slug, server_id):
    assert (await machine.open_match(slug)).applied
    assert await repository.claim_server(server_id, slug)
    assert (await machine.mark_loaded(slug, server_id, CONFIG)).applied
    assert (await machine.mark_live(slug)).applied


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (MatchStatus.PENDING, MatchStatus.READY, True),
            (MatchStatus.PENDING, MatchStatus.LOADED, False),
            (MatchStatus.READY, MatchStatus.LIVE, False),
            (MatchStatus.LOADED, MatchStatus.READY, True),
            (MatchStatus.LIVE, MatchStatus.COMPLETED, True),
            (MatchStatus.COMPLETED, MatchStatus.READY, False),
        ],
    )
    def test_can_transition(self, current, target, allowed):
        assert can_transition(current, target) is allowed


class TestTransitions:
    @pytest.mark.asyncio
    async def test_open_without_veto_goes_ready(self, machine, bus, bracket):
        seen = []

        async def on_ready(event):
            seen.append(event.match_slug)

        bus.subscribe({OrchestratorEventType.MATCH_READY}, on_ready)
        result = await machine.open_match("r1m1")

        assert result.applied
        assert result.match.status == MatchStatus.READY
        assert seen == ["r1m1"]

    @pytest.mark.asyncio
    async def test_open_rejects_missing_teams(self, machine, bracket):
        result = await machine.open_match("r2m1")
        assert not result.applied
        assert result.reason == "teams not yet known"

    @pytest.mark.asyncio
    async def test_out_of_order_rejected_without_change(self, machine, repository, bracket):
        await machine.open_match("r1m1")

        result = await machine.mark_live("r1m1")

        assert not result.applied
        assert (await repository.get_match("r1m1")).status == MatchStatus.READY

    @pytest.mark.asyncio
    async def test_config_is_frozen_on_first_load(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")
        await machine.return_to_ready("r1m1")
        await repository.claim_server("srv-2", "r1m1")

        other = MatchConfig(
            matchid=1, num_maps=1, maplist=("de_nuke",), map_sides=("knife",),
            team1=CONFIG.team1, team2=CONFIG.team2,
        )
        result = await machine.mark_loaded("r1m1", "srv-2", other)

        assert result.match.config.maplist == ("de_mirage",)
        assert result.match.server_id == "srv-2"

    @pytest.mark.asyncio
    async def test_return_to_ready_releases_server(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")

        result = await machine.return_to_ready("r1m1")

        assert result.match.status == MatchStatus.READY
        assert result.match.server_id is None
        assert not (await repository.get_server("srv-1")).is_occupied


class TestCompletion:
    @pytest.mark.asyncio
    async def test_winner_must_be_in_match(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")

        result = await machine.mark_completed("r1m1", "team-3")

        assert not result.applied
        assert (await repository.get_match("r1m1")).status == MatchStatus.LIVE

    @pytest.mark.asyncio
    async def test_completion_advances_and_releases(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")

        result = await machine.mark_completed("r1m1", "team-2", 0, 1)

        assert result.applied
        assert result.match.winner_id == "team-2"
        assert not (await repository.get_server("srv-1")).is_occupied
        final = await repository.get_match("r2m1")
        assert final.team1_id == "team-2"
        assert final.status == MatchStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_completion_rejected(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")
        await machine.mark_completed("r1m1", "team-1")

        again = await machine.mark_completed("r1m1", "team-2")

        assert not again.applied
        assert (await repository.get_match("r1m1")).winner_id == "team-1"

    @pytest.mark.asyncio
    async def test_final_completes_tournament(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")
        await take_live(machine, repository, "r1m2", "srv-2")
        await machine.mark_completed("r1m1", "team-1")
        await machine.mark_completed("r1m2", "team-4")

        final = await repository.get_match("r2m1")
        assert (final.team1_id, final.team2_id) == ("team-1", "team-4")
        assert final.status == MatchStatus.READY

        assert await repository.claim_server("srv-1", "r2m1")
        await machine.mark_loaded("r2m1", "srv-1", CONFIG)
        await machine.mark_live("r2m1")
        await machine.mark_completed("r2m1", "team-4")

        tournament = await repository.get_tournament("cup")
        assert tournament.status == TournamentStatus.COMPLETED
        assert tournament.completed_at is not None


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_clears_fed_slots_only(self, machine, repository, bracket):
        await take_live(machine, repository, "r1m1", "srv-1")
        await machine.mark_completed("r1m1", "team-1")

        matches = await repository.list_matches("cup")
        fed = await machine.fed_slots(matches)
        assert fed["r1m1"] == set()
        assert fed["r2m1"] == {TeamSlot.TEAM1, TeamSlot.TEAM2}

        for match in matches:
            await machine.reset_match(match.slug, fed[match.slug])

        first = await repository.get_match("r1m1")
        final = await repository.get_match("r2m1")
        assert first.status == MatchStatus.PENDING
        assert (first.team1_id, first.team2_id) == ("team-1", "team-2")
        assert first.winner_id is None and first.config is None
        assert final.team1_id is None
