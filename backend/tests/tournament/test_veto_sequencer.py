"""
Map veto tests.

Covers:
- Canonical orders and required pool sizes
- Turn / action / map validation
- Decider handling (BO1 side pick, BO3/BO5 knife decider)
- Team-relative views
- Persisted veto through VetoService
"""

import random

import pytest
import pytest_asyncio
from hypothesis import given, settings, strategies as st

from orchestrator.tournament.models import (
    MatchFormat,
    MatchStatus,
    SeedingMethod,
    Side,
    TeamSlot,
    TournamentSettings,
    TournamentType,
    VetoActionKind,
    VetoStatus,
    VetoStep,
)
from orchestrator.tournament.veto import (
    BO1_VETO_ORDER,
    BO3_VETO_ORDER,
    BO5_VETO_ORDER,
    VetoSequencer,
    get_veto_order,
    required_pool_size,
)
from orchestrator.utils.errors import (
    InvalidVetoActionError,
    StateConflictError,
    ValidationError,
)

T1, T2 = TeamSlot.TEAM1, TeamSlot.TEAM2
BAN, PICK, SIDE = VetoActionKind.BAN, VetoActionKind.PICK, VetoActionKind.SIDE_PICK

POOL = ("de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo")


def play(sequencer, state, moves):
    for team, action, value in moves:
        if action is SIDE:
            state = sequencer.apply(state, team, action, side=value)
        else:
            state = sequencer.apply(state, team, action, map_name=value)
    return state


class TestVetoOrders:
    """Canonical orders."""

    @pytest.mark.parametrize("fmt", list(MatchFormat))
    def test_every_format_needs_seven_maps(self, fmt):
        assert required_pool_size(fmt, get_veto_order(fmt)) == 7

    def test_bo1_is_six_bans_then_side(self):
        assert [s.action for s in BO1_VETO_ORDER] == [BAN] * 6 + [SIDE]

    def test_bo3_order(self):
        assert [(s.team, s.action) for s in BO3_VETO_ORDER] == [
            (T1, BAN), (T2, BAN), (T1, PICK), (T2, SIDE),
            (T2, PICK), (T1, SIDE), (T1, BAN), (T2, BAN),
        ]

    def test_bo5_has_four_picks(self):
        assert sum(1 for s in BO5_VETO_ORDER if s.action is PICK) == 4

    def test_custom_order_overrides_default(self):
        custom = {"bo1": (VetoStep(T2, BAN), VetoStep(T1, BAN))}
        assert get_veto_order(MatchFormat.BO1, custom) == custom["bo1"]
        assert get_veto_order(MatchFormat.BO3, custom) == BO3_VETO_ORDER


class TestVetoSequencer:
    """Pure state machine."""

    def setup_method(self):
        self.sequencer = VetoSequencer()

    def test_start_rejects_wrong_pool_size(self):
        with pytest.raises(ValidationError):
            self.sequencer.start(MatchFormat.BO3, POOL[:6])

    def test_start_rejects_duplicates(self):
        with pytest.raises(ValidationError):
            self.sequencer.start(MatchFormat.BO1, POOL[:6] + ("de_ancient",))

    def test_wrong_team_is_rejected_without_change(self):
        state = self.sequencer.start(MatchFormat.BO1, POOL)
        with pytest.raises(InvalidVetoActionError) as exc:
            self.sequencer.apply(state, T2, BAN, map_name="de_nuke")
        assert exc.value.details["expectedTeam"] == "team1"
        assert state.actions == ()
        assert state.available_maps == POOL

    def test_wrong_action_is_rejected(self):
        state = self.sequencer.start(MatchFormat.BO3, POOL)
        with pytest.raises(InvalidVetoActionError):
            self.sequencer.apply(state, T1, PICK, map_name="de_nuke")

    def test_unavailable_map_is_rejected(self):
        state = self.sequencer.start(MatchFormat.BO1, POOL)
        state = self.sequencer.apply(state, T1, BAN, map_name="de_nuke")
        with pytest.raises(InvalidVetoActionError):
            self.sequencer.apply(state, T2, BAN, map_name="de_nuke")
        with pytest.raises(InvalidVetoActionError):
            self.sequencer.apply(state, T2, BAN, map_name="de_cache")

    def test_side_pick_requires_side(self):
        state = self.sequencer.start(MatchFormat.BO3, POOL)
        state = play(self.sequencer, state, [
            (T1, BAN, "de_nuke"), (T2, BAN, "de_vertigo"), (T1, PICK, "de_mirage"),
        ])
        with pytest.raises(InvalidVetoActionError):
            self.sequencer.apply(state, T2, SIDE)

    def test_bo1_last_map_becomes_decider_with_side(self):
        state = self.sequencer.start(MatchFormat.BO1, POOL, "team-a", "team-b")
        state = play(self.sequencer, state, [
            (T1, BAN, "de_ancient"), (T2, BAN, "de_anubis"), (T1, BAN, "de_dust2"),
            (T2, BAN, "de_inferno"), (T1, BAN, "de_mirage"), (T2, BAN, "de_nuke"),
            (T1, SIDE, Side.T),
        ])

        assert state.status == VetoStatus.COMPLETED
        assert state.completed_at is not None
        assert len(state.picked_maps) == 1
        decider = state.picked_maps[0]
        assert decider.map_name == "de_vertigo"
        assert decider.picked_by == "decider"
        assert decider.side_team1 is Side.T
        assert decider.side_team2 is Side.CT
        assert state.available_maps == ()

    def test_bo3_full_veto(self):
        state = self.sequencer.start(MatchFormat.BO3, POOL)
        state = play(self.sequencer, state, [
            (T1, BAN, "de_nuke"), (T2, BAN, "de_vertigo"),
            (T1, PICK, "de_mirage"), (T2, SIDE, Side.CT),
            (T2, PICK, "de_inferno"), (T1, SIDE, Side.T),
            (T1, BAN, "de_ancient"), (T2, BAN, "de_anubis"),
        ])

        assert state.is_complete
        assert [m.map_name for m in state.picked_maps] == ["de_mirage", "de_inferno", "de_dust2"]
        first, second, decider = state.picked_maps
        # Team2 chose CT on team1's pick
        assert first.side_team2 is Side.CT and first.side_team1 is Side.T
        assert second.side_team1 is Side.T
        assert decider.picked_by == "decider"
        assert decider.knife_round is True
        assert not decider.has_sides

    def test_no_action_after_completion(self):
        state = self.sequencer.start(MatchFormat.BO1, POOL)
        rng = random.Random(3)
        while not state.is_complete:
            step = state.next_step
            action, map_name, side = self.sequencer.random_action(state, rng)
            state = self.sequencer.apply(state, step.team, action, map_name, side)

        with pytest.raises(InvalidVetoActionError):
            self.sequencer.apply(state, T1, BAN, map_name=POOL[0])

    @settings(max_examples=25, deadline=None)
    @given(fmt=st.sampled_from(list(MatchFormat)), seed=st.integers(0, 10_000))
    def test_random_vetoes_pick_num_maps_distinct_maps(self, fmt, seed):
        rng = random.Random(seed)
        for _ in range(5):
            state = self.sequencer.start(fmt, POOL)
            while not state.is_complete:
                step = state.next_step
                action, map_name, side = self.sequencer.random_action(state, rng)
                state = self.sequencer.apply(state, step.team, action, map_name, side)

            picked = [m.map_name for m in state.picked_maps]
            assert len(picked) == fmt.num_maps
            assert len(set(picked)) == len(picked)
            assert not set(picked) & set(state.banned_maps)
            assert [m.map_number for m in state.picked_maps] == list(range(1, fmt.num_maps + 1))


class TestVetoView:
    def test_view_is_relative_to_viewer(self):
        sequencer = VetoSequencer()
        state = sequencer.start(MatchFormat.BO3, POOL)
        state = play(sequencer, state, [
            (T1, BAN, "de_nuke"), (T2, BAN, "de_vertigo"),
            (T1, PICK, "de_mirage"), (T2, SIDE, Side.CT),
        ])

        mine = state.view_for(T1)
        theirs = state.view_for(T2)

        assert mine["your_turn"] is False
        assert theirs["your_turn"] is True
        assert mine["current_action"] == "pick"
        assert mine["picked_maps"][0]["picked_by"] == "self"
        assert theirs["picked_maps"][0]["picked_by"] == "opponent"
        assert mine["picked_maps"][0]["your_side"] == "T"
        assert theirs["picked_maps"][0]["your_side"] == "CT"
        assert [a["by"] for a in theirs["actions"]] == ["opponent", "self", "opponent", "self"]


class TestVetoService:
    """Persisted veto through the engine's components."""

    @pytest_asyncio.fixture
    async def vetoing_match(self, engine, make_teams, map_pool):
        await make_teams(2)
        tournament = await engine.create_tournament(
            name="Cup",
            tournament_type=TournamentType.SINGLE_ELIMINATION,
            match_format=MatchFormat.BO1,
            maps=map_pool,
            team_ids=["team-1", "team-2"],
            settings=TournamentSettings(seeding_method=SeedingMethod.MANUAL),
        )
        await engine.start_tournament(tournament.id)
        return await engine.get_match("r1m1")

    @pytest.mark.asyncio
    async def test_start_opens_veto(self, vetoing_match):
        assert vetoing_match.status == MatchStatus.PENDING
        assert vetoing_match.veto_state is not None
        assert vetoing_match.veto_state.team1_id == "team-1"

    @pytest.mark.asyncio
    async def test_submit_persists_and_records(self, engine, repository, vetoing_match):
        state = await engine.submit_veto_action("r1m1", T1, BAN, "de_nuke")

        stored = await engine.get_match("r1m1")
        assert stored.veto_state == state
        events = await repository.list_events("r1m1")
        assert events[-1]["event_type"] == "veto_action"
        assert events[-1]["payload"]["map_name"] == "de_nuke"

    @pytest.mark.asyncio
    async def test_completion_marks_ready(self, engine, vetoing_match):
        state = await engine.simulate_veto("r1m1", random.Random(5))

        assert state.is_complete
        match = await engine.get_match("r1m1")
        assert match.status == MatchStatus.READY

    @pytest.mark.asyncio
    async def test_action_after_ready_conflicts(self, engine, vetoing_match):
        await engine.simulate_veto("r1m1", random.Random(5))
        with pytest.raises(StateConflictError):
            await engine.submit_veto_action("r1m1", T1, BAN, "de_nuke")

    @pytest.mark.asyncio
    async def test_view_before_start_conflicts(self, engine, make_teams, map_pool):
        await make_teams(2)
        await engine.create_tournament(
            name="Cup",
            tournament_type=TournamentType.SINGLE_ELIMINATION,
            match_format=MatchFormat.BO1,
            maps=map_pool,
            team_ids=["team-1", "team-2"],
        )
        with pytest.raises(StateConflictError):
            await engine.veto_view("r1m1", T1)
