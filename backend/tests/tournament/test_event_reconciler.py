"""
Webhook event reconciliation tests.

Covers:
- Discarding events for unknown or mismatched matches
- Status gating per event type
- Stale live snapshots
- Series end: stats aggregation and a single rating submission
"""

import pydantic
import pytest
import pytest_asyncio

from orchestrator.schemas.events import SeriesStartEvent, parse_event
from orchestrator.tournament.models import (
    MatchFormat,
    MatchStatus,
    OrchestratorEventType,
    SeedingMethod,
    TeamSlot,
    TournamentSettings,
    TournamentStatus,
    TournamentType,
)
from orchestrator.tournament.rating import RatingPipeline

TEAM1_PLAYER = "76561198000000101"
TEAM2_PLAYER = "76561198000000201"


class CountingRating(RatingPipeline):
    def __init__(self):
        self.calls = []

    async def process_match(self, match, stats, map_results=()):
        self.calls.append((match.slug, list(stats), list(map_results)))
        return True


@pytest.fixture
def rating(engine):
    pipeline = CountingRating()
    engine.reconciler.rating = pipeline
    return pipeline


@pytest_asyncio.fixture
async def loaded(engine, make_teams, make_servers, map_pool):
    """Two-team final loaded on srv-1."""
    await make_teams(2)
    await make_servers(1)
    tournament = await engine.create_tournament(
        name="Final",
        tournament_type=TournamentType.SINGLE_ELIMINATION,
        match_format=MatchFormat.BO1,
        maps=map_pool,
        team_ids=["team-1", "team-2"],
        settings=TournamentSettings(veto_enabled=False, seeding_method=SeedingMethod.MANUAL),
    )
    await engine.start_tournament(tournament.id)
    match = await engine.get_match("r1m1")
    assert match.status == MatchStatus.LOADED
    return match


def team_score(score, series_score=0, players=()):
    return {
        "score": score,
        "series_score": series_score,
        "players": [
            {"steamid": steam_id, "name": f"p{steam_id[-3:]}", "stats": stats}
            for steam_id, stats in players
        ],
    }


class TestDiscard:
    @pytest.mark.asyncio
    async def test_unknown_match(self, send_event):
        result = await send_event("r9m9", {"event": "going_live"})
        assert not result.accepted
        assert result.reason == "unknown match"

    @pytest.mark.asyncio
    async def test_matchid_mismatch(self, engine, send_event, loaded):
        result = await send_event("r1m1", {"event": "going_live", "matchid": loaded.match_id + 100})

        assert not result.accepted
        assert result.reason == "matchid does not match"
        assert (await engine.get_match("r1m1")).status == MatchStatus.LOADED

    @pytest.mark.asyncio
    async def test_matchid_as_string_accepted(self, engine, send_event, loaded):
        result = await send_event("r1m1", {"event": "going_live", "matchid": str(loaded.match_id)})

        assert result.accepted
        assert (await engine.get_match("r1m1")).status == MatchStatus.LIVE

    @pytest.mark.asyncio
    async def test_unhandled_event_recorded(self, repository, send_event, loaded):
        result = await send_event("r1m1", {"event": "side_picked", "team": "team1"})

        assert result.accepted
        assert result.reason == "ignored"
        assert (await repository.list_events("r1m1"))[-1]["event_type"] == "side_picked"

    @pytest.mark.asyncio
    async def test_malformed_known_event(self, send_event, loaded):
        with pytest.raises(pydantic.ValidationError):
            await send_event("r1m1", {"event": "player_connect"})

    @pytest.mark.asyncio
    async def test_discard_is_published(self, engine, send_event, loaded):
        seen = []

        async def on_discard(event):
            seen.append(event.data["reason"])

        engine.event_bus.subscribe({OrchestratorEventType.SERVER_EVENT_DISCARDED}, on_discard)
        await send_event("r1m1", {"event": "series_end", "winner": {"team": "team1"}})

        assert seen == ["match is loaded"]


class TestLiveEvents:
    @pytest.mark.asyncio
    async def test_going_live_once_then_noop(self, engine, send_event, loaded):
        assert (await send_event("r1m1", {"event": "going_live", "map_number": 0})).accepted
        assert (await send_event("r1m1", {"event": "going_live", "map_number": 1})).accepted
        assert (await engine.get_match("r1m1")).status == MatchStatus.LIVE

    @pytest.mark.asyncio
    async def test_player_presence(self, engine, send_event, loaded):
        await send_event("r1m1", {"event": "player_connect", "player": {"steamid": TEAM1_PLAYER}})
        await send_event("r1m1", {"event": "player_connect", "player": {"steamid": TEAM2_PLAYER}})
        await send_event("r1m1", {"event": "player_disconnect", "player": {"steamid": TEAM1_PLAYER}})

        match = await engine.get_match("r1m1")
        assert match.connected_players == frozenset({TEAM2_PLAYER})

    @pytest.mark.asyncio
    async def test_round_end_requires_live(self, send_event, loaded):
        result = await send_event(
            "r1m1",
            {"event": "round_end", "round_number": 1, "team1": team_score(1), "team2": team_score(0)},
        )
        assert not result.accepted
        assert result.reason == "match is loaded"

    @pytest.mark.asyncio
    async def test_stale_snapshot_dropped(self, engine, send_event, loaded):
        await send_event("r1m1", {"event": "going_live"})
        await send_event(
            "r1m1",
            {"event": "round_end", "round_number": 5, "team1": team_score(3), "team2": team_score(2)},
        )

        stale = await send_event(
            "r1m1",
            {"event": "round_end", "round_number": 3, "team1": team_score(2), "team2": team_score(1)},
        )

        assert not stale.accepted
        assert stale.reason == "stale snapshot"
        snapshot = (await engine.get_match("r1m1")).live_snapshot
        assert (snapshot.map_number, snapshot.round_number) == (1, 5)
        assert (snapshot.team1_score, snapshot.team2_score) == (3, 2)


class TestSeriesEnd:
    @pytest.mark.asyncio
    async def test_completion_with_stats(self, engine, repository, rating, send_event, loaded):
        await send_event("r1m1", {"event": "going_live"})
        await send_event(
            "r1m1",
            {
                "event": "map_result",
                "map_number": 0,
                "team1": team_score(9, 0, [(TEAM1_PLAYER, {"kills": 11, "deaths": 18})]),
                "team2": team_score(13, 1, [(TEAM2_PLAYER, {"kills": 24, "deaths": 9})]),
                "winner": {"team": "team2"},
            },
        )

        result = await send_event(
            "r1m1",
            {
                "event": "series_end",
                "team1_series_score": 0,
                "team2_series_score": 1,
                "winner": {"team": "team2"},
            },
        )

        assert result.accepted
        match = await engine.get_match("r1m1")
        assert match.status == MatchStatus.COMPLETED
        assert match.winner_id == "team-2"
        assert (match.team1_score, match.team2_score) == (0, 1)
        assert match.rating_processed
        assert not (await repository.get_server("srv-1")).is_occupied

        [map_result] = await repository.list_map_results("r1m1")
        assert map_result.map_number == 1
        assert map_result.map_name == "de_ancient"
        assert map_result.winner is TeamSlot.TEAM2

        stats = {s.steam_id: s for s in await repository.list_player_stats("r1m1")}
        assert stats[TEAM2_PLAYER].team is TeamSlot.TEAM2
        assert stats[TEAM2_PLAYER].team_id == "team-2"
        assert stats[TEAM2_PLAYER].stats == {"kills": 24, "deaths": 9}

        assert (await engine.get_tournament(match.tournament_id)).status == TournamentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_series_end_rates_once(self, engine, rating, finish_match, send_event, loaded):
        await finish_match("r1m1", winner="team1")

        again = await send_event(
            "r1m1", {"event": "series_end", "winner": {"team": "team2"}}
        )

        assert not again.accepted
        assert len(rating.calls) == 1
        assert (await engine.get_match("r1m1")).winner_id == "team-1"

    @pytest.mark.asyncio
    async def test_rating_failure_leaves_flag_unset(self, engine, finish_match, loaded):
        class Broken(RatingPipeline):
            async def process_match(self, match, stats, map_results=()):
                raise RuntimeError("rating service exploded")

        engine.reconciler.rating = Broken()
        result = await finish_match("r1m1")

        assert result.accepted
        match = await engine.get_match("r1m1")
        assert match.status == MatchStatus.COMPLETED
        assert not match.rating_processed

    @pytest.mark.asyncio
    async def test_demo_after_completion(self, engine, finish_match, send_event, loaded):
        await finish_match("r1m1")

        result = await send_event(
            "r1m1", {"event": "demo_upload_ended", "filename": "r1m1_de_ancient.dem"}
        )

        assert result.accepted
        assert (await engine.get_match("r1m1")).demo_file == "r1m1_de_ancient.dem"

    @pytest.mark.asyncio
    async def test_failed_demo_upload_discarded(self, send_event, loaded):
        result = await send_event(
            "r1m1", {"event": "demo_upload_ended", "filename": "x.dem", "success": False}
        )
        assert not result.accepted


class TestParseEvent:
    def test_numeric_matchid(self):
        event = parse_event({"event": "series_start", "matchid": 42, "num_maps": 3})

        assert isinstance(event, SeriesStartEvent)
        assert event.matchid == 42
        assert event.num_maps == 3

    def test_unhandled_event_is_none(self):
        assert parse_event({"event": "side_picked", "matchid": 42}) is None

    def test_malformed_known_event_raises(self):
        with pytest.raises(pydantic.ValidationError):
            parse_event({"event": "round_end", "matchid": 42, "round_number": "first"})
