"""Match config builder and MatchZy command tests."""

import random

import pytest

from orchestrator.tournament import matchzy
from orchestrator.tournament.match_config import (
    build_match_config,
    shuffle_cvars,
    side_label,
)
from orchestrator.tournament.models import (
    Match,
    MatchConfig,
    MatchFormat,
    Player,
    Side,
    Team,
    TeamSlot,
    Tournament,
    TournamentSettings,
    TournamentType,
    VetoActionKind,
)
from orchestrator.tournament.veto import VetoSequencer
from orchestrator.utils.errors import ValidationError

MAPS = ("de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo")


def team(team_id, first_id, size=5, tag=None):
    return Team(
        id=team_id,
        name=f"Team {team_id}",
        tag=tag,
        players=tuple(
            Player(steam_id=str(first_id + i), name=f"{team_id}-{i}") for i in range(size)
        ),
    )


def tournament(tournament_type=TournamentType.SINGLE_ELIMINATION, match_format=MatchFormat.BO3, **settings):
    return Tournament(
        id="t1",
        name="Cup",
        type=tournament_type,
        format=match_format,
        maps=MAPS,
        settings=TournamentSettings(**settings),
    )


def completed_bo3_veto():
    sequencer = VetoSequencer()
    state = sequencer.start(MatchFormat.BO3, MAPS, "alpha", "bravo")
    for team_slot, action, value in [
        (TeamSlot.TEAM1, VetoActionKind.BAN, "de_nuke"),
        (TeamSlot.TEAM2, VetoActionKind.BAN, "de_vertigo"),
        (TeamSlot.TEAM1, VetoActionKind.PICK, "de_mirage"),
        (TeamSlot.TEAM2, VetoActionKind.SIDE_PICK, Side.CT),
        (TeamSlot.TEAM2, VetoActionKind.PICK, "de_inferno"),
        (TeamSlot.TEAM1, VetoActionKind.SIDE_PICK, Side.CT),
        (TeamSlot.TEAM1, VetoActionKind.BAN, "de_ancient"),
        (TeamSlot.TEAM2, VetoActionKind.BAN, "de_anubis"),
    ]:
        if isinstance(value, Side):
            state = sequencer.apply(state, team_slot, action, side=value)
        else:
            state = sequencer.apply(state, team_slot, action, map_name=value)
    return state


class TestBuildMatchConfig:
    def test_from_completed_veto(self):
        match = Match(
            slug="r1m1", tournament_id="t1", round=1, match_number=1, match_id=7,
            team1_id="alpha", team2_id="bravo", veto_state=completed_bo3_veto(),
        )
        config = build_match_config(
            match, tournament(), team("alpha", 76561198000000100), team("bravo", 76561198000000200)
        )

        assert config.matchid == 7
        assert config.num_maps == 3
        assert config.maplist == ("de_mirage", "de_inferno", "de_dust2")
        assert config.map_sides == ("team2_ct", "team1_ct", "knife")
        assert config.expected_players_total == 10
        assert config.team1.tag == "TEAM"  # derived from the name
        assert config.team_of("76561198000000203") is TeamSlot.TEAM2
        assert config.team_of("76561198999999999") is None

    def test_incomplete_veto_rejected(self):
        state = VetoSequencer().start(MatchFormat.BO3, MAPS)
        match = Match(
            slug="r1m1", tournament_id="t1", round=1, match_number=1, match_id=7,
            team1_id="alpha", team2_id="bravo", veto_state=state,
        )
        with pytest.raises(ValidationError):
            build_match_config(
                match, tournament(), team("alpha", 76561198000000100), team("bravo", 76561198000000200)
            )

    def test_without_veto_uses_pool_order(self):
        match = Match(slug="r1m1", tournament_id="t1", round=1, match_number=1, match_id=7)
        config = build_match_config(
            match,
            tournament(veto_enabled=False),
            team("alpha", 76561198000000100),
            team("bravo", 76561198000000200),
        )
        assert config.maplist == MAPS[:3]
        assert config.map_sides == ("team1_ct", "team2_ct", "knife")
        assert config.cvars == {}

    def test_shuffle_uses_round_map_and_cvars(self):
        match = Match(slug="shuffle-r2-m1", tournament_id="t1", round=2, match_number=1, match_id=7)
        config = build_match_config(
            match,
            tournament(TournamentType.SHUFFLE, MatchFormat.BO1, round_limit_type="max_rounds", max_rounds=16),
            team("alpha", 76561198000000100, size=2),
            team("bravo", 76561198000000200, size=2),
            rng=random.Random(1),
        )
        assert config.num_maps == 1
        assert config.maplist == ("de_anubis",)
        assert config.map_sides[0] in ("team1_ct", "team2_ct")
        assert config.cvars == {"mp_maxrounds": "16", "mp_overtime_enable": "0"}
        assert config.players_per_team == 2

    def test_overlapping_rosters_rejected(self):
        match = Match(slug="r1m1", tournament_id="t1", round=1, match_number=1, match_id=7)
        with pytest.raises(ValidationError) as exc:
            build_match_config(
                match,
                tournament(veto_enabled=False),
                team("alpha", 76561198000000100),
                team("bravo", 76561198000000104),
            )
        assert exc.value.details["steamIds"] == ["76561198000000104"]

    def test_unsaved_match_rejected(self):
        match = Match(slug="r1m1", tournament_id="t1", round=1, match_number=1)
        with pytest.raises(ValidationError) as exc:
            build_match_config(
                match,
                tournament(veto_enabled=False),
                team("alpha", 76561198000000100),
                team("bravo", 76561198000000200),
            )
        assert exc.value.details == {"matchSlug": "r1m1"}

    def test_dict_shape_survives_reload(self):
        match = Match(slug="r1m1", tournament_id="t1", round=1, match_number=1, match_id=7)
        config = build_match_config(
            match,
            tournament(veto_enabled=False),
            team("alpha", 76561198000000100, tag="ALP"),
            team("bravo", 76561198000000200),
        )
        data = config.to_dict()

        assert data["spectators"] == {"players": {}}
        assert data["team1"]["players"]["76561198000000100"] == "alpha-0"
        assert MatchConfig.from_dict(data) == config


class TestSideHelpers:
    def test_side_label(self):
        assert side_label(Side.CT) == "team1_ct"
        assert side_label(Side.T) == "team2_ct"
        assert side_label(None) == "knife"

    def test_first_to_13_overtime(self):
        cvars = shuffle_cvars(TournamentSettings())
        assert cvars["mp_maxrounds"] == "24"
        assert cvars["mp_overtime_enable"] == "1"
        assert shuffle_cvars(TournamentSettings(overtime_enabled=False))["mp_overtime_enable"] == "0"


class TestMatchZyCommands:
    def test_quote_cannot_break_out(self):
        assert matchzy.quote('evil"; quit') == '"evil quit"'

    def test_webhook_commands(self):
        commands = matchzy.webhook_commands("http://orch", "secret-token", "r1m1")
        assert commands[0] == 'matchzy_remote_log_url "http://orch/api/events/r1m1"'
        assert f'matchzy_remote_log_header_key "{matchzy.WEBHOOK_HEADER}"' in commands

    def test_load_match_command(self):
        assert matchzy.load_match_command("http://orch", "gf") == (
            'matchzy_loadmatch_url "http://orch/api/matches/gf.json"'
        )

    def test_server_config_drops_unknown_convars(self):
        commands = matchzy.server_config_commands(
            chat_prefix="[Cup]",
            knife_enabled_default=False,
            minimum_ready_required=2,
            overrides={"matchzy_demo_path": "demos/", "sv_cheats": "1", "matchzy_autostart_mode": 1},
        )
        assert commands == [
            'matchzy_chat_prefix "[Cup]"',
            "matchzy_knife_enabled_default 0",
            "matchzy_minimum_ready_required 2",
            'matchzy_demo_path "demos/"',
            "matchzy_autostart_mode 1",
        ]

    def test_changelevel_strips_spaces(self):
        assert matchzy.changelevel_command("de_dust2") == "changelevel de_dust2"
        assert matchzy.changelevel_command('de dust2"; quit') == "changelevel dedust2quit"
