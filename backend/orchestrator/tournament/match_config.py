"""
Match configuration builder.

Produces the MatchZy JSON config for a match from its veto result and the
team rosters. The config is frozen on first allocation; later lookups
(player team resolution, stats) read the frozen rosters only.
"""

import random
from typing import Dict, List, Optional

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import ValidationError
from .models import (
    Match,
    MatchConfig,
    Side,
    Team,
    TeamConfig,
    Tournament,
    TournamentSettings,
    TournamentType,
)

logger = get_logger(__name__)

# Sides used when maps were not chosen through a veto
FALLBACK_SIDES = ("team1_ct", "team2_ct", "knife")


def side_label(side_team1: Optional[Side]) -> str:
    """MatchZy map_sides entry for team1's starting side."""
    if side_team1 is Side.CT:
        return "team1_ct"
    if side_team1 is Side.T:
        return "team2_ct"
    return "knife"


def team_config(team: Team) -> TeamConfig:
    return TeamConfig(
        id=team.id,
        name=team.name,
        tag=team.display_tag,
        players={p.steam_id: p.name for p in team.players},
        series_score=0,
    )


def shuffle_cvars(settings: TournamentSettings) -> Dict[str, str]:
    """Round-limit convars for shuffle matches."""
    if settings.round_limit_type == "max_rounds":
        return {
            "mp_maxrounds": str(settings.max_rounds),
            "mp_overtime_enable": "0",
        }
    cvars = {"mp_maxrounds": "24"}
    if settings.overtime_enabled:
        cvars.update(
            {
                "mp_overtime_enable": "1",
                "mp_overtime_maxrounds": "6",
                "mp_overtime_startmoney": "10000",
            }
        )
    else:
        cvars["mp_overtime_enable"] = "0"
    return cvars


def build_match_config(
    match: Match,
    tournament: Tournament,
    team1: Team,
    team2: Team,
    rng: Optional[random.Random] = None,
) -> MatchConfig:
    """
    Build the config for ``match``.

    Map list:
    - completed veto: picked maps ordered by map number, sides from side picks
    - shuffle: the round's map, random starting sides
    - no veto: first num_maps maps of the pool with the fallback side pattern

    MatchZy only accepts a numeric matchid, so the match must carry its
    stored ``match_id``.
    """
    if match.match_id is None:
        raise ValidationError(
            f"Match {match.slug} has no numeric id", {"matchSlug": match.slug}
        )
    rng = rng or random.Random()
    cvars: Dict[str, str] = {}

    if tournament.type == TournamentType.SHUFFLE:
        num_maps = 1
        maplist = [tournament.maps[match.round - 1]]
        map_sides = [rng.choice(["team1_ct", "team2_ct"])]
        cvars = shuffle_cvars(tournament.settings)
    elif match.veto_state is not None:
        if not match.veto_state.is_complete:
            raise ValidationError(
                f"Veto for {match.slug} is not completed",
                {"matchSlug": match.slug, "step": match.veto_state.current_step},
            )
        num_maps = tournament.format.num_maps
        ordered = sorted(match.veto_state.picked_maps, key=lambda m: m.map_number)[:num_maps]
        maplist = [m.map_name for m in ordered]
        map_sides = [side_label(m.side_team1) for m in ordered]
    else:
        num_maps = tournament.format.num_maps
        if len(tournament.maps) < num_maps:
            raise ValidationError(
                f"Map pool has {len(tournament.maps)} maps, {num_maps} needed",
                {"maps": list(tournament.maps), "numMaps": num_maps},
            )
        maplist = list(tournament.maps[:num_maps])
        map_sides = _fallback_sides(num_maps)

    team1_cfg = team_config(team1)
    team2_cfg = team_config(team2)

    overlap = set(team1_cfg.players) & set(team2_cfg.players)
    if overlap:
        raise ValidationError(
            "Players listed on both rosters",
            {"matchSlug": match.slug, "steamIds": sorted(overlap)},
        )

    config = MatchConfig(
        matchid=match.match_id,
        num_maps=num_maps,
        maplist=tuple(maplist),
        map_sides=tuple(map_sides),
        team1=team1_cfg,
        team2=team2_cfg,
        players_per_team=max(len(team1_cfg.players), len(team2_cfg.players), 1),
        cvars=cvars,
    )

    logger.info(
        "match_config_built",
        match_slug=match.slug,
        num_maps=config.num_maps,
        maplist=list(config.maplist),
        map_sides=list(config.map_sides),
        team1=team1.name,
        team2=team2.name,
    )
    return config


def _fallback_sides(num_maps: int) -> List[str]:
    return [FALLBACK_SIDES[i % len(FALLBACK_SIDES)] for i in range(num_maps)]
