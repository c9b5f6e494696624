"""
Shuffle Tournament Rounds.

Players register individually; every round they are split into balanced
ad hoc teams and play the round's map. Rounds are generated one at a time,
the next one only after every match of the current round is completed.

Team balancing:
1. Sort players by rating (highest first)
2. Greedy: each player joins the non-full team with the lowest average
3. Swap improvement: exchange players between the strongest and weakest
   team while it narrows the gap (bounded iterations)
"""

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from orchestrator.utils.errors import BracketValidationError
from .models import (
    BracketSide,
    Match,
    MatchStatus,
    Player,
    Team,
    Tournament,
)

DEFAULT_RATING = 1000.0
MAX_SWAP_ITERATIONS = 10


def shuffle_match_slug(round_number: int, match_number: int) -> str:
    return f"shuffle-r{round_number}-m{match_number}"


def shuffle_round_team_prefix(round_number: int) -> str:
    return f"shuffle-r{round_number}-"


def shuffle_team_id(round_number: int, match_number: int, team_number: int) -> str:
    return f"{shuffle_round_team_prefix(round_number)}m{match_number}-team{team_number}"


def _average(players: Sequence[Player]) -> float:
    if not players:
        return 0.0
    return sum(p.rating for p in players) / len(players)


def balance_teams(
    players: Sequence[Player],
    team_size: int,
    optimize: bool = True,
) -> List[List[Player]]:
    """Split players into len(players) // team_size teams of equal size."""
    num_teams = len(players) // team_size
    if num_teams < 2:
        raise BracketValidationError(
            "Not enough players for two teams",
            {"players": len(players), "teamSize": team_size},
        )

    teams: List[List[Player]] = [[] for _ in range(num_teams)]
    ranked = sorted(players, key=lambda p: (-p.rating, p.steam_id))[: num_teams * team_size]

    for player in ranked:
        open_teams = [t for t in teams if len(t) < team_size]
        target = min(open_teams, key=lambda t: (_average(t) if t else float("-inf"), teams.index(t)))
        target.append(player)

    if optimize:
        for _ in range(MAX_SWAP_ITERATIONS):
            if not _improve_once(teams):
                break

    return teams


def _improve_once(teams: List[List[Player]]) -> bool:
    """Best single swap between the strongest and weakest team; False if none helps."""
    strongest = max(teams, key=_average)
    weakest = min(teams, key=_average)
    if strongest is weakest:
        return False

    gap = _average(strongest) - _average(weakest)
    best: Optional[Tuple[float, int, int]] = None
    size = len(strongest)

    for i, high in enumerate(strongest):
        for j, low in enumerate(weakest):
            delta = (high.rating - low.rating) / size
            new_gap = abs(gap - 2 * delta)
            if new_gap < gap and (best is None or new_gap < best[0]):
                best = (new_gap, i, j)

    if best is None:
        return False

    _, i, j = best
    strongest[i], weakest[j] = weakest[j], strongest[i]
    return True


@dataclass(frozen=True)
class ShuffleRound:
    """Teams and matches generated for one round."""

    round_number: int
    teams: Tuple[Team, ...]
    matches: Tuple[Match, ...]
    sitting_out: Tuple[str, ...]


class ShuffleRoundGenerator:
    """Builds shuffle rounds; pure apart from the injected RNG."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def validate(self, tournament: Tournament, player_count: int) -> None:
        team_size = tournament.settings.team_size
        if not tournament.maps:
            raise BracketValidationError("Shuffle tournament needs at least one map")
        if team_size < 1:
            raise BracketValidationError("Team size must be positive", {"teamSize": team_size})
        if player_count < 2 * team_size:
            raise BracketValidationError(
                f"Shuffle needs at least {2 * team_size} players",
                {"players": player_count, "teamSize": team_size},
            )

    def select_players(
        self,
        players: Sequence[Player],
        slots: int,
        previous_round_player_ids: Optional[Set[str]] = None,
    ) -> Tuple[List[Player], List[Player]]:
        """
        Choose who plays this round.

        Priority: players who sat out the previous round, then fewest
        matches played, then a random tie-break.
        """
        previous = previous_round_player_ids
        tie_break: Dict[str, float] = {p.steam_id: self.rng.random() for p in players}

        def priority(player: Player) -> Tuple[int, int, float]:
            sat_out = previous is not None and player.steam_id not in previous
            return (0 if sat_out else 1, player.matches_played, tie_break[player.steam_id])

        ordered = sorted(players, key=priority)
        return ordered[:slots], ordered[slots:]

    def generate_round(
        self,
        tournament: Tournament,
        players: Sequence[Player],
        round_number: int,
        previous_round_player_ids: Optional[Set[str]] = None,
    ) -> ShuffleRound:
        """Balanced teams and matches for ``round_number`` (1-based, one map per round)."""
        if round_number < 1 or round_number > len(tournament.maps):
            raise BracketValidationError(
                f"Round {round_number} is outside 1..{len(tournament.maps)}",
                {"round": round_number, "maps": len(tournament.maps)},
            )
        self.validate(tournament, len(players))

        team_size = tournament.settings.team_size
        match_count = len(players) // (2 * team_size)
        playing, sitting_out = self.select_players(
            players, match_count * 2 * team_size, previous_round_player_ids
        )

        balanced = balance_teams(playing, team_size)
        # Strongest first so adjacent teams (closest averages) meet
        balanced.sort(key=_average, reverse=True)

        teams: List[Team] = []
        matches: List[Match] = []
        for m in range(1, match_count + 1):
            rosters = balanced[2 * (m - 1)], balanced[2 * (m - 1) + 1]
            pair = []
            for team_number, roster in enumerate(rosters, start=1):
                team = Team(
                    id=shuffle_team_id(round_number, m, team_number),
                    name=f"Round {round_number} Match {m} Team {team_number}",
                    tag=f"R{round_number}T{team_number}",
                    players=tuple(sorted(roster, key=lambda p: p.steam_id)),
                )
                teams.append(team)
                pair.append(team.id)

            matches.append(
                Match(
                    slug=shuffle_match_slug(round_number, m),
                    tournament_id=tournament.id,
                    round=round_number,
                    match_number=m,
                    bracket=BracketSide.SHUFFLE,
                    team1_id=pair[0],
                    team2_id=pair[1],
                )
            )

        return ShuffleRound(
            round_number=round_number,
            teams=tuple(teams),
            matches=tuple(matches),
            sitting_out=tuple(p.steam_id for p in sitting_out),
        )


def is_round_complete(matches: Sequence[Match], round_number: int) -> bool:
    in_round = [m for m in matches if m.round == round_number]
    return bool(in_round) and all(m.status == MatchStatus.COMPLETED for m in in_round)


def round_player_ids(teams: Sequence[Team]) -> Set[str]:
    return {p.steam_id for team in teams for p in team.players}


def map_for_round(tournament: Tournament, round_number: int) -> str:
    return tournament.maps[round_number - 1]
