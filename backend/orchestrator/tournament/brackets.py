"""
Bracket Generator.

Builds the match graph for a tournament from its team list:
- single elimination: r{round}m{n}, optional third place match "3rd"
- double elimination: winners r{round}m{n}, losers lb-r{round}m{n}, grand final "gf"
- round robin: circle method, every match seeded up front
- swiss: round 1 seeded, later rounds paired from standings

Validation always runs before anything is generated, so a rejected team
list never leaves a partial bracket behind.
"""

import math
import random
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set, Tuple

from orchestrator.utils.errors import BracketValidationError
from .models import (
    AdvancementLink,
    BracketSide,
    Match,
    MatchStatus,
    SeedingMethod,
    Team,
    TeamSlot,
    Tournament,
    TournamentType,
    sort_matches,
)

GRAND_FINAL_SLUG = "gf"
THIRD_PLACE_SLUG = "3rd"


def is_power_of_two(n: int) -> bool:
    return n >= 1 and (n & (n - 1)) == 0


def wb_slug(round_number: int, match_number: int) -> str:
    return f"r{round_number}m{match_number}"


def lb_slug(round_number: int, match_number: int) -> str:
    return f"lb-r{round_number}m{match_number}"


def _slot_for(match_number: int) -> TeamSlot:
    """Odd feeder matches fill team1, even ones team2."""
    return TeamSlot.TEAM1 if match_number % 2 == 1 else TeamSlot.TEAM2


class BracketGenerator:
    """Generates match graphs; pure apart from the injected RNG."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, tournament_type: TournamentType, team_count: int) -> None:
        """Raise BracketValidationError if the team count does not fit the topology."""
        details = {"type": tournament_type.value, "teams": team_count}

        if tournament_type == TournamentType.SINGLE_ELIMINATION:
            if team_count < 2 or not is_power_of_two(team_count):
                raise BracketValidationError(
                    "Single elimination needs a power of two of at least 2 teams", details
                )
        elif tournament_type == TournamentType.DOUBLE_ELIMINATION:
            if team_count < 4 or not is_power_of_two(team_count):
                raise BracketValidationError(
                    "Double elimination needs a power of two of at least 4 teams", details
                )
        elif tournament_type == TournamentType.ROUND_ROBIN:
            if team_count < 3:
                raise BracketValidationError("Round robin needs at least 3 teams", details)
        elif tournament_type == TournamentType.SWISS:
            if team_count < 4 or team_count % 2 != 0:
                raise BracketValidationError(
                    "Swiss needs an even number of at least 4 teams", details
                )
        else:
            raise BracketValidationError(
                "Shuffle tournaments are generated round by round from players", details
            )

    # =========================================================================
    # Entry point
    # =========================================================================

    def generate(self, tournament: Tournament, teams: Sequence[Team]) -> List[Match]:
        """Generate the complete bracket for a team-based tournament."""
        team_ids = [t.id for t in teams]
        if len(set(team_ids)) != len(team_ids):
            raise BracketValidationError("Duplicate teams in tournament", {"teams": team_ids})

        self.validate(tournament.type, len(team_ids))
        seeded = self._seed(tournament, team_ids)

        if tournament.type == TournamentType.SINGLE_ELIMINATION:
            matches = self._single_elimination(tournament, seeded)
        elif tournament.type == TournamentType.DOUBLE_ELIMINATION:
            matches = self._double_elimination(tournament, seeded)
        elif tournament.type == TournamentType.ROUND_ROBIN:
            matches = self._round_robin(tournament, seeded)
        else:
            matches = self._swiss(tournament, seeded)

        return sort_matches(matches)

    def _seed(self, tournament: Tournament, team_ids: List[str]) -> List[str]:
        seeded = list(team_ids)
        if tournament.settings.seeding_method == SeedingMethod.RANDOM:
            self.rng.shuffle(seeded)
        return seeded

    # =========================================================================
    # Single / Double Elimination
    # =========================================================================

    def _winners_bracket(
        self,
        tournament: Tournament,
        seeded: List[str],
        bracket: BracketSide,
    ) -> Dict[str, Match]:
        n = len(seeded)
        rounds = int(math.log2(n))
        matches: Dict[str, Match] = {}

        for round_number in range(1, rounds + 1):
            count = n >> round_number
            for m in range(1, count + 1):
                team1 = team2 = None
                if round_number == 1:
                    team1, team2 = seeded[2 * (m - 1)], seeded[2 * (m - 1) + 1]

                winner_to = None
                if round_number < rounds:
                    winner_to = AdvancementLink(
                        wb_slug(round_number + 1, (m + 1) // 2), _slot_for(m)
                    )

                slug = wb_slug(round_number, m)
                matches[slug] = Match(
                    slug=slug,
                    tournament_id=tournament.id,
                    round=round_number,
                    match_number=m,
                    bracket=bracket,
                    team1_id=team1,
                    team2_id=team2,
                    winner_to=winner_to,
                )
        return matches

    def _single_elimination(self, tournament: Tournament, seeded: List[str]) -> List[Match]:
        matches = self._winners_bracket(tournament, seeded, BracketSide.WINNERS)
        rounds = int(math.log2(len(seeded)))

        if tournament.settings.third_place_match and len(seeded) >= 4:
            semifinal = rounds - 1
            for m in (1, 2):
                slug = wb_slug(semifinal, m)
                matches[slug] = replace(
                    matches[slug], loser_to=AdvancementLink(THIRD_PLACE_SLUG, _slot_for(m))
                )
            matches[THIRD_PLACE_SLUG] = Match(
                slug=THIRD_PLACE_SLUG,
                tournament_id=tournament.id,
                round=rounds,
                match_number=2,
                bracket=BracketSide.THIRD_PLACE,
            )
        return list(matches.values())

    def _double_elimination(self, tournament: Tournament, seeded: List[str]) -> List[Match]:
        """
        Winners bracket plus 2*(k-1) losers rounds and a single grand final.

        Losers round sizes: round 1 takes the N/2 first-round losers;
        even rounds pair survivors with winners-bracket drop-ins; odd rounds
        (after the first) halve the field.
        """
        n = len(seeded)
        k = int(math.log2(n))
        matches = self._winners_bracket(tournament, seeded, BracketSide.WINNERS)
        lb_rounds = 2 * (k - 1)

        def lb_size(r: int) -> int:
            if r == 1:
                return n // 4
            j = r // 2
            return n >> (j + 1) if r % 2 == 0 else n >> (j + 2)

        # Winners bracket: final to grand final, losers drop into the losers bracket
        for slug, match in list(matches.items()):
            r, m = match.round, match.match_number
            if r == 1:
                loser_to = AdvancementLink(lb_slug(1, (m + 1) // 2), _slot_for(m))
            else:
                loser_to = AdvancementLink(lb_slug(2 * (r - 1), m), TeamSlot.TEAM2)
            winner_to = match.winner_to
            if r == k:
                winner_to = AdvancementLink(GRAND_FINAL_SLUG, TeamSlot.TEAM1)
            matches[slug] = replace(match, winner_to=winner_to, loser_to=loser_to)

        for r in range(1, lb_rounds + 1):
            for m in range(1, lb_size(r) + 1):
                if r == lb_rounds:
                    winner_to = AdvancementLink(GRAND_FINAL_SLUG, TeamSlot.TEAM2)
                elif r % 2 == 1:
                    # Next round is a drop-in round of the same size
                    winner_to = AdvancementLink(lb_slug(r + 1, m), TeamSlot.TEAM1)
                else:
                    winner_to = AdvancementLink(lb_slug(r + 1, (m + 1) // 2), _slot_for(m))

                slug = lb_slug(r, m)
                matches[slug] = Match(
                    slug=slug,
                    tournament_id=tournament.id,
                    round=r,
                    match_number=m,
                    bracket=BracketSide.LOSERS,
                    winner_to=winner_to,
                )

        matches[GRAND_FINAL_SLUG] = Match(
            slug=GRAND_FINAL_SLUG,
            tournament_id=tournament.id,
            round=lb_rounds + 1,
            match_number=1,
            bracket=BracketSide.GRAND_FINAL,
        )
        return list(matches.values())

    # =========================================================================
    # Round Robin
    # =========================================================================

    def _round_robin(self, tournament: Tournament, seeded: List[str]) -> List[Match]:
        """Circle method: seat 0 stays fixed, the rest rotate one place per round."""
        seats: List[Optional[str]] = list(seeded)
        if len(seats) % 2 == 1:
            seats.append(None)  # bye

        n = len(seats)
        matches: List[Match] = []
        for round_number in range(1, n):
            match_number = 0
            for i in range(n // 2):
                home, away = seats[i], seats[n - 1 - i]
                if home is None or away is None:
                    continue
                match_number += 1
                matches.append(
                    Match(
                        slug=wb_slug(round_number, match_number),
                        tournament_id=tournament.id,
                        round=round_number,
                        match_number=match_number,
                        bracket=BracketSide.ROUND_ROBIN,
                        team1_id=home,
                        team2_id=away,
                    )
                )
            seats = [seats[0], seats[-1]] + seats[1:-1]
        return matches

    # =========================================================================
    # Swiss
    # =========================================================================

    def _swiss(self, tournament: Tournament, seeded: List[str]) -> List[Match]:
        n = len(seeded)
        rounds = swiss_round_count(tournament, n)
        half = n // 2

        matches: List[Match] = []
        for round_number in range(1, rounds + 1):
            for m in range(1, half + 1):
                team1 = team2 = None
                if round_number == 1:
                    team1, team2 = seeded[m - 1], seeded[m - 1 + half]
                matches.append(
                    Match(
                        slug=wb_slug(round_number, m),
                        tournament_id=tournament.id,
                        round=round_number,
                        match_number=m,
                        bracket=BracketSide.SWISS,
                        team1_id=team1,
                        team2_id=team2,
                    )
                )
        return matches


def swiss_round_count(tournament: Tournament, team_count: int) -> int:
    if tournament.settings.swiss_rounds:
        return tournament.settings.swiss_rounds
    return max(1, math.ceil(math.log2(team_count)))


def swiss_standings(team_ids: Sequence[str], matches: Sequence[Match]) -> Dict[str, int]:
    """Wins per team from completed matches."""
    wins = {team_id: 0 for team_id in team_ids}
    for match in matches:
        if match.status == MatchStatus.COMPLETED and match.winner_id in wins:
            wins[match.winner_id] += 1
    return wins


def pair_swiss_round(
    team_ids: Sequence[str],
    matches: Sequence[Match],
    round_number: int,
) -> List[Match]:
    """
    Fill the placeholders of ``round_number`` from current standings.

    Teams are ordered by wins (then seed order) and paired top-down,
    avoiding rematches where possible. Returns the updated placeholders.
    """
    wins = swiss_standings(team_ids, matches)
    seed_index = {team_id: i for i, team_id in enumerate(team_ids)}
    ordered = sorted(team_ids, key=lambda t: (-wins[t], seed_index[t]))

    played: Set[Tuple[str, str]] = set()
    for match in matches:
        if match.has_both_teams and match.round < round_number:
            played.add((match.team1_id, match.team2_id))
            played.add((match.team2_id, match.team1_id))

    pairs = _pair_without_rematch(ordered, played)
    if pairs is None:
        # Every pairing repeats somebody: fall back to plain top-down pairing
        pairs = [(ordered[i], ordered[i + 1]) for i in range(0, len(ordered), 2)]

    placeholders = sort_matches([m for m in matches if m.round == round_number])
    return [
        replace(match, team1_id=team1, team2_id=team2)
        for match, (team1, team2) in zip(placeholders, pairs)
    ]


def _pair_without_rematch(
    remaining: List[str], played: Set[Tuple[str, str]]
) -> Optional[List[Tuple[str, str]]]:
    if not remaining:
        return []
    first = remaining[0]
    for i in range(1, len(remaining)):
        opponent = remaining[i]
        if (first, opponent) in played:
            continue
        rest = _pair_without_rematch(remaining[1:i] + remaining[i + 1:], played)
        if rest is not None:
            return [(first, opponent)] + rest
    return None


def advancement_targets(match: Match) -> List[Tuple[AdvancementLink, str]]:
    """(link, team id) pairs a completed match sends forward."""
    targets: List[Tuple[AdvancementLink, str]] = []
    if match.winner_id is None:
        return targets
    if match.winner_to is not None:
        targets.append((match.winner_to, match.winner_id))
    loser = match.loser_id()
    if match.loser_to is not None and loser is not None:
        targets.append((match.loser_to, loser))
    return targets


def is_fed_by_advancement(match: Match, all_matches: Sequence[Match]) -> Set[TeamSlot]:
    """Slots of ``match`` that another match's result fills."""
    slots: Set[TeamSlot] = set()
    for other in all_matches:
        for link in (other.winner_to, other.loser_to):
            if link is not None and link.slug == match.slug:
                slots.add(link.slot)
    return slots


def final_round_matches(tournament: Tournament, matches: Sequence[Match]) -> List[Match]:
    """Matches whose completion can finish the tournament."""
    if tournament.type in (TournamentType.SINGLE_ELIMINATION, TournamentType.DOUBLE_ELIMINATION):
        return [m for m in matches if m.winner_to is None and m.loser_to is None]
    return list(matches)
