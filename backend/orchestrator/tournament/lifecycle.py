"""
Match Lifecycle State Machine.

    pending -> ready -> loaded -> live -> completed
                 ^        |        |
                 +--------+--------+   (restart)

    any -> pending                      (tournament reset)

Every transition is a compare-and-update on the expected source status.
A transition whose source status no longer holds is rejected with a
``TransitionResult(applied=False)`` and logged; it is never forced.

Completing a match also drives the bracket forward: advancement links
fill the next matches, swiss rounds are paired once the previous round
finishes, shuffle rounds are generated one at a time and the tournament
completes when its final matches do.
"""

import random
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Set

from orchestrator.logging_config import get_logger
from orchestrator.utils.errors import BracketValidationError
from .brackets import (
    BracketGenerator,
    advancement_targets,
    final_round_matches,
    is_fed_by_advancement,
    pair_swiss_round,
)
from .distributed_lock import LockManager, LockType
from .event_bus import OrchestratorEventBus
from .models import (
    BracketSide,
    Match,
    MatchConfig,
    MatchStatus,
    OrchestratorEventType,
    TeamSlot,
    Tournament,
    TournamentStatus,
    TournamentType,
    TransitionResult,
    utcnow,
)
from .repository import SHUFFLE_TEAM_PREFIX, TournamentRepository
from .shuffle import ShuffleRound, ShuffleRoundGenerator, is_round_complete, round_player_ids
from .veto import VetoSequencer

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[MatchStatus, Set[MatchStatus]] = {
    MatchStatus.PENDING: {MatchStatus.READY},
    MatchStatus.READY: {MatchStatus.LOADED},
    MatchStatus.LOADED: {MatchStatus.LIVE, MatchStatus.READY},
    MatchStatus.LIVE: {MatchStatus.COMPLETED, MatchStatus.READY},
    MatchStatus.COMPLETED: set(),
}


def can_transition(current: MatchStatus, target: MatchStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class MatchStateMachine:
    """Owns match status; every other component goes through it."""

    def __init__(
        self,
        repository: TournamentRepository,
        event_bus: OrchestratorEventBus,
        locks: LockManager,
        sequencer: Optional[VetoSequencer] = None,
        rng: Optional[random.Random] = None,
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.locks = locks
        self.sequencer = sequencer or VetoSequencer()
        self.brackets = BracketGenerator(rng)
        self.shuffle = ShuffleRoundGenerator(rng)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def open_match(self, slug: str) -> TransitionResult:
        """Both teams known: start the veto, or go straight to ready."""
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")
        if match.status != MatchStatus.PENDING:
            return self._rejected(slug, f"match is {match.status.value}", match)
        if not match.has_both_teams:
            return self._rejected(slug, "teams not yet known", match)

        tournament = await self.repository.get_tournament(match.tournament_id)
        if tournament is None:
            return self._rejected(slug, "tournament not found", match)

        if not tournament.requires_veto:
            return await self.mark_ready(slug)

        if match.veto_state is not None:
            if match.veto_state.is_complete:
                return await self.mark_ready(slug)
            return self._rejected(slug, "veto already in progress", match)

        veto_state = self.sequencer.start(
            tournament.format,
            tournament.maps,
            match.team1_id,
            match.team2_id,
            tournament.settings.custom_veto_order,
        )
        updated = await self.repository.compare_and_update(
            slug, [MatchStatus.PENDING], veto_state=veto_state
        )
        if updated is None:
            return self._rejected(slug, "status changed while opening veto")

        logger.info("veto_opened", match_slug=slug, format=tournament.format.value)
        return TransitionResult(applied=True, match=updated)

    async def mark_ready(self, slug: str) -> TransitionResult:
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")
        if not match.has_both_teams:
            return self._rejected(slug, "teams not yet known", match)

        tournament = await self.repository.get_tournament(match.tournament_id)
        if tournament is None:
            return self._rejected(slug, "tournament not found", match)
        if not self._veto_satisfied(tournament, match):
            return self._rejected(slug, "veto not completed", match)

        updated = await self.repository.compare_and_update(
            slug, [MatchStatus.PENDING], status=MatchStatus.READY
        )
        if updated is None:
            return self._rejected(slug, "expected pending", match)

        logger.info("match_ready", match_slug=slug, tournament_id=match.tournament_id)
        await self.event_bus.emit(
            OrchestratorEventType.MATCH_READY, match.tournament_id, match_slug=slug
        )
        return TransitionResult(applied=True, match=updated)

    async def mark_loaded(
        self,
        slug: str,
        server_id: str,
        config: MatchConfig,
    ) -> TransitionResult:
        """ready -> loaded. A config frozen earlier is kept as is."""
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")

        tournament = await self.repository.get_tournament(match.tournament_id)
        if tournament is None:
            return self._rejected(slug, "tournament not found", match)
        if not self._veto_satisfied(tournament, match):
            return self._rejected(slug, "veto not completed", match)

        updated = await self.repository.compare_and_update(
            slug,
            [MatchStatus.READY],
            status=MatchStatus.LOADED,
            server_id=server_id,
            config=match.config or config,
            loaded_at=utcnow(),
        )
        if updated is None:
            return self._rejected(slug, "expected ready", match)

        logger.info("match_loaded", match_slug=slug, server_id=server_id)
        await self.event_bus.emit(
            OrchestratorEventType.MATCH_LOADED,
            match.tournament_id,
            match_slug=slug,
            server_id=server_id,
        )
        return TransitionResult(applied=True, match=updated)

    async def mark_live(self, slug: str) -> TransitionResult:
        updated = await self.repository.compare_and_update(
            slug, [MatchStatus.LOADED], status=MatchStatus.LIVE
        )
        if updated is None:
            return self._rejected(slug, "expected loaded", await self.repository.get_match(slug))

        logger.info("match_live", match_slug=slug, server_id=updated.server_id)
        await self.event_bus.emit(
            OrchestratorEventType.MATCH_LIVE,
            updated.tournament_id,
            match_slug=slug,
            server_id=updated.server_id,
        )
        return TransitionResult(applied=True, match=updated)

    async def mark_completed(
        self,
        slug: str,
        winner_id: Optional[str],
        team1_score: int = 0,
        team2_score: int = 0,
    ) -> TransitionResult:
        """live -> completed, then release the server and advance the bracket."""
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")
        if winner_id is not None and match.slot_of(winner_id) is None:
            return self._rejected(slug, f"winner {winner_id} is not in this match", match)

        updated = await self.repository.compare_and_update(
            slug,
            [MatchStatus.LIVE],
            status=MatchStatus.COMPLETED,
            winner_id=winner_id,
            team1_score=team1_score,
            team2_score=team2_score,
            server_id=None,
            completed_at=utcnow(),
        )
        if updated is None:
            return self._rejected(slug, "expected live", match)

        if match.server_id:
            await self.repository.release_server(match.server_id, slug)

        logger.info(
            "match_completed",
            match_slug=slug,
            winner_id=winner_id,
            team1_score=team1_score,
            team2_score=team2_score,
        )

        await self._on_completed(updated)
        await self.event_bus.emit(
            OrchestratorEventType.MATCH_COMPLETED,
            updated.tournament_id,
            match_slug=slug,
            server_id=match.server_id,
            winner_id=winner_id,
        )
        return TransitionResult(applied=True, match=updated)

    async def return_to_ready(self, slug: str) -> TransitionResult:
        """loaded|live -> ready with the server unassigned; veto and scores stay."""
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")

        updated = await self.repository.compare_and_update(
            slug,
            [MatchStatus.LOADED, MatchStatus.LIVE],
            status=MatchStatus.READY,
            server_id=None,
            loaded_at=None,
            connected_players=frozenset(),
        )
        if updated is None:
            return self._rejected(slug, "expected loaded or live", match)

        if match.server_id:
            await self.repository.release_server(match.server_id, slug)

        logger.info("match_returned_to_ready", match_slug=slug, server_id=match.server_id)
        return TransitionResult(applied=True, match=updated)

    async def reset_match(self, slug: str, fed_slots: Set[TeamSlot]) -> TransitionResult:
        """
        Any status -> pending for a tournament reset.

        Clears veto, config, server, scores and winner. Team slots that
        advancement fills (``fed_slots``) are emptied; seeded slots stay.
        """
        match = await self.repository.get_match(slug)
        if match is None:
            return self._rejected(slug, "match not found")

        changes = dict(
            status=MatchStatus.PENDING,
            winner_id=None,
            server_id=None,
            config=None,
            veto_state=None,
            team1_score=0,
            team2_score=0,
            connected_players=frozenset(),
            live_snapshot=None,
            demo_file=None,
            rating_processed=False,
            loaded_at=None,
            completed_at=None,
        )
        if TeamSlot.TEAM1 in fed_slots:
            changes["team1_id"] = None
        if TeamSlot.TEAM2 in fed_slots:
            changes["team2_id"] = None

        updated = await self.repository.update_match(slug, **changes)
        if match.server_id:
            await self.repository.release_server(match.server_id, slug)

        await self.event_bus.emit(
            OrchestratorEventType.MATCH_RESET, match.tournament_id, match_slug=slug
        )
        return TransitionResult(applied=True, match=updated)

    # =========================================================================
    # Progression
    # =========================================================================

    async def install_bracket(self, tournament: Tournament) -> List[Match]:
        """
        Generate the bracket and replace every existing match of the tournament.

        Validation runs before anything is discarded. Shuffle tournaments get
        round 1 only; stale ad hoc teams are removed first.
        """
        if tournament.type == TournamentType.SHUFFLE:
            players = await self.repository.get_players(tournament.player_ids)
            self.shuffle.validate(tournament, len(players))
            await self.repository.delete_teams(SHUFFLE_TEAM_PREFIX)
            matches = list((await self.build_shuffle_round(tournament, 1)).matches)
        else:
            teams = await self.repository.get_teams(tournament.team_ids)
            if len(teams) != len(tournament.team_ids):
                missing = sorted(set(tournament.team_ids) - {t.id for t in teams})
                raise BracketValidationError("Unknown teams in tournament", {"teams": missing})
            matches = self.brackets.generate(tournament, teams)

        matches = await self.repository.replace_matches(tournament.id, matches)
        logger.info(
            "bracket_generated",
            tournament_id=tournament.id,
            type=tournament.type.value,
            matches=len(matches),
        )
        await self.event_bus.emit(
            OrchestratorEventType.BRACKET_GENERATED,
            tournament.id,
            type=tournament.type.value,
            matches=len(matches),
        )
        return matches

    async def _on_completed(self, match: Match) -> None:
        tournament = await self.repository.get_tournament(match.tournament_id)
        if tournament is None:
            return

        if tournament.type == TournamentType.SHUFFLE:
            await self._count_shuffle_appearances(match)

        async with self.locks.lock(tournament.id, LockType.PROGRESSION):
            await self.advance_bracket(match)

            if tournament.type == TournamentType.SWISS:
                await self._pair_next_swiss_round(tournament, match.round)
            elif tournament.type == TournamentType.SHUFFLE:
                await self._advance_shuffle(tournament, match.round)
                return

            await self._check_tournament_completed(tournament)

    async def advance_bracket(self, match: Match) -> List[str]:
        """Send winner and loser along their links; opens targets that become full."""
        opened = []
        for link, team_id in advancement_targets(match):
            target = await self.repository.get_match(link.slug)
            if target is None:
                logger.warning("advancement_target_missing", match_slug=match.slug, target=link.slug)
                continue

            field_name = "team1_id" if link.slot is TeamSlot.TEAM1 else "team2_id"
            updated = await self.repository.compare_and_update(
                link.slug, [MatchStatus.PENDING], **{field_name: team_id}
            )
            if updated is None:
                logger.warning(
                    "advancement_target_not_pending",
                    match_slug=match.slug,
                    target=link.slug,
                    status=target.status.value,
                )
                continue

            logger.info(
                "team_advanced",
                from_match=match.slug,
                to_match=link.slug,
                slot=link.slot.value,
                team_id=team_id,
            )
            if updated.has_both_teams:
                result = await self.open_match(link.slug)
                if result.applied:
                    opened.append(link.slug)
        return opened

    async def _pair_next_swiss_round(self, tournament: Tournament, round_number: int) -> None:
        matches = await self.repository.list_matches(tournament.id)
        if not is_round_complete(matches, round_number):
            return

        next_round = [m for m in matches if m.round == round_number + 1]
        if not next_round or any(m.has_both_teams for m in next_round):
            return

        paired = pair_swiss_round(list(tournament.team_ids), matches, round_number + 1)
        for match in paired:
            await self.repository.compare_and_update(
                match.slug,
                [MatchStatus.PENDING],
                team1_id=match.team1_id,
                team2_id=match.team2_id,
            )
        logger.info("swiss_round_paired", tournament_id=tournament.id, round=round_number + 1)
        await self.event_bus.emit(
            OrchestratorEventType.ROUND_GENERATED,
            tournament.id,
            round=round_number + 1,
            matches=[m.slug for m in paired],
        )
        for match in paired:
            await self.open_match(match.slug)

    async def _advance_shuffle(self, tournament: Tournament, round_number: int) -> None:
        matches = await self.repository.list_matches(tournament.id)
        if not is_round_complete(matches, round_number):
            return
        if any(m.round > round_number for m in matches):
            return

        if round_number >= len(tournament.maps):
            await self._complete_tournament(tournament)
            return

        shuffle_round = await self.build_shuffle_round(tournament, round_number + 1)
        await self.repository.add_matches(shuffle_round.matches)
        await self.event_bus.emit(
            OrchestratorEventType.ROUND_GENERATED,
            tournament.id,
            round=shuffle_round.round_number,
            matches=[m.slug for m in shuffle_round.matches],
            sitting_out=list(shuffle_round.sitting_out),
        )
        for match in shuffle_round.matches:
            await self.open_match(match.slug)

    async def build_shuffle_round(self, tournament: Tournament, round_number: int) -> ShuffleRound:
        """Generate a shuffle round and store its teams; the caller stores the matches."""
        players = await self.repository.get_players(tournament.player_ids)

        previous: Optional[Set[str]] = None
        if round_number > 1:
            previous_matches = await self.repository.list_matches(
                tournament.id, round=round_number - 1
            )
            team_ids = [t for m in previous_matches for t in (m.team1_id, m.team2_id) if t]
            previous = round_player_ids(await self.repository.get_teams(team_ids))

        shuffle_round = self.shuffle.generate_round(tournament, players, round_number, previous)
        await self.repository.save_teams(shuffle_round.teams)

        logger.info(
            "shuffle_round_generated",
            tournament_id=tournament.id,
            round=round_number,
            matches=len(shuffle_round.matches),
            sitting_out=len(shuffle_round.sitting_out),
        )
        return shuffle_round

    async def _count_shuffle_appearances(self, match: Match) -> None:
        teams = await self.repository.get_teams([t for t in (match.team1_id, match.team2_id) if t])
        steam_ids = [p.steam_id for team in teams for p in team.players]
        players = await self.repository.get_players(steam_ids)
        await self.repository.save_players(
            [replace(p, matches_played=p.matches_played + 1) for p in players]
        )

    async def _check_tournament_completed(self, tournament: Tournament) -> None:
        matches = await self.repository.list_matches(tournament.id)
        finals = final_round_matches(tournament, matches)
        if finals and all(m.status == MatchStatus.COMPLETED for m in finals):
            await self._complete_tournament(tournament)

    async def _complete_tournament(self, tournament: Tournament) -> None:
        current = await self.repository.get_tournament(tournament.id)
        if current is None or current.status != TournamentStatus.IN_PROGRESS:
            return

        await self.repository.save_tournament(
            replace(current, status=TournamentStatus.COMPLETED, completed_at=utcnow())
        )
        logger.info("tournament_completed", tournament_id=tournament.id)
        await self.event_bus.emit(OrchestratorEventType.TOURNAMENT_COMPLETED, tournament.id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def fed_slots(self, matches: Sequence[Match]) -> Dict[str, Set[TeamSlot]]:
        """Per match, the slots advancement (or later-round pairing) fills."""
        slots: Dict[str, Set[TeamSlot]] = {}
        for match in matches:
            fed = is_fed_by_advancement(match, matches)
            if match.bracket == BracketSide.SWISS and match.round > 1:
                fed = {TeamSlot.TEAM1, TeamSlot.TEAM2}
            slots[match.slug] = fed
        return slots

    @staticmethod
    def _veto_satisfied(tournament: Tournament, match: Match) -> bool:
        if not tournament.requires_veto:
            return True
        return match.veto_state is not None and match.veto_state.is_complete

    @staticmethod
    def _rejected(slug: str, reason: str, match: Optional[Match] = None) -> TransitionResult:
        logger.info("transition_rejected", match_slug=slug, reason=reason)
        return TransitionResult(applied=False, match=match, reason=reason)
