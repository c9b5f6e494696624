"""
Rating pipeline boundary.

The rating computation itself lives elsewhere; the orchestrator only hands
over each completed match once. A pipeline returns True when the match was
accepted; failures are logged and leave ``rating_processed`` false.
"""

from typing import Optional, Sequence

import httpx

from orchestrator.logging_config import get_logger
from orchestrator.utils.http_client import AsyncHttpClient
from .models import MapResult, Match, PlayerStats

logger = get_logger(__name__)


class RatingPipeline:
    """Interface invoked once per completed match."""

    async def process_match(
        self,
        match: Match,
        stats: Sequence[PlayerStats],
        map_results: Sequence[MapResult] = (),
    ) -> bool:
        raise NotImplementedError


class NullRatingPipeline(RatingPipeline):
    """Accepts everything and only logs (no rating service configured)."""

    async def process_match(
        self,
        match: Match,
        stats: Sequence[PlayerStats],
        map_results: Sequence[MapResult] = (),
    ) -> bool:
        logger.info(
            "rating_skipped",
            match_slug=match.slug,
            players=len(stats),
            maps=len(map_results),
        )
        return True


class HttpRatingPipeline(RatingPipeline):
    """POSTs completed matches to an external rating service."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def process_match(
        self,
        match: Match,
        stats: Sequence[PlayerStats],
        map_results: Sequence[MapResult] = (),
    ) -> bool:
        payload = {
            "matchSlug": match.slug,
            "tournamentId": match.tournament_id,
            "team1Id": match.team1_id,
            "team2Id": match.team2_id,
            "winnerId": match.winner_id,
            "team1Score": match.team1_score,
            "team2Score": match.team2_score,
            "maps": [r.to_dict() for r in map_results],
            "players": [s.to_dict() for s in stats],
        }

        try:
            async with AsyncHttpClient(timeout=self.timeout, transport=self._transport) as client:
                await client.post_json(self.url, payload)
        except httpx.HTTPError as e:
            logger.error("rating_submission_failed", match_slug=match.slug, error=str(e))
            return False

        logger.info("rating_submitted", match_slug=match.slug, players=len(stats))
        return True
