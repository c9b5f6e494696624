"""
Tournament Repository.

All orchestration components read and write state through this interface,
never through storage directly. ``InMemoryRepository`` serves tests and
single-process deployments; ``SqlRepository`` (sql_repository.py) persists
to PostgreSQL.

Atomicity contract:
- ``compare_and_update`` applies changes only when the match is in one of
  the expected statuses (optimistic check for lifecycle transitions).
- ``claim_server`` marks a server occupied only when it is enabled, free,
  and no other server already holds the match.
- ``replace_matches`` discards matches and event history and inserts the
  new bracket as one step.
- Inserted matches get a numeric ``match_id`` (the id MatchZy reports)
  unless they already carry one; ids are never reused.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import (
    MapResult,
    Match,
    MatchStatus,
    Player,
    PlayerStats,
    Server,
    Team,
    Tournament,
    TournamentType,
    sort_matches,
    utcnow,
)

# Ad hoc teams generated per shuffle round: shuffle-r{R}-m{M}-team{1|2}
SHUFFLE_TEAM_PREFIX = "shuffle-"


class TournamentRepository(ABC):
    """Async storage interface for the orchestration core."""

    # =========================================================================
    # Tournaments
    # =========================================================================

    @abstractmethod
    async def get_tournament(self, tournament_id: str) -> Optional[Tournament]: ...

    @abstractmethod
    async def list_tournaments(self) -> List[Tournament]: ...

    async def get_active_tournament(self) -> Optional[Tournament]:
        """The most recently created tournament that is not finished."""
        active = [t for t in await self.list_tournaments() if t.is_active]
        if not active:
            return None
        return max(active, key=lambda t: t.created_at)

    @abstractmethod
    async def save_tournament(self, tournament: Tournament) -> Tournament: ...

    @abstractmethod
    async def delete_tournament(self, tournament_id: str) -> bool:
        """Delete a tournament with its matches, events, results and shuffle teams."""

    # =========================================================================
    # Teams
    # =========================================================================

    @abstractmethod
    async def get_team(self, team_id: str) -> Optional[Team]: ...

    async def get_teams(self, team_ids: Iterable[str]) -> List[Team]:
        """Teams in the given order; unknown ids are skipped."""
        teams = []
        for team_id in team_ids:
            team = await self.get_team(team_id)
            if team is not None:
                teams.append(team)
        return teams

    @abstractmethod
    async def save_teams(self, teams: Sequence[Team]) -> None: ...

    @abstractmethod
    async def delete_teams(self, prefix: str) -> int:
        """Delete teams whose id starts with ``prefix``."""

    @abstractmethod
    async def get_players(self, steam_ids: Iterable[str]) -> List[Player]:
        """Registered players in the given order; unknown ids are skipped."""

    @abstractmethod
    async def save_players(self, players: Sequence[Player]) -> None: ...

    # =========================================================================
    # Matches
    # =========================================================================

    @abstractmethod
    async def get_match(self, slug: str) -> Optional[Match]: ...

    @abstractmethod
    async def get_match_by_id(self, match_id: int) -> Optional[Match]: ...

    @abstractmethod
    async def list_matches(
        self,
        tournament_id: str,
        statuses: Optional[Sequence[MatchStatus]] = None,
        round: Optional[int] = None,
    ) -> List[Match]:
        """Matches in (round, match number, slug) order."""

    @abstractmethod
    async def replace_matches(
        self, tournament_id: str, matches: Sequence[Match]
    ) -> List[Match]:
        """Stored matches, with ids assigned."""

    @abstractmethod
    async def add_matches(self, matches: Sequence[Match]) -> List[Match]: ...

    @abstractmethod
    async def update_match(self, slug: str, **changes: Any) -> Optional[Match]:
        """Unconditional update; None when the match does not exist."""

    @abstractmethod
    async def compare_and_update(
        self,
        slug: str,
        expected_statuses: Sequence[MatchStatus],
        **changes: Any,
    ) -> Optional[Match]:
        """Update only if the current status is expected; None otherwise."""

    # =========================================================================
    # Servers
    # =========================================================================

    @abstractmethod
    async def list_servers(self) -> List[Server]:
        """Servers ordered by id."""

    @abstractmethod
    async def get_server(self, server_id: str) -> Optional[Server]: ...

    @abstractmethod
    async def save_server(self, server: Server) -> Server:
        """Insert or update the server. Occupancy is never written here:
        new servers start free and existing ones keep their claim."""

    @abstractmethod
    async def claim_server(self, server_id: str, match_slug: str) -> bool: ...

    @abstractmethod
    async def release_server(self, server_id: str, match_slug: Optional[str] = None) -> bool:
        """Clear occupancy; with ``match_slug`` only if the server holds that match."""

    # =========================================================================
    # Events and results
    # =========================================================================

    @abstractmethod
    async def record_event(self, slug: str, event_type: str, payload: Dict[str, Any]) -> None: ...

    @abstractmethod
    async def list_events(self, slug: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def record_map_result(self, slug: str, result: MapResult) -> None:
        """Upsert by (slug, map number)."""

    @abstractmethod
    async def list_map_results(self, slug: str) -> List[MapResult]: ...

    @abstractmethod
    async def record_player_stats(self, slug: str, stats: Sequence[PlayerStats]) -> None: ...

    @abstractmethod
    async def list_player_stats(self, slug: str) -> List[PlayerStats]: ...


class InMemoryRepository(TournamentRepository):
    """
    Dict-backed repository.

    Check-and-set operations contain no awaits between the check and the
    write, so they are atomic on the event loop.
    """

    def __init__(self):
        self._tournaments: Dict[str, Tournament] = {}
        self._teams: Dict[str, Team] = {}
        self._players: Dict[str, Player] = {}
        self._matches: Dict[str, Match] = {}
        self._servers: Dict[str, Server] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._map_results: Dict[str, Dict[int, MapResult]] = {}
        self._player_stats: Dict[str, Dict[str, PlayerStats]] = {}
        self._next_match_id = 1

    # Tournaments

    async def get_tournament(self, tournament_id: str) -> Optional[Tournament]:
        return self._tournaments.get(tournament_id)

    async def list_tournaments(self) -> List[Tournament]:
        return list(self._tournaments.values())

    async def save_tournament(self, tournament: Tournament) -> Tournament:
        self._tournaments[tournament.id] = tournament
        return tournament

    async def delete_tournament(self, tournament_id: str) -> bool:
        tournament = self._tournaments.pop(tournament_id, None)
        if tournament is None:
            return False
        self._drop_matches(tournament_id)
        if tournament.type == TournamentType.SHUFFLE:
            for team_id in [t for t in self._teams if t.startswith(SHUFFLE_TEAM_PREFIX)]:
                del self._teams[team_id]
        return True

    # Teams

    async def get_team(self, team_id: str) -> Optional[Team]:
        return self._teams.get(team_id)

    async def save_teams(self, teams: Sequence[Team]) -> None:
        for team in teams:
            self._teams[team.id] = team

    async def delete_teams(self, prefix: str) -> int:
        doomed = [t for t in self._teams if t.startswith(prefix)]
        for team_id in doomed:
            del self._teams[team_id]
        return len(doomed)

    async def get_players(self, steam_ids: Iterable[str]) -> List[Player]:
        return [self._players[s] for s in steam_ids if s in self._players]

    async def save_players(self, players: Sequence[Player]) -> None:
        for player in players:
            self._players[player.steam_id] = player

    # Matches

    async def get_match(self, slug: str) -> Optional[Match]:
        return self._matches.get(slug)

    async def get_match_by_id(self, match_id: int) -> Optional[Match]:
        for match in self._matches.values():
            if match.match_id == match_id:
                return match
        return None

    async def list_matches(
        self,
        tournament_id: str,
        statuses: Optional[Sequence[MatchStatus]] = None,
        round: Optional[int] = None,
    ) -> List[Match]:
        found = [
            m
            for m in self._matches.values()
            if m.tournament_id == tournament_id
            and (statuses is None or m.status in statuses)
            and (round is None or m.round == round)
        ]
        return sort_matches(found)

    async def replace_matches(
        self, tournament_id: str, matches: Sequence[Match]
    ) -> List[Match]:
        self._drop_matches(tournament_id)
        return self._insert(matches)

    async def add_matches(self, matches: Sequence[Match]) -> List[Match]:
        for match in matches:
            if match.slug in self._matches:
                raise ValueError(f"Duplicate match slug: {match.slug}")
        return self._insert(matches)

    def _insert(self, matches: Sequence[Match]) -> List[Match]:
        stored = []
        for match in matches:
            if match.match_id is None:
                match = replace(match, match_id=self._next_match_id)
                self._next_match_id += 1
            self._matches[match.slug] = match
            stored.append(match)
        return stored

    async def update_match(self, slug: str, **changes: Any) -> Optional[Match]:
        match = self._matches.get(slug)
        if match is None:
            return None
        updated = replace(match, **changes)
        self._matches[slug] = updated
        return updated

    async def compare_and_update(
        self,
        slug: str,
        expected_statuses: Sequence[MatchStatus],
        **changes: Any,
    ) -> Optional[Match]:
        match = self._matches.get(slug)
        if match is None or match.status not in expected_statuses:
            return None
        updated = replace(match, **changes)
        self._matches[slug] = updated
        return updated

    def _drop_matches(self, tournament_id: str) -> None:
        doomed = [s for s, m in self._matches.items() if m.tournament_id == tournament_id]
        for slug in doomed:
            del self._matches[slug]
            self._events.pop(slug, None)
            self._map_results.pop(slug, None)
            self._player_stats.pop(slug, None)
        for server_id, server in self._servers.items():
            if server.current_match in doomed:
                self._servers[server_id] = replace(server, current_match=None)

    # Servers

    async def list_servers(self) -> List[Server]:
        return [self._servers[k] for k in sorted(self._servers)]

    async def get_server(self, server_id: str) -> Optional[Server]:
        return self._servers.get(server_id)

    async def save_server(self, server: Server) -> Server:
        existing = self._servers.get(server.id)
        server = replace(server, current_match=existing.current_match if existing else None)
        self._servers[server.id] = server
        return server

    async def claim_server(self, server_id: str, match_slug: str) -> bool:
        server = self._servers.get(server_id)
        if server is None or not server.enabled or server.current_match is not None:
            return False
        if any(s.current_match == match_slug for s in self._servers.values()):
            return False
        self._servers[server_id] = replace(server, current_match=match_slug)
        return True

    async def release_server(self, server_id: str, match_slug: Optional[str] = None) -> bool:
        server = self._servers.get(server_id)
        if server is None or server.current_match is None:
            return False
        if match_slug is not None and server.current_match != match_slug:
            return False
        self._servers[server_id] = replace(server, current_match=None)
        return True

    # Events and results

    async def record_event(self, slug: str, event_type: str, payload: Dict[str, Any]) -> None:
        self._events.setdefault(slug, []).append(
            {"event_type": event_type, "payload": payload, "received_at": utcnow().isoformat()}
        )

    async def list_events(self, slug: str) -> List[Dict[str, Any]]:
        return list(self._events.get(slug, []))

    async def record_map_result(self, slug: str, result: MapResult) -> None:
        self._map_results.setdefault(slug, {})[result.map_number] = result

    async def list_map_results(self, slug: str) -> List[MapResult]:
        results = self._map_results.get(slug, {})
        return [results[k] for k in sorted(results)]

    async def record_player_stats(self, slug: str, stats: Sequence[PlayerStats]) -> None:
        bucket = self._player_stats.setdefault(slug, {})
        for entry in stats:
            bucket[entry.steam_id] = entry

    async def list_player_stats(self, slug: str) -> List[PlayerStats]:
        return list(self._player_stats.get(slug, {}).values())

