"""
PostgreSQL repository (SQLAlchemy async).

Each operation runs in its own transaction. Conditional writes are single
UPDATE ... WHERE ... RETURNING statements so the check and the write
cannot interleave with another writer.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from orchestrator.models import (
    MapResultRecord,
    MatchEventRecord,
    MatchRecord,
    PlayerRecord,
    PlayerStatsRecord,
    ServerRecord,
    TeamRecord,
    TournamentRecord,
)
from orchestrator.utils.db import session_scope
from .models import (
    AdvancementLink,
    BracketSide,
    LiveSnapshot,
    MapResult,
    Match,
    MatchConfig,
    MatchFormat,
    MatchStatus,
    Player,
    PlayerStats,
    Server,
    Team,
    TeamSlot,
    Tournament,
    TournamentSettings,
    TournamentStatus,
    TournamentType,
    VetoState,
)
from .repository import SHUFFLE_TEAM_PREFIX, TournamentRepository


# =============================================================================
# Row conversion
# =============================================================================


def _blob(value: Any) -> Optional[Dict[str, Any]]:
    return value.to_dict() if value is not None else None


_MATCH_COLUMN_CONVERTERS = {
    "bracket": lambda v: v.value,
    "status": lambda v: v.value,
    "config": _blob,
    "veto_state": _blob,
    "winner_to": _blob,
    "loser_to": _blob,
    "live_snapshot": _blob,
    "connected_players": lambda v: sorted(v),
}


def _match_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: _MATCH_COLUMN_CONVERTERS[key](value) if key in _MATCH_COLUMN_CONVERTERS else value
        for key, value in changes.items()
    }


def _match_record(match: Match) -> MatchRecord:
    # Without an id the identity column assigns one
    ids = {"match_id": match.match_id} if match.match_id is not None else {}
    return MatchRecord(
        **ids,
        **_match_columns(
            {
                "slug": match.slug,
                "tournament_id": match.tournament_id,
                "round": match.round,
                "match_number": match.match_number,
                "bracket": match.bracket,
                "team1_id": match.team1_id,
                "team2_id": match.team2_id,
                "status": match.status,
                "winner_id": match.winner_id,
                "server_id": match.server_id,
                "config": match.config,
                "veto_state": match.veto_state,
                "winner_to": match.winner_to,
                "loser_to": match.loser_to,
                "team1_score": match.team1_score,
                "team2_score": match.team2_score,
                "connected_players": match.connected_players,
                "live_snapshot": match.live_snapshot,
                "demo_file": match.demo_file,
                "rating_processed": match.rating_processed,
                "created_at": match.created_at,
                "loaded_at": match.loaded_at,
                "completed_at": match.completed_at,
            }
        )
    )


def _to_match(row: MatchRecord) -> Match:
    return Match(
        slug=row.slug,
        match_id=row.match_id,
        tournament_id=row.tournament_id,
        round=row.round,
        match_number=row.match_number,
        bracket=BracketSide(row.bracket),
        team1_id=row.team1_id,
        team2_id=row.team2_id,
        status=MatchStatus(row.status),
        winner_id=row.winner_id,
        server_id=row.server_id,
        config=MatchConfig.from_dict(row.config) if row.config else None,
        veto_state=VetoState.from_dict(row.veto_state) if row.veto_state else None,
        winner_to=AdvancementLink.from_dict(row.winner_to),
        loser_to=AdvancementLink.from_dict(row.loser_to),
        team1_score=row.team1_score,
        team2_score=row.team2_score,
        connected_players=frozenset(row.connected_players or ()),
        live_snapshot=LiveSnapshot.from_dict(row.live_snapshot),
        demo_file=row.demo_file,
        rating_processed=row.rating_processed,
        created_at=row.created_at,
        loaded_at=row.loaded_at,
        completed_at=row.completed_at,
    )


def _to_tournament(row: TournamentRecord) -> Tournament:
    return Tournament(
        id=row.id,
        name=row.name,
        type=TournamentType(row.type),
        format=MatchFormat(row.format),
        maps=tuple(row.maps),
        team_ids=tuple(row.team_ids),
        player_ids=tuple(row.player_ids),
        status=TournamentStatus(row.status),
        settings=TournamentSettings.from_dict(row.settings),
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _to_server(row: ServerRecord) -> Server:
    return Server(
        id=row.id,
        name=row.name,
        host=row.host,
        port=row.port,
        password=row.password,
        enabled=row.enabled,
        current_match=row.current_match,
        matchzy_config=dict(row.matchzy_config or {}),
    )


class SqlRepository(TournamentRepository):
    """TournamentRepository over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _session(self):
        return session_scope(self.session_factory)

    # =========================================================================
    # Tournaments
    # =========================================================================

    async def get_tournament(self, tournament_id: str) -> Optional[Tournament]:
        async with self._session() as session:
            row = await session.get(TournamentRecord, tournament_id)
            return _to_tournament(row) if row else None

    async def list_tournaments(self) -> List[Tournament]:
        async with self._session() as session:
            result = await session.execute(select(TournamentRecord))
            return [_to_tournament(row) for row in result.scalars()]

    async def save_tournament(self, tournament: Tournament) -> Tournament:
        async with self._session() as session:
            await session.merge(
                TournamentRecord(
                    id=tournament.id,
                    name=tournament.name,
                    type=tournament.type.value,
                    format=tournament.format.value,
                    status=tournament.status.value,
                    maps=list(tournament.maps),
                    team_ids=list(tournament.team_ids),
                    player_ids=list(tournament.player_ids),
                    settings=tournament.settings.to_dict(),
                    created_at=tournament.created_at,
                    started_at=tournament.started_at,
                    completed_at=tournament.completed_at,
                )
            )
        return tournament

    async def delete_tournament(self, tournament_id: str) -> bool:
        async with self._session() as session:
            row = await session.get(TournamentRecord, tournament_id)
            if row is None:
                return False

            await self._drop_matches(session, tournament_id)
            if row.type == TournamentType.SHUFFLE.value:
                await session.execute(
                    delete(TeamRecord).where(TeamRecord.id.startswith(SHUFFLE_TEAM_PREFIX))
                )
            await session.delete(row)
        return True

    # =========================================================================
    # Teams / players
    # =========================================================================

    async def get_team(self, team_id: str) -> Optional[Team]:
        async with self._session() as session:
            row = await session.get(TeamRecord, team_id)
            if row is None:
                return None
            return Team.from_dict(
                {"id": row.id, "name": row.name, "tag": row.tag, "players": row.players}
            )

    async def save_teams(self, teams: Sequence[Team]) -> None:
        async with self._session() as session:
            for team in teams:
                await session.merge(
                    TeamRecord(
                        id=team.id,
                        name=team.name,
                        tag=team.tag,
                        players=[p.to_dict() for p in team.players],
                    )
                )

    async def delete_teams(self, prefix: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(TeamRecord).where(TeamRecord.id.startswith(prefix))
            )
            return result.rowcount or 0

    async def get_players(self, steam_ids: Iterable[str]) -> List[Player]:
        wanted = list(steam_ids)
        if not wanted:
            return []
        async with self._session() as session:
            result = await session.execute(
                select(PlayerRecord).where(PlayerRecord.steam_id.in_(wanted))
            )
            found = {
                row.steam_id: Player(
                    steam_id=row.steam_id,
                    name=row.name,
                    rating=row.rating,
                    matches_played=row.matches_played,
                )
                for row in result.scalars()
            }
        return [found[s] for s in wanted if s in found]

    async def save_players(self, players: Sequence[Player]) -> None:
        async with self._session() as session:
            for player in players:
                await session.merge(
                    PlayerRecord(
                        steam_id=player.steam_id,
                        name=player.name,
                        rating=player.rating,
                        matches_played=player.matches_played,
                    )
                )

    # =========================================================================
    # Matches
    # =========================================================================

    async def get_match(self, slug: str) -> Optional[Match]:
        async with self._session() as session:
            row = await session.get(MatchRecord, slug)
            return _to_match(row) if row else None

    async def list_matches(
        self,
        tournament_id: str,
        statuses: Optional[Sequence[MatchStatus]] = None,
        round: Optional[int] = None,
    ) -> List[Match]:
        stmt = select(MatchRecord).where(MatchRecord.tournament_id == tournament_id)
        if statuses is not None:
            stmt = stmt.where(MatchRecord.status.in_([s.value for s in statuses]))
        if round is not None:
            stmt = stmt.where(MatchRecord.round == round)
        stmt = stmt.order_by(MatchRecord.round, MatchRecord.match_number, MatchRecord.slug)

        async with self._session() as session:
            result = await session.execute(stmt)
            return [_to_match(row) for row in result.scalars()]

    async def get_match_by_id(self, match_id: int) -> Optional[Match]:
        async with self._session() as session:
            result = await session.execute(
                select(MatchRecord).where(MatchRecord.match_id == match_id)
            )
            row = result.scalar_one_or_none()
            return _to_match(row) if row else None

    async def replace_matches(
        self, tournament_id: str, matches: Sequence[Match]
    ) -> List[Match]:
        async with self._session() as session:
            await self._drop_matches(session, tournament_id)
            return await self._insert(session, matches)

    async def add_matches(self, matches: Sequence[Match]) -> List[Match]:
        slugs = [m.slug for m in matches]
        async with self._session() as session:
            existing = await session.execute(
                select(MatchRecord.slug).where(MatchRecord.slug.in_(slugs))
            )
            duplicate = existing.scalars().first()
            if duplicate is not None:
                raise ValueError(f"Duplicate match slug: {duplicate}")
            return await self._insert(session, matches)

    async def _insert(self, session: AsyncSession, matches: Sequence[Match]) -> List[Match]:
        records = [_match_record(m) for m in matches]
        session.add_all(records)
        await session.flush()
        return [_to_match(r) for r in records]

    async def update_match(self, slug: str, **changes: Any) -> Optional[Match]:
        if not changes:
            return await self.get_match(slug)
        stmt = (
            update(MatchRecord)
            .where(MatchRecord.slug == slug)
            .values(**_match_columns(changes))
            .returning(MatchRecord)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_match(row) if row else None

    async def compare_and_update(
        self,
        slug: str,
        expected_statuses: Sequence[MatchStatus],
        **changes: Any,
    ) -> Optional[Match]:
        stmt = (
            update(MatchRecord)
            .where(
                MatchRecord.slug == slug,
                MatchRecord.status.in_([s.value for s in expected_statuses]),
            )
            .values(**_match_columns(changes or {"slug": slug}))
            .returning(MatchRecord)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_match(row) if row else None

    async def _drop_matches(self, session: AsyncSession, tournament_id: str) -> None:
        doomed = select(MatchRecord.slug).where(MatchRecord.tournament_id == tournament_id)
        await session.execute(
            update(ServerRecord)
            .where(ServerRecord.current_match.in_(doomed))
            .values(current_match=None)
        )
        # Events, map results and player stats cascade
        await session.execute(delete(MatchRecord).where(MatchRecord.tournament_id == tournament_id))

    # =========================================================================
    # Servers
    # =========================================================================

    async def list_servers(self) -> List[Server]:
        async with self._session() as session:
            result = await session.execute(select(ServerRecord).order_by(ServerRecord.id))
            return [_to_server(row) for row in result.scalars()]

    async def get_server(self, server_id: str) -> Optional[Server]:
        async with self._session() as session:
            row = await session.get(ServerRecord, server_id)
            return _to_server(row) if row else None

    async def save_server(self, server: Server) -> Server:
        values = {
            "name": server.name,
            "host": server.host,
            "port": server.port,
            "password": server.password,
            "enabled": server.enabled,
            "matchzy_config": dict(server.matchzy_config),
        }
        # current_match is left to claim_server / release_server
        stmt = (
            pg_insert(ServerRecord)
            .values(id=server.id, **values)
            .on_conflict_do_update(
                index_elements=[ServerRecord.id],
                set_={**values, "updated_at": func.now()},
            )
            .returning(ServerRecord)
        )
        async with self._session() as session:
            result = await session.scalars(
                stmt, execution_options={"populate_existing": True}
            )
            return _to_server(result.one())

    async def claim_server(self, server_id: str, match_slug: str) -> bool:
        other = aliased(ServerRecord)
        already_held = select(other.id).where(other.current_match == match_slug).exists()
        stmt = (
            update(ServerRecord)
            .where(
                ServerRecord.id == server_id,
                ServerRecord.enabled.is_(True),
                ServerRecord.current_match.is_(None),
                ~already_held,
            )
            .values(current_match=match_slug)
        )
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                return result.rowcount == 1
        except IntegrityError:
            # Unique current_match: a concurrent claim for the same match won
            return False

    async def release_server(self, server_id: str, match_slug: Optional[str] = None) -> bool:
        stmt = update(ServerRecord).where(
            ServerRecord.id == server_id,
            ServerRecord.current_match.is_not(None),
        )
        if match_slug is not None:
            stmt = stmt.where(ServerRecord.current_match == match_slug)
        async with self._session() as session:
            result = await session.execute(stmt.values(current_match=None))
            return result.rowcount == 1

    # =========================================================================
    # Events and results
    # =========================================================================

    async def record_event(self, slug: str, event_type: str, payload: Dict[str, Any]) -> None:
        async with self._session() as session:
            session.add(MatchEventRecord(match_slug=slug, event_type=event_type, payload=payload))

    async def list_events(self, slug: str) -> List[Dict[str, Any]]:
        async with self._session() as session:
            result = await session.execute(
                select(MatchEventRecord)
                .where(MatchEventRecord.match_slug == slug)
                .order_by(MatchEventRecord.id)
            )
            return [
                {
                    "event_type": row.event_type,
                    "payload": row.payload,
                    "received_at": row.received_at.isoformat(),
                }
                for row in result.scalars()
            ]

    async def record_map_result(self, slug: str, result: MapResult) -> None:
        values = {
            "map_name": result.map_name,
            "team1_score": result.team1_score,
            "team2_score": result.team2_score,
            "winner": result.winner.value if result.winner else None,
        }
        stmt = pg_insert(MapResultRecord).values(
            match_slug=slug, map_number=result.map_number, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[MapResultRecord.match_slug, MapResultRecord.map_number],
            set_=values,
        )
        async with self._session() as session:
            await session.execute(stmt)

    async def list_map_results(self, slug: str) -> List[MapResult]:
        async with self._session() as session:
            result = await session.execute(
                select(MapResultRecord)
                .where(MapResultRecord.match_slug == slug)
                .order_by(MapResultRecord.map_number)
            )
            return [
                MapResult(
                    map_number=row.map_number,
                    map_name=row.map_name,
                    team1_score=row.team1_score,
                    team2_score=row.team2_score,
                    winner=TeamSlot(row.winner) if row.winner else None,
                )
                for row in result.scalars()
            ]

    async def record_player_stats(self, slug: str, stats: Sequence[PlayerStats]) -> None:
        if not stats:
            return
        async with self._session() as session:
            for entry in stats:
                values = {
                    "name": entry.name,
                    "team": entry.team.value if entry.team else None,
                    "team_id": entry.team_id,
                    "stats": dict(entry.stats),
                }
                stmt = pg_insert(PlayerStatsRecord).values(
                    match_slug=slug, steam_id=entry.steam_id, **values
                )
                await session.execute(
                    stmt.on_conflict_do_update(
                        index_elements=[PlayerStatsRecord.match_slug, PlayerStatsRecord.steam_id],
                        set_=values,
                    )
                )

    async def list_player_stats(self, slug: str) -> List[PlayerStats]:
        async with self._session() as session:
            result = await session.execute(
                select(PlayerStatsRecord).where(PlayerStatsRecord.match_slug == slug)
            )
            return [
                PlayerStats(
                    steam_id=row.steam_id,
                    name=row.name,
                    team=TeamSlot(row.team) if row.team else None,
                    team_id=row.team_id,
                    stats=dict(row.stats or {}),
                )
                for row in result.scalars()
            ]
