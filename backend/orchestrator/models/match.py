"""Match, event history and result records."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Identity, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.models.base import Base, JSONType


class MatchRecord(Base):
    """Bracket node. Versioned blobs: config (MatchConfig), veto_state (VetoState)."""

    __tablename__ = "matches"
    # Fetch the generated match_id on insert
    __mapper_args__ = {"eager_defaults": True}

    slug: Mapped[str] = mapped_column(String(64), primary_key=True)
    match_id: Mapped[int] = mapped_column(BigInteger, Identity(), unique=True, nullable=False)
    tournament_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    round: Mapped[int] = mapped_column(nullable=False)
    match_number: Mapped[int] = mapped_column(nullable=False)
    bracket: Mapped[str] = mapped_column(String(20), nullable=False)

    team1_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team2_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    winner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    server_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    config: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    veto_state: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    winner_to: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    loser_to: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    team1_score: Mapped[int] = mapped_column(nullable=False, default=0)
    team2_score: Mapped[int] = mapped_column(nullable=False, default=0)
    connected_players: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    live_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    demo_file: Mapped[str | None] = mapped_column(String(255), nullable=True)
    rating_processed: Mapped[bool] = mapped_column(nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    loaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MatchEventRecord(Base):
    """Webhook / veto event history for a match."""

    __tablename__ = "match_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    match_slug: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("matches.slug", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class MapResultRecord(Base):
    """Final score of one map; one row per (match, map number)."""

    __tablename__ = "match_map_results"

    match_slug: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("matches.slug", ondelete="CASCADE"),
        primary_key=True,
    )
    map_number: Mapped[int] = mapped_column(primary_key=True)
    map_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    team1_score: Mapped[int] = mapped_column(nullable=False, default=0)
    team2_score: Mapped[int] = mapped_column(nullable=False, default=0)
    winner: Mapped[str | None] = mapped_column(String(8), nullable=True)


class PlayerStatsRecord(Base):
    """Per-player series stats from the final report."""

    __tablename__ = "match_player_stats"

    match_slug: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("matches.slug", ondelete="CASCADE"),
        primary_key=True,
    )
    steam_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    team: Mapped[str | None] = mapped_column(String(8), nullable=True)
    team_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    stats: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
