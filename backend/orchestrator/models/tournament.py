"""Tournament, team and player records."""

from datetime import datetime

from sqlalchemy import DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.models.base import Base, JSONType, TimestampMixin


class TournamentRecord(Base, TimestampMixin):
    """Tournament definition."""

    __tablename__ = "tournaments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    format: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    maps: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    team_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    player_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    settings: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    """
    Settings structure (TournamentSettings.to_dict):
    {
        "third_place_match": false,
        "seeding_method": "random",
        "veto_enabled": true,
        "custom_veto_order": {"bo3": [{"team": "team1", "action": "ban"}, ...]},
        "swiss_rounds": null,
        "team_size": 5,
        "round_limit_type": "first_to_13",
        "max_rounds": 24,
        "overtime_enabled": true
    }
    """

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TeamRecord(Base, TimestampMixin):
    """Team roster; players are embedded as {steam_id, name, rating}."""

    __tablename__ = "teams"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    tag: Mapped[str | None] = mapped_column(String(16), nullable=True)
    players: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)


class PlayerRecord(Base, TimestampMixin):
    """Registered player (shuffle tournaments)."""

    __tablename__ = "players"

    steam_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=1000.0)
    matches_played: Mapped[int] = mapped_column(nullable=False, default=0)
