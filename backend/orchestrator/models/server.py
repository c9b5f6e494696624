"""Game server record."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.models.base import Base, JSONType, TimestampMixin


class ServerRecord(Base, TimestampMixin):
    """
    Game server reachable over RCON.

    ``current_match`` is unique: a match can be claimed by one server only.
    """

    __tablename__ = "servers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(nullable=False)
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(nullable=False, default=True, index=True)
    current_match: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    matchzy_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
