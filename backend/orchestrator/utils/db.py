"""Database connection and session management.

The engine is created by ``init_db`` only when a database URL is
configured; otherwise the orchestrator runs on the in-memory repository.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orchestrator.config import Settings

engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Build the async engine from settings."""
    assert settings.database_url is not None
    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=False,
        future=True,
    )


async def init_db(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Create the engine, ensure tables exist and return the session factory."""
    global engine, async_session_factory
    from orchestrator.models import Base

    engine = create_engine_from_settings(settings)
    async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_session_factory


async def close_db() -> None:
    """Dispose of the connection pool."""
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on error.

    Usage:
        async with session_scope(factory) as session:
            await session.execute(...)
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
