"""Database engine for the durable store.

One engine per process. ``init_db`` hands back the session factory that
``SqlAlchemyStore`` is built on; nothing else in the engine talks to
SQLAlchemy directly.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from prepstate.config import Settings
from prepstate.store.models import Base

_engine: AsyncEngine | None = None


async def init_db(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Create the engine from settings and return its session factory."""
    global _engine  # noqa: PLW0603
    _engine = create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        echo=False,
        # asyncpg: no prepared statement cache (pgbouncer), bounded connect
        connect_args={
            "statement_cache_size": 0,
            "timeout": settings.db_connect_timeout_seconds,
        },
    )
    return async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


async def create_tables() -> None:
    """Create the store's tables if they do not exist."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
