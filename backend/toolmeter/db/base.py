"""Shared SQLAlchemy base, engine and session factory.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for tests and local
runs. The entitlement store picks its upsert dialect from ``get_engine()``.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from toolmeter.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(url: str) -> dict:
    """Pool settings for a database URL. SQLite gets the driver defaults."""
    if make_url(url).get_backend_name() == "sqlite":
        return {}
    settings = get_settings()
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        # A request waiting on the pool counts against the store timeout too
        "pool_timeout": settings.store_timeout_seconds,
    }


async def init_db(url: str | None = None) -> None:
    """Create the engine and session factory, then any missing tables."""
    global _engine, _session_factory

    if _engine is not None:
        return

    db_url = url or get_settings().database_url
    _engine = create_async_engine(db_url, echo=False, **engine_options(db_url))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    # Import all models so metadata is populated before create_all
    import toolmeter.db.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
