"""Async database layer for PitchDesk.

Uses SQLAlchemy 2.x async engine with asyncpg driver, targeting Supabase PostgreSQL.
When DATABASE_URL is not set the app runs against the in-memory store instead;
main.py picks the store at startup.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from pitchdesk.core.config import get_settings

logger = logging.getLogger(__name__)

_engine = None
_session_factory: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def db_enabled() -> bool:
    """Return True if DATABASE_URL is configured."""
    return bool(get_settings().database_url)


def normalise_url(url: str) -> str:
    # Supabase connection strings often start with postgres://
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def _make_engine():
    settings = get_settings()
    return create_async_engine(
        normalise_url(settings.database_url),
        echo=settings.debug,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


async def init_db() -> bool:
    """
    Create all tables (if they don't exist) and initialise the session factory.

    Returns True if the database is available, False if DATABASE_URL is not set
    or the connection failed. The app continues in in-memory mode on False.
    """
    if not db_enabled():
        logger.info("DATABASE_URL not set, workflow store stays in memory")
        return False

    global _engine, _session_factory
    try:
        _engine = _make_engine()
        # Import so ORM models are registered with Base.metadata
        import pitchdesk.models.db_models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("Database initialised successfully")
        return True
    except Exception as e:
        logger.error(f"Database init failed, falling back to the in-memory store: {e}")
        _engine = None
        _session_factory = None
        return False


def get_session_factory() -> Optional[async_sessionmaker]:
    return _session_factory


async def close_db() -> None:
    """Dispose the engine on shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
