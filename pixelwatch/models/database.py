"""
Async database engine and session management.

Postgres (asyncpg) is the production target and gets a sized connection
pool shared by the API, the event pool and the scheduled jobs. SQLite
(aiosqlite, local runs and tests) keeps the dialect default pool, since
sizing only matters against a database server.

The engine is built lazily by the first caller of get_session_maker() so
importing models for alembic never opens a connection; dispose_engine()
resets it on shutdown.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from pixelwatch.config import get_settings

_engine = None
_async_session = None

POOL_SIZE = 20
MAX_OVERFLOW = 10


def _engine_options(database_url: str, echo: bool) -> dict:
    options = {"pool_pre_ping": True, "echo": echo}
    if not database_url.startswith("sqlite"):
        options.update(pool_size=POOL_SIZE, max_overflow=MAX_OVERFLOW)
    return options


def _get_engine():
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url, settings.debug))
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _async_session
    if _async_session is None:
        _async_session = async_sessionmaker(
            _get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session


async def dispose_engine():
    global _engine, _async_session
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session = None


async def get_db() -> AsyncSession:
    """FastAPI dependency — yields an async session."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        yield session
