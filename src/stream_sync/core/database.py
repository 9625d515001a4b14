"""Async SQLAlchemy engine and session factory.

Provides:
- get_engine():          the process-wide AsyncEngine, created on first use
- get_session_factory(): the async_sessionmaker bound to that engine
- dispose_engine():      drop the engine (Celery tasks call this after each
                         ``asyncio.run`` because pooled asyncpg connections are
                         bound to the event loop that opened them)
- init_db():             create all tables (no migration tooling)
- get_db():              FastAPI dependency that yields an AsyncSession

Connection pool is sized for concurrent Celery workers + the FastAPI process:
- pool_size=10:         baseline connections held open
- max_overflow=20:      burst connections allowed above pool_size
- pool_pre_ping=True:   verify connection health before handing out

The engine is built lazily so that importing any module of the package
never requires DATABASE_URL; tests build their own engines and pass session
factories explicitly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from stream_sync.core.models.base import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine from a database URL.

    Pool sizing only applies to server databases; SQLite URLs (local
    development) get SQLAlchemy's defaults.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def _get_database_url() -> str:
    """Resolve the database URL from application settings.

    Imported lazily so that test code can patch settings before the engine
    is created.
    """
    from stream_sync.config.settings import get_settings  # noqa: PLC0415

    return str(get_settings().database_url)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory with the project's session defaults."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first call."""
    global _engine, _session_factory
    if _engine is None:
        _engine = _build_engine(_get_database_url())
        _session_factory = build_session_factory(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine if needed."""
    get_engine()
    assert _session_factory is not None
    return _session_factory


async def dispose_engine() -> None:
    """Dispose of the process-wide engine so the next call builds a fresh one."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create every table known to :data:`Base.metadata` if it is missing.

    Args:
        engine: Engine to use.  Defaults to the process-wide engine.
    """
    import stream_sync.core.models  # noqa: F401, PLC0415

    target = engine or get_engine()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession for use as a FastAPI dependency.

    The session is closed after the response is sent, even if an exception
    is raised.  Route handlers commit explicitly; the session is NOT
    auto-committed on exit.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
