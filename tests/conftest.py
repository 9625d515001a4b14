"""Shared pytest fixtures for Stream Sync tests.

Fixture summary
---------------
session_factory — async_sessionmaker over a fresh SQLite database per test,
                  with every table created.
pool            — CredentialPool bound to ``session_factory`` (cap 10,000).
make_key        — coroutine factory inserting a key row with given counters.
now             — a fixed aware UTC timestamp tests can reason about.

Every test runs without PostgreSQL, Redis or network access: databases are
SQLite files under ``tmp_path`` (aiosqlite driver) and upstream HTTP is
mocked with respx.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set required env vars before any application modules are imported so that
# Settings() does not raise a ValidationError during collection.

TEST_FERNET_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite+aiosqlite:///./stream_sync_test.db",
    "CREDENTIAL_ENCRYPTION_KEY": TEST_FERNET_KEY,
    "REDIS_URL": "redis://localhost:6379/0",
    "LOG_LEVEL": "INFO",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from stream_sync.config.settings import get_settings  # noqa: E402
from stream_sync.core.credential_pool import CredentialPool, encrypt_secret  # noqa: E402
from stream_sync.core.models import ApiKey, ApiKeyStatus, Base  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Yield a session factory over an empty SQLite database with all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


@pytest.fixture
def pool(session_factory: async_sessionmaker[AsyncSession]) -> CredentialPool:
    return CredentialPool(
        session_factory,
        daily_quota=10_000,
        error_threshold=5,
        encryption_key=TEST_FERNET_KEY,
    )


MakeKey = Callable[..., Awaitable[uuid.UUID]]


@pytest.fixture
def make_key(session_factory: async_sessionmaker[AsyncSession], now: datetime) -> MakeKey:
    """Return ``await make_key(name, **columns)`` inserting an encrypted key row."""

    async def _make(name: str = "key-a", secret: str | None = None, **columns: Any) -> uuid.UUID:
        values: dict[str, Any] = {
            "name": name,
            "api_key_encrypted": encrypt_secret(secret or f"AIza-{name}-secret", TEST_FERNET_KEY),
            "status": ApiKeyStatus.ACTIVE.value,
            "quota_used_today": 0,
            "last_quota_reset_at": now,
        }
        values.update(columns)
        async with session_factory() as session:
            key = ApiKey(**values)
            session.add(key)
            await session.commit()
            return key.id

    return _make


@pytest.fixture
def read_key(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[uuid.UUID], Awaitable[ApiKey]]:
    """Return ``await read_key(key_id)`` reading a key row fresh from the database."""

    async def _read(key_id: uuid.UUID) -> ApiKey:
        async with session_factory() as session:
            key = await session.get(ApiKey, key_id)
            assert key is not None
            return key

    return _read
