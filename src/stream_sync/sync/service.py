"""Assemble the sync components from settings.

The API process keeps one :class:`TierScheduler` for its lifetime
(:func:`get_tier_scheduler`).  Celery tasks run each job in a fresh event
loop, so they build a new scheduler per task with
:func:`build_tier_scheduler` and close it afterwards; the guard state is still shared through
:func:`get_scheduler_state`.
"""

from __future__ import annotations

from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.config.settings import Settings, get_settings
from stream_sync.config.tiers import build_tier_configs
from stream_sync.core.credential_pool import CredentialPool
from stream_sync.core.response_cache import ResponseCache
from stream_sync.core.usage_log import UsageLog
from stream_sync.sync.avatars import AvatarRefresher
from stream_sync.sync.executor import SyncExecutor
from stream_sync.sync.history import RunHistory
from stream_sync.sync.repository import ChannelRepository, StreamRepository
from stream_sync.sync.scheduler import (
    NoopTierLease,
    RedisTierLease,
    SchedulerState,
    TierScheduler,
)

_state_singleton: SchedulerState | None = None
_scheduler_singleton: TierScheduler | None = None


def get_scheduler_state() -> SchedulerState:
    """Return the process-wide guard state."""
    global _state_singleton  # noqa: PLW0603
    if _state_singleton is None:
        _state_singleton = SchedulerState()
    return _state_singleton


def _build_lease(settings: Settings) -> NoopTierLease | RedisTierLease:
    if not settings.tier_lease_enabled:
        return NoopTierLease()
    import redis.asyncio as aioredis  # noqa: PLC0415

    client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return RedisTierLease(client, ttl=timedelta(seconds=settings.tier_lease_ttl_seconds))


def build_tier_scheduler(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
    state: SchedulerState | None = None,
) -> TierScheduler:
    """Wire a :class:`TierScheduler` and its collaborators.

    Args:
        session_factory: Defaults to the process-wide factory.
        settings: Defaults to :func:`get_settings`.
        http_client: Shared upstream client; built per run when omitted.
        state: Guard state; defaults to the process-wide state.
    """
    settings = settings or get_settings()
    if session_factory is None:
        from stream_sync.core.database import get_session_factory  # noqa: PLC0415

        session_factory = get_session_factory()

    pool = CredentialPool(
        session_factory,
        daily_quota=settings.youtube_daily_quota_per_key,
        error_threshold=settings.key_error_threshold,
        encryption_key=settings.credential_encryption_key,
    )
    usage_log = UsageLog(session_factory)
    streams = StreamRepository(session_factory, grace=timedelta(hours=settings.missed_grace_hours))
    channels = ChannelRepository(session_factory)
    executor = SyncExecutor(
        pool=pool,
        cache=ResponseCache(session_factory),
        repository=streams,
        usage_log=usage_log,
        http_client=http_client,
        request_timeout=settings.youtube_request_timeout_seconds,
        max_results=settings.youtube_max_results,
    )
    refresher = AvatarRefresher(
        pool=pool,
        channels=channels,
        usage_log=usage_log,
        http_client=http_client,
        request_timeout=settings.youtube_request_timeout_seconds,
    )
    return TierScheduler(
        executor=executor,
        streams=streams,
        channels=channels,
        tier_configs=build_tier_configs(settings),
        history=RunHistory(session_factory),
        avatar_refresher=refresher,
        state=state or get_scheduler_state(),
        lease=_build_lease(settings),
        avatar_limit=settings.avatar_refresh_limit,
    )


def get_tier_scheduler() -> TierScheduler:
    """Return the API process's scheduler, created on first access."""
    global _scheduler_singleton  # noqa: PLW0603
    if _scheduler_singleton is None:
        _scheduler_singleton = build_tier_scheduler()
    return _scheduler_singleton


async def close_tier_scheduler() -> None:
    """Close the API process's scheduler, if one was created."""
    global _scheduler_singleton  # noqa: PLW0603
    if _scheduler_singleton is not None:
        await _scheduler_singleton.aclose()
        _scheduler_singleton = None
