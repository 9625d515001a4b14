"""Tier scheduler: single-flight and debounce guard around sync runs.

Every job (the three tiers plus the avatar refresher) has a
:class:`JobState` with ``last_run_at`` and ``in_progress``.  A trigger:

1. returns ``Skipped("in_progress")`` if the job is running;
2. returns ``Skipped("debounced")`` if it ran less than ``min_interval`` ago;
3. otherwise marks the job running, stamps ``last_run_at``, runs it and
   always clears ``in_progress`` afterwards.

Steps 1-3 up to the stamp happen under one lock and before the first
``await``, so two concurrent triggers for the same job can never both run.

The guard is process-local.  Deployments running several workers can turn
on :class:`RedisTierLease`, a short Redis lease taken after the local guard;
without it the worst case across processes is a redundant run, which is
harmless because every write is an idempotent upsert.
"""

from __future__ import annotations

import secrets
import threading
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Union

import structlog

from stream_sync.config.tiers import ChannelScope, SyncTier, TierConfig
from stream_sync.core.models.base import utcnow
from stream_sync.sync.executor import SyncOptions, SyncResult

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from stream_sync.sync.avatars import AvatarRefresher, AvatarRefreshResult
    from stream_sync.sync.executor import SyncExecutor
    from stream_sync.sync.history import RunHistory
    from stream_sync.sync.repository import ChannelRepository, StreamRepository

logger = structlog.get_logger(__name__)

AVATAR_JOB: str = "avatars"


# ---------------------------------------------------------------------------
# Guard state
# ---------------------------------------------------------------------------


@dataclass
class JobState:
    last_run_at: datetime | None = None
    in_progress: bool = False


@dataclass
class SchedulerState:
    """Process-owned guard state for every scheduler job.

    Passed to :class:`TierScheduler` explicitly so tests and embedding
    applications control its lifetime.  Thread-safe: Celery may run tasks in
    threads, FastAPI handlers run on the event loop.
    """

    jobs: dict[str, JobState] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def try_begin(self, job: str, min_interval: timedelta, now: datetime) -> str | None:
        """Mark *job* running.  Returns ``None`` on success, else the skip reason."""
        with self._lock:
            state = self.jobs.setdefault(job, JobState())
            if state.in_progress:
                return "in_progress"
            if state.last_run_at is not None and now - state.last_run_at < min_interval:
                return "debounced"
            state.in_progress = True
            state.last_run_at = now
            return None

    def finish(self, job: str) -> None:
        with self._lock:
            self.jobs.setdefault(job, JobState()).in_progress = False

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                name: {"last_run_at": state.last_run_at, "in_progress": state.in_progress}
                for name, state in self.jobs.items()
            }


# ---------------------------------------------------------------------------
# Trigger outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Skipped:
    reason: str


@dataclass(frozen=True)
class Ran:
    result: Union[SyncResult, "AvatarRefreshResult"]


TriggerOutcome = Union[Skipped, Ran]


# ---------------------------------------------------------------------------
# Cross-process lease
# ---------------------------------------------------------------------------


class NoopTierLease:
    """Lease that is always granted (single-process deployments)."""

    @asynccontextmanager
    async def acquire(self, job: str) -> AsyncIterator[bool]:
        yield True

    async def aclose(self) -> None:
        return None


# KEYS[1] - lease key
# ARGV[1] - token written by the holder
#
# Deletes the key only if this holder still owns it.
_LUA_RELEASE = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisTierLease:
    """Short-lived Redis lease shared by every process of a deployment.

    Acquired with ``SET key token NX PX ttl``; released with a
    compare-and-delete script so an expired lease taken over by another
    process is never removed by the old holder.  Redis failures deny the
    lease and are logged.

    Args:
        redis_client: A ``redis.asyncio.Redis`` connection.
        ttl: Lease lifetime; must exceed the longest expected run.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl: timedelta) -> None:
        self.redis_client = redis_client
        self.ttl = ttl

    @staticmethod
    def _key(job: str) -> str:
        return f"stream_sync:lease:{job}"

    @asynccontextmanager
    async def acquire(self, job: str) -> AsyncIterator[bool]:
        from redis.exceptions import RedisError  # noqa: PLC0415

        key = self._key(job)
        token = secrets.token_hex(16)
        try:
            acquired = bool(
                await self.redis_client.set(
                    key, token, nx=True, px=int(self.ttl.total_seconds() * 1000)
                )
            )
        except RedisError as exc:
            logger.warning("scheduler.lease.unavailable", job=job, error=str(exc))
            acquired = False
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.redis_client.eval(_LUA_RELEASE, 1, key, token)
                except RedisError as exc:
                    logger.warning("scheduler.lease.release_failed", job=job, error=str(exc))

    async def aclose(self) -> None:
        """Close the Redis connection pool behind this lease."""
        await self.redis_client.aclose()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class TierScheduler:
    """Entry point for every trigger surface (beat, HTTP, CLI).

    Args:
        executor: Runs a tier pass.
        streams: Resolves the active tier's channel scope.
        channels: Resolves the whole roster.
        tier_configs: Per-tier parameters.
        history: Run history store.
        avatar_refresher: Optional; required for :meth:`trigger_avatar_refresh`.
        state: Guard state; a fresh one is created when omitted.
        lease: Cross-process lease; :class:`NoopTierLease` when omitted.
    """

    def __init__(
        self,
        executor: SyncExecutor,
        streams: StreamRepository,
        channels: ChannelRepository,
        tier_configs: dict[SyncTier, TierConfig],
        history: RunHistory,
        avatar_refresher: AvatarRefresher | None = None,
        state: SchedulerState | None = None,
        lease: NoopTierLease | RedisTierLease | None = None,
        avatar_limit: int = 10,
    ) -> None:
        self.executor = executor
        self.streams = streams
        self.channels = channels
        self.tier_configs = tier_configs
        self.history = history
        self.avatar_refresher = avatar_refresher
        self.state = state or SchedulerState()
        self.lease = lease or NoopTierLease()
        self.avatar_limit = avatar_limit

    async def aclose(self) -> None:
        """Release connections held by the lease."""
        await self.lease.aclose()

    async def trigger(
        self,
        tier: SyncTier,
        options: SyncOptions | None = None,
        now: datetime | None = None,
    ) -> TriggerOutcome:
        """Run *tier* unless it is running or ran too recently."""
        now = now or utcnow()
        config = self.tier_configs[tier]

        async def job() -> SyncResult:
            channel_ids = await self._scope(config, now)
            window = config.window_for(now)
            if not channel_ids:
                logger.info("scheduler.tier.empty_scope", tier=tier.value)
                return SyncResult(tier=tier.value)
            return await self.executor.run(config, channel_ids, window, options, now=now)

        def on_error(exc: Exception) -> SyncResult:
            return SyncResult(tier=tier.value, errors=[f"run failed: {exc}"])

        return await self._guarded(tier.value, config.min_interval, now, job, on_error)

    async def trigger_avatar_refresh(
        self,
        limit: int | None = None,
        force_all: bool = False,
        now: datetime | None = None,
    ) -> TriggerOutcome:
        """Run the avatar refresher under its own single-flight guard."""
        from stream_sync.sync.avatars import AvatarRefreshResult  # noqa: PLC0415

        if self.avatar_refresher is None:
            raise RuntimeError("no avatar refresher configured")
        refresher = self.avatar_refresher
        now = now or utcnow()

        async def job() -> AvatarRefreshResult:
            return await refresher.run(
                limit=limit if limit is not None else self.avatar_limit,
                force_all=force_all,
                now=now,
            )

        def on_error(exc: Exception) -> AvatarRefreshResult:
            return AvatarRefreshResult(errors=[f"run failed: {exc}"])

        return await self._guarded(AVATAR_JOB, timedelta(0), now, job, on_error)

    async def _scope(self, config: TierConfig, now: datetime) -> list[str]:
        if config.channel_scope is ChannelScope.ACTIVE:
            return await self.streams.active_channel_ids(now, config.lookback, config.lookahead)
        return await self.channels.all_channel_ids()

    async def _guarded(
        self,
        job_name: str,
        min_interval: timedelta,
        now: datetime,
        job: Callable[[], Awaitable[Any]],
        on_error: Callable[[Exception], Any],
    ) -> TriggerOutcome:
        log = logger.bind(job=job_name)
        reason = self.state.try_begin(job_name, min_interval, now)
        if reason is not None:
            log.info("scheduler.job.skipped", reason=reason)
            return Skipped(reason)

        try:
            async with self.lease.acquire(job_name) as acquired:
                if not acquired:
                    log.info("scheduler.job.skipped", reason="lease_held")
                    return Skipped("lease_held")

                log.info("scheduler.job.start")
                started_at = utcnow()
                error_message: str | None = None
                try:
                    result = await job()
                except Exception as exc:
                    log.exception("scheduler.job.failed", error=str(exc))
                    error_message = str(exc)
                    result = on_error(exc)

                success = error_message is None and not getattr(result, "quota_error_occurred", False)
                await self.history.record(
                    job_name=job_name,
                    started_at=started_at,
                    finished_at=utcnow(),
                    success=success,
                    result=result.to_dict(),
                    error_message=error_message,
                )
                log.info("scheduler.job.complete", success=success)
                return Ran(result)
        finally:
            self.state.finish(job_name)
