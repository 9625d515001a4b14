"""Sync executor: fetch one tier's channels and reconcile the results.

For each channel in scope the executor:

1. Serves the channel from the response cache when allowed and fresh.
2. Otherwise leases a key from the :class:`CredentialPool`, runs one
   ``search.list`` call per tier event type plus ``videos.list`` detail
   batches, settles the lease and caches the raw payload.
3. Hands the payload to the :class:`StreamRepository` for lifecycle
   reconciliation.

Pool exhaustion and upstream quota errors abort the remainder of the run;
any other per-channel failure is recorded in ``SyncResult.errors`` and the
run moves on.  :meth:`SyncExecutor.run` never raises for upstream failures.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import httpx

from stream_sync.config.tiers import SyncWindow, TierConfig
from stream_sync.core.credential_pool import CredentialPool, KeyLease, KeyOutcome
from stream_sync.core.exceptions import (
    AuthError,
    QuotaExceededError,
    TransientUpstreamError,
    UpstreamError,
)
from stream_sync.core.models.base import utcnow
from stream_sync.core.response_cache import ResponseCache, make_signature
from stream_sync.core.usage_log import UsageLog
from stream_sync.sync.repository import StreamRepository
from stream_sync.youtube._client import (
    build_http_client,
    fetch_video_details,
    search_broadcasts,
)
from stream_sync.youtube.broadcasts import observations_from_payload, search_video_ids
from stream_sync.youtube.config import (
    MAX_IDS_PER_BATCH,
    MAX_RESULTS_PER_SEARCH_PAGE,
    QUOTA_COSTS,
    SEARCH_ENDPOINT,
    VIDEOS_ENDPOINT,
    WINDOWED_EVENT_TYPES,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SyncOptions:
    """Per-run switches accepted by every trigger surface.

    Attributes:
        force_refresh: Ignore cached responses and fetch upstream.
        skip_cache: Same effect as ``force_refresh``; kept as a separate
            flag because trigger callers send either name.
    """

    force_refresh: bool = False
    skip_cache: bool = False

    @property
    def bypass_cache(self) -> bool:
        return self.force_refresh or self.skip_cache


@dataclass
class SyncResult:
    """Aggregate outcome of one tier run."""

    tier: str
    videos_upserted: int = 0
    cache_hit: bool = False
    """``True`` when at least one channel was served from the cache."""
    quota_error_occurred: bool = False
    errors: list[str] = field(default_factory=list)
    channels_synced: int = 0
    units_used: int = 0
    transitions: Counter[str] = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier,
            "videos_upserted": self.videos_upserted,
            "cache_hit": self.cache_hit,
            "quota_error_occurred": self.quota_error_occurred,
            "errors": list(self.errors),
            "channels_synced": self.channels_synced,
            "units_used": self.units_used,
            "transitions": dict(self.transitions),
        }


class _QuotaAbort(Exception):
    """Internal signal: stop the run, quota is gone."""


def estimate_units(event_types: Sequence[str], max_results: int = MAX_RESULTS_PER_SEARCH_PAGE) -> int:
    """Units reserved per channel.

    One search per event type, plus enough ``videos.list`` batches for every
    id those searches can return, so a channel pass never charges more than
    it reserved.
    """
    page = min(max_results, MAX_RESULTS_PER_SEARCH_PAGE)
    batches = max(1, math.ceil(len(event_types) * page / MAX_IDS_PER_BATCH))
    return QUOTA_COSTS[SEARCH_ENDPOINT] * len(event_types) + QUOTA_COSTS[VIDEOS_ENDPOINT] * batches


def search_signature(tier_config: TierConfig, channel_id: str, window: SyncWindow, max_results: int) -> str:
    """Cache key for one channel's search pass.

    Built from what is sent upstream: the window only counts when one of the
    tier's event types is sent with publish bounds.
    """
    windowed = any(event_type in WINDOWED_EVENT_TYPES for event_type in tier_config.event_types)
    return make_signature(
        SEARCH_ENDPOINT,
        [channel_id],
        tier_config.event_types,
        window=tier_config.window_key(window) if windowed else None,
        max_results=min(max_results, MAX_RESULTS_PER_SEARCH_PAGE),
    )


class SyncExecutor:
    """Runs one tier pass over a set of channels.

    Args:
        pool: Shared credential pool.
        cache: Response cache.
        repository: Stream repository.
        usage_log: Usage log writer.
        http_client: Optional shared client.  When omitted a client with
            the configured timeout is created per run.
        request_timeout: Timeout for upstream calls when the executor
            builds its own client.
        max_results: ``maxResults`` for ``search.list``.
    """

    def __init__(
        self,
        pool: CredentialPool,
        cache: ResponseCache,
        repository: StreamRepository,
        usage_log: UsageLog,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = 30.0,
        max_results: int = 50,
    ) -> None:
        self.pool = pool
        self.cache = cache
        self.repository = repository
        self.usage_log = usage_log
        self._http_client = http_client
        self.request_timeout = request_timeout
        self.max_results = max_results

    async def run(
        self,
        tier_config: TierConfig,
        channel_ids: Sequence[str],
        window: SyncWindow,
        options: SyncOptions | None = None,
        now: datetime | None = None,
    ) -> SyncResult:
        """Sync *channel_ids* for one tier.

        Args:
            tier_config: Event types and cache TTL of the tier.
            channel_ids: Channels in scope.
            window: The tier's time window for this run.
            options: Cache bypass switches.
            now: Time of the run (tests).

        Returns:
            The aggregate :class:`SyncResult`.
        """
        options = options or SyncOptions()
        now = now or utcnow()
        result = SyncResult(tier=tier_config.tier.value)
        if not channel_ids:
            return result

        client = self._http_client or build_http_client(self.request_timeout)
        try:
            for channel_id in channel_ids:
                try:
                    await self._sync_channel(client, tier_config, channel_id, window, options, now, result)
                except _QuotaAbort:
                    result.quota_error_occurred = True
                    logger.warning(
                        "Tier %s aborted at channel %s: API quota exhausted.",
                        tier_config.tier.value,
                        channel_id,
                    )
                    break
        finally:
            if self._http_client is None:
                await client.aclose()

        logger.info(
            "Tier %s synced %d/%d channel(s): upserted=%d units=%d cache_hit=%s errors=%d",
            tier_config.tier.value,
            result.channels_synced,
            len(channel_ids),
            result.videos_upserted,
            result.units_used,
            result.cache_hit,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Per-channel pass
    # ------------------------------------------------------------------

    async def _sync_channel(
        self,
        client: httpx.AsyncClient,
        tier_config: TierConfig,
        channel_id: str,
        window: SyncWindow,
        options: SyncOptions,
        now: datetime,
        result: SyncResult,
    ) -> None:
        signature = search_signature(tier_config, channel_id, window, self.max_results)

        payload: dict[str, Any] | None = None
        if not options.bypass_cache:
            payload = await self.cache.get(signature, now=now)
            if payload is not None:
                result.cache_hit = True
                await self.usage_log.record(
                    endpoint=SEARCH_ENDPOINT,
                    channel_ids=[channel_id],
                    units_used=0,
                    response_cached=True,
                    success=True,
                )

        if payload is None:
            payload = await self._fetch_channel(client, tier_config, channel_id, window, now, result)
            if payload is None:
                return
            await self.cache.put(
                signature,
                payload,
                tier_config.cache_ttl,
                endpoint=SEARCH_ENDPOINT,
                channel_ids=[channel_id],
                now=now,
            )

        parsed = observations_from_payload(payload)
        for problem in parsed.malformed:
            result.errors.append(f"{channel_id}: malformed item skipped: {problem}")
        applied = await self.repository.apply(channel_id, parsed, now=now)
        result.videos_upserted += applied.upserted
        result.transitions.update(applied.transitions)
        if applied.rejected:
            result.errors.append(f"{channel_id}: {applied.rejected} write(s) rejected")
        result.channels_synced += 1

    async def _fetch_channel(
        self,
        client: httpx.AsyncClient,
        tier_config: TierConfig,
        channel_id: str,
        window: SyncWindow,
        now: datetime,
        result: SyncResult,
    ) -> dict[str, Any] | None:
        """Fetch a channel payload upstream; ``None`` means the channel was skipped.

        Raises:
            _QuotaAbort: The pool is exhausted or upstream reported a spent quota.
        """
        lease = await self.pool.acquire(estimate_units(tier_config.event_types, self.max_results), now=now)
        if lease is None:
            logger.warning("No API key with enough quota for channel %s.", channel_id)
            raise _QuotaAbort

        charged = 0

        async def call(endpoint: str, fn: Callable[[], Awaitable[T]]) -> T:
            nonlocal charged
            body = await self._with_retry(fn, endpoint, channel_id)
            charged += QUOTA_COSTS[endpoint]
            return body

        try:
            search: dict[str, Any] = {}
            for event_type in tier_config.event_types:
                search[event_type] = await call(
                    SEARCH_ENDPOINT,
                    lambda event_type=event_type: search_broadcasts(
                        client,
                        lease.api_key,
                        channel_id,
                        event_type,
                        window=window,
                        max_results=self.max_results,
                    ),
                )
            video_ids = search_video_ids(search)
            videos: list[dict[str, Any]] = []
            for start in range(0, len(video_ids), MAX_IDS_PER_BATCH):
                batch = video_ids[start : start + MAX_IDS_PER_BATCH]
                videos.append(
                    await call(
                        VIDEOS_ENDPOINT,
                        lambda batch=batch: fetch_video_details(client, lease.api_key, batch),
                    )
                )
        except QuotaExceededError as exc:
            await self._settle(lease, KeyOutcome.QUOTA_EXCEEDED, charged, channel_id, str(exc), result)
            result.errors.append(f"{channel_id}: {exc}")
            raise _QuotaAbort from exc
        except AuthError as exc:
            logger.error(
                "API key '%s' (%s) rejected while syncing %s: %s",
                lease.name,
                lease.key_id,
                channel_id,
                exc,
            )
            await self._settle(lease, KeyOutcome.AUTH, charged, channel_id, str(exc), result)
            result.errors.append(f"{channel_id}: {exc}")
            return None
        except TransientUpstreamError as exc:
            logger.warning("Skipping channel %s after retry: %s", channel_id, exc)
            await self._settle(lease, KeyOutcome.TRANSIENT, charged, channel_id, str(exc), result)
            result.errors.append(f"{channel_id}: {exc}")
            return None
        except UpstreamError as exc:
            # Request-level rejection (bad channel id etc.); the key itself is fine.
            logger.warning("Skipping channel %s: %s", channel_id, exc)
            await self._settle(lease, KeyOutcome.SUCCESS, charged, channel_id, str(exc), result, success=False)
            result.errors.append(f"{channel_id}: {exc}")
            return None

        await self._settle(lease, KeyOutcome.SUCCESS, charged, channel_id, None, result)
        return {"search": search, "videos": videos}

    async def _with_retry(
        self,
        fn: Callable[[], Awaitable[T]],
        endpoint: str,
        channel_id: str,
    ) -> T:
        """Run *fn*, retrying once on a transient upstream error."""
        try:
            return await fn()
        except TransientUpstreamError as exc:
            logger.info("Transient error on %s for %s, retrying once: %s", endpoint, channel_id, exc)
        return await fn()

    async def _settle(
        self,
        lease: KeyLease,
        outcome: KeyOutcome,
        charged: int,
        channel_id: str,
        error: str | None,
        result: SyncResult,
        success: bool | None = None,
    ) -> None:
        await self.pool.report(lease, outcome, units_used=charged, error=error)
        await self.usage_log.record(
            endpoint=SEARCH_ENDPOINT,
            channel_ids=[channel_id],
            units_used=charged,
            response_cached=False,
            success=outcome is KeyOutcome.SUCCESS if success is None else success,
            api_key_id=lease.key_id,
            error_message=error,
        )
        result.units_used += charged
