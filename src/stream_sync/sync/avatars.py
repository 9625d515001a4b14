"""Channel avatar refresher.

A low-priority consumer of the shared credential pool: it fetches channel
thumbnails with ``channels.list`` (1 unit per 50 channels) and never
retries.  When the pool is exhausted or upstream reports a spent quota the
run stops and every remaining channel counts as skipped, leaving the quota
to the stream-sync tiers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from stream_sync.core.credential_pool import CredentialPool, KeyOutcome
from stream_sync.core.exceptions import (
    AuthError,
    QuotaExceededError,
    TransientUpstreamError,
    UpstreamError,
)
from stream_sync.core.models.base import utcnow
from stream_sync.core.usage_log import UsageLog
from stream_sync.sync.repository import ChannelRepository
from stream_sync.youtube._client import build_http_client, fetch_channels
from stream_sync.youtube.config import CHANNELS_ENDPOINT, MAX_IDS_PER_BATCH, QUOTA_COSTS

logger = logging.getLogger(__name__)


@dataclass
class AvatarRefreshResult:
    refreshed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshed": self.refreshed,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


def pick_avatar_url(item: dict[str, Any]) -> str | None:
    """Return the best channel thumbnail URL: high, then medium, then default."""
    snippet = item.get("snippet") if isinstance(item, dict) else None
    thumbnails = (snippet or {}).get("thumbnails") or {}
    for size in ("high", "medium", "default"):
        entry = thumbnails.get(size)
        if isinstance(entry, dict) and entry.get("url"):
            return entry["url"]
    return None


class AvatarRefresher:
    """Fetch and store avatars for channels that lack one.

    Args:
        pool: Shared credential pool.
        channels: Channel repository.
        usage_log: Usage log writer.
        http_client: Optional shared client; one is built per run otherwise.
        request_timeout: Timeout for upstream calls.
    """

    def __init__(
        self,
        pool: CredentialPool,
        channels: ChannelRepository,
        usage_log: UsageLog,
        http_client: httpx.AsyncClient | None = None,
        request_timeout: float = 30.0,
    ) -> None:
        self.pool = pool
        self.channels = channels
        self.usage_log = usage_log
        self._http_client = http_client
        self.request_timeout = request_timeout

    async def run(
        self,
        limit: int = 10,
        force_all: bool = False,
        now: datetime | None = None,
    ) -> AvatarRefreshResult:
        """Refresh up to *limit* channel avatars.

        Args:
            limit: Maximum channels to process.
            force_all: Refresh channels that already have an avatar too.
            now: Time of the run (tests).
        """
        now = now or utcnow()
        result = AvatarRefreshResult()
        channel_ids = await self.channels.channels_for_avatar_refresh(limit, force_all=force_all)
        if not channel_ids:
            return result

        client = self._http_client or build_http_client(self.request_timeout)
        try:
            for start in range(0, len(channel_ids), MAX_IDS_PER_BATCH):
                batch = channel_ids[start : start + MAX_IDS_PER_BATCH]
                if not await self._refresh_batch(client, batch, now, result):
                    result.skipped += len(channel_ids) - start
                    break
        finally:
            if self._http_client is None:
                await client.aclose()

        logger.info(
            "Avatar refresh: refreshed=%d skipped=%d failed=%d",
            result.refreshed,
            result.skipped,
            result.failed,
        )
        return result

    async def _refresh_batch(
        self,
        client: httpx.AsyncClient,
        batch: list[str],
        now: datetime,
        result: AvatarRefreshResult,
    ) -> bool:
        """Refresh one batch.  Returns ``False`` when the run must stop."""
        cost = QUOTA_COSTS[CHANNELS_ENDPOINT]
        lease = await self.pool.acquire(cost, now=now)
        if lease is None:
            logger.info("Avatar refresh backing off: no API key with spare quota.")
            return False

        try:
            body = await fetch_channels(client, lease.api_key, batch)
        except QuotaExceededError as exc:
            await self.pool.report(lease, KeyOutcome.QUOTA_EXCEEDED, units_used=0, error=str(exc))
            await self._log_usage(batch, 0, False, lease.key_id, str(exc))
            logger.info("Avatar refresh backing off: %s", exc)
            return False
        except UpstreamError as exc:
            outcome = KeyOutcome.SUCCESS
            if isinstance(exc, AuthError):
                outcome = KeyOutcome.AUTH
            elif isinstance(exc, TransientUpstreamError):
                outcome = KeyOutcome.TRANSIENT
            await self.pool.report(lease, outcome, units_used=0, error=str(exc))
            await self._log_usage(batch, 0, False, lease.key_id, str(exc))
            for channel_id in batch:
                await self.channels.record_avatar_error(channel_id, str(exc), now)
            result.failed += len(batch)
            result.errors.append(str(exc))
            logger.warning("Avatar batch of %d channel(s) failed: %s", len(batch), exc)
            return True

        await self.pool.report(lease, KeyOutcome.SUCCESS, units_used=cost)
        await self._log_usage(batch, cost, True, lease.key_id, None)

        items = {
            item.get("id"): item
            for item in body.get("items") or []
            if isinstance(item, dict)
        }
        for channel_id in batch:
            item = items.get(channel_id)
            if item is None:
                await self.channels.record_avatar_error(channel_id, "channel not returned upstream", now)
                result.failed += 1
                result.errors.append(f"{channel_id}: not returned upstream")
                continue
            avatar_url = pick_avatar_url(item)
            if avatar_url is None:
                await self.channels.record_avatar_error(channel_id, "channel has no thumbnail", now)
                result.failed += 1
                result.errors.append(f"{channel_id}: no thumbnail")
                continue
            title = (item.get("snippet") or {}).get("title")
            await self.channels.record_avatar(channel_id, avatar_url, title, now)
            result.refreshed += 1
        return True

    async def _log_usage(
        self,
        batch: list[str],
        units: int,
        success: bool,
        api_key_id: Any,
        error: str | None,
    ) -> None:
        await self.usage_log.record(
            endpoint=CHANNELS_ENDPOINT,
            channel_ids=batch,
            units_used=units,
            response_cached=False,
            success=success,
            api_key_id=api_key_id,
            error_message=error,
        )
