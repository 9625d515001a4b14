"""Database-backed response cache for YouTube Data API payloads.

Maps a normalized request signature to the raw upstream response with an
expiry.  The TTL is chosen per call by the caller (each sync tier has its
own freshness requirement); the cache itself has no default TTL.

Rules:

- ``get`` treats an entry with ``expires_at <= now`` exactly like a missing
  one.  There is no stale-while-revalidate mode.
- ``put`` overwrites any previous entry for the signature (last write wins,
  no merging) and opportunistically deletes expired rows.
- ``sweep`` deletes every expired row; the beat schedule runs it hourly.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.core.models.base import utcnow
from stream_sync.core.models.cache import ApiResponseCache

logger = logging.getLogger(__name__)


def make_signature(
    endpoint: str,
    channel_ids: Iterable[str],
    event_types: Iterable[str],
    window: str | None = None,
    max_results: int | None = None,
) -> str:
    """Build the cache key for a request.

    Channel ids and event types are de-duplicated and sorted so logically
    identical requests map to the same key regardless of argument order.
    *window* identifies the window relative to the run, so a sliding window
    keeps its key while it slides.

    Args:
        endpoint: Upstream endpoint name, e.g. ``"search.list"``.
        channel_ids: Channel ids covered by the request.
        event_types: ``eventType`` filters applied.
        window: Window identity (see :meth:`TierConfig.window_key`), or
            ``None`` when no window parameter is sent upstream.
        max_results: ``maxResults`` sent upstream, if any.

    Returns:
        ``"<endpoint>:<sha256 hex>"``.
    """
    canonical = {
        "channels": sorted(set(channel_ids)),
        "event_types": sorted(set(event_types)),
        "window": window,
        "max_results": max_results,
    }
    digest = hashlib.sha256(
        json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"{endpoint}:{digest}"


class ResponseCache:
    """Signature-keyed cache of raw upstream responses.

    Args:
        session_factory: Async session factory.  Defaults to the process-wide
            factory from :mod:`stream_sync.core.database`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from stream_sync.core.database import get_session_factory  # noqa: PLC0415

            self._session_factory = get_session_factory()
        return self._session_factory

    async def get(self, signature: str, now: datetime | None = None) -> dict[str, Any] | None:
        """Return the cached response for *signature*, or ``None`` on a miss.

        Args:
            signature: Key built by :func:`make_signature`.
            now: Override for the current time (tests).
        """
        now = now or utcnow()
        async with self._sessions()() as session:
            result = await session.execute(
                select(ApiResponseCache.response_data).where(
                    ApiResponseCache.cache_key == signature,
                    ApiResponseCache.expires_at > now,
                )
            )
            payload = result.scalar_one_or_none()
        if payload is None:
            logger.debug("Cache miss for %s.", signature)
        return payload

    async def put(
        self,
        signature: str,
        response: dict[str, Any],
        ttl: timedelta,
        endpoint: str = "",
        channel_ids: Iterable[str] = (),
        now: datetime | None = None,
    ) -> None:
        """Store *response* under *signature* for *ttl*.

        Replaces any existing entry wholesale.  Expired rows are evicted in
        the same transaction.
        """
        now = now or utcnow()
        values = {
            "endpoint": endpoint or signature.split(":", 1)[0],
            "channel_ids": sorted(set(channel_ids)),
            "response_data": response,
            "created_at": now,
            "expires_at": now + ttl,
        }
        async with self._sessions()() as session:
            await session.execute(
                delete(ApiResponseCache)
                .where(
                    ApiResponseCache.expires_at <= now,
                    ApiResponseCache.cache_key != signature,
                )
                .execution_options(synchronize_session=False)
            )
            replaced = await session.execute(
                update(ApiResponseCache)
                .where(ApiResponseCache.cache_key == signature)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if replaced.rowcount == 0:
                session.add(ApiResponseCache(cache_key=signature, **values))
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent writer inserted the same signature first.
                await session.rollback()
                await session.execute(
                    update(ApiResponseCache)
                    .where(ApiResponseCache.cache_key == signature)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()

    async def sweep(self, now: datetime | None = None) -> int:
        """Delete every expired entry.

        Returns:
            Number of rows deleted.
        """
        now = now or utcnow()
        async with self._sessions()() as session:
            result = await session.execute(
                delete(ApiResponseCache)
                .where(ApiResponseCache.expires_at <= now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Swept %d expired cache entries.", result.rowcount)
        return result.rowcount
