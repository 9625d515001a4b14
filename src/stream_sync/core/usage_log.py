"""Append-only usage log for upstream calls and cache hits.

Every sync attempt writes one row to ``youtube_api_key_usage_log``, cache
hits included (``response_cached=True``, zero units, no key).  The log is
what operators read to audit quota spend and diagnose exhausted keys; the
per-key figures returned by :meth:`UsageLog.stats_for_key` are aggregated
from it.

Writes are best-effort: a failure to log never fails the sync pass that
produced it.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.core.models.api_keys import ApiKeyUsageLog
from stream_sync.core.models.base import utcnow
from stream_sync.core.schemas.api_keys import ApiKeyStats

logger = logging.getLogger(__name__)


class UsageLog:
    """Writer and reader for ``youtube_api_key_usage_log``.

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

    async def record(
        self,
        *,
        endpoint: str,
        channel_ids: Iterable[str],
        units_used: int,
        response_cached: bool,
        success: bool,
        api_key_id: uuid.UUID | None = None,
        error_message: str | None = None,
    ) -> None:
        """Append one usage entry (best-effort)."""
        entry = ApiKeyUsageLog(
            api_key_id=api_key_id,
            endpoint=endpoint,
            channel_ids=sorted(set(channel_ids)),
            units_used=units_used,
            response_cached=response_cached,
            success=success,
            error_message=error_message[:500] if error_message else None,
        )
        try:
            async with self._sessions()() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError:
            logger.warning(
                "Failed to write usage log entry for %s (key %s).",
                endpoint,
                api_key_id,
                exc_info=True,
            )

    async def stats_for_key(self, api_key_id: uuid.UUID, now: datetime | None = None) -> ApiKeyStats:
        """Aggregate recent usage for one key.

        Returns:
            Units charged in the last 24h and last hour, plus request and
            error counts for the last 24h.
        """
        now = now or utcnow()
        day_ago = now - timedelta(hours=24)
        hour_ago = now - timedelta(hours=1)
        recent = ApiKeyUsageLog.created_at >= day_ago
        last_hour = ApiKeyUsageLog.created_at >= hour_ago

        stmt = select(
            func.coalesce(func.sum(ApiKeyUsageLog.units_used), 0),
            func.coalesce(
                func.sum(sa.case((last_hour, ApiKeyUsageLog.units_used), else_=0)), 0
            ),
            func.count(ApiKeyUsageLog.id),
            func.coalesce(
                func.sum(sa.case((ApiKeyUsageLog.success.is_(False), 1), else_=0)), 0
            ),
        ).where(ApiKeyUsageLog.api_key_id == api_key_id, recent)

        async with self._sessions()() as session:
            units_24h, units_1h, requests_24h, errors_24h = (await session.execute(stmt)).one()

        return ApiKeyStats(
            api_key_id=api_key_id,
            units_used_24h=int(units_24h),
            units_used_1h=int(units_1h),
            requests_24h=int(requests_24h),
            errors_24h=int(errors_24h),
        )

    async def entries(
        self,
        limit: int = 100,
        api_key_id: uuid.UUID | None = None,
    ) -> list[ApiKeyUsageLog]:
        """Return the most recent entries, newest first."""
        stmt = select(ApiKeyUsageLog).order_by(ApiKeyUsageLog.created_at.desc()).limit(limit)
        if api_key_id is not None:
            stmt = stmt.where(ApiKeyUsageLog.api_key_id == api_key_id)
        async with self._sessions()() as session:
            return list((await session.execute(stmt)).scalars())
