"""Persistence of executed scheduler jobs (``sync_run_history``)."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.core.models.cache import SyncRunRecord

logger = logging.getLogger(__name__)


class RunHistory:
    """Append and list :class:`SyncRunRecord` rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from stream_sync.core.database import get_session_factory  # noqa: PLC0415

            self._session_factory = get_session_factory()
        return self._session_factory

    async def record(
        self,
        job_name: str,
        started_at: datetime,
        finished_at: datetime,
        success: bool,
        result: dict[str, Any],
        error_message: str | None = None,
    ) -> None:
        """Store one run.  Failures are logged, never raised."""
        try:
            async with self._sessions()() as session:
                session.add(
                    SyncRunRecord(
                        job_name=job_name,
                        started_at=started_at,
                        finished_at=finished_at,
                        success=success,
                        result=result,
                        error_message=error_message,
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Failed to record run history for %s.", job_name, exc_info=True)

    async def recent(self, limit: int = 50, job_name: str | None = None) -> list[SyncRunRecord]:
        stmt = select(SyncRunRecord).order_by(SyncRunRecord.started_at.desc()).limit(limit)
        if job_name is not None:
            stmt = stmt.where(SyncRunRecord.job_name == job_name)
        async with self._sessions()() as session:
            return list((await session.execute(stmt)).scalars())
