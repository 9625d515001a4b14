"""Response cache and sync run history ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from stream_sync.core.models.base import Base, PortableJSON, utcnow


class ApiResponseCache(Base):
    """Cached raw upstream payload for one request signature.

    Rows with ``expires_at <= now`` are dead: readers ignore them and writers
    delete them opportunistically.
    """

    __tablename__ = "youtube_api_cache"

    cache_key: Mapped[str] = mapped_column(sa.String(128), primary_key=True)
    endpoint: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    channel_ids: Mapped[list] = mapped_column(PortableJSON, nullable=False, default=list)
    response_data: Mapped[dict] = mapped_column(PortableJSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)


class SyncRunRecord(Base):
    """One executed scheduler job (a tier run or an avatar refresh).

    Skipped triggers are not recorded.
    """

    __tablename__ = "sync_run_history"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    job_name: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime] = mapped_column(nullable=False)
    success: Mapped[bool] = mapped_column(sa.Boolean, nullable=False)
    result: Mapped[dict] = mapped_column(PortableJSON, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    __table_args__ = (
        sa.Index("idx_sync_run_history_job_started", "job_name", "started_at"),
    )
