"""YouTube API key pool and usage log ORM models.

``api_key_encrypted`` stores the Fernet-encrypted key string.  The
CREDENTIAL_ENCRYPTION_KEY environment variable (a Fernet key) is the single
secret that must be protected carefully.

The models intentionally expose no plaintext accessor. Decryption is
performed exclusively inside core/credential_pool.py, and only at the moment
a lease is handed to the HTTP client.

Quota state lives in this table rather than in Redis: every acquire is a
single conditional UPDATE, so the database row is the source of truth shared
by the web process and all Celery workers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from stream_sync.core.models.base import Base, PortableJSON, TimestampMixin, utcnow


class ApiKeyStatus(str, Enum):
    """Lifecycle status of a pooled API key."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    QUOTA_EXCEEDED = "quota_exceeded"


class ApiKey(TimestampMixin, Base):
    """A YouTube Data API key in the shared credential pool.

    status:              active keys are eligible for acquire; quota_exceeded
                         keys come back at the next UTC day rollover;
                         inactive keys wait for an operator
    quota_used_today:    units reserved or spent since last_quota_reset_at
    consecutive_errors:  non-quota failures since the last success; reaching
                         the configured threshold sets status to inactive
    """

    __tablename__ = "youtube_api_keys"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(sa.String(200), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    api_key_encrypted: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(20),
        nullable=False,
        default=ApiKeyStatus.ACTIVE.value,
    )
    quota_used_today: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    total_requests: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    last_quota_reset_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    quota_exceeded_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    consecutive_errors: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        sa.Index("idx_youtube_api_keys_status_quota", "status", "quota_used_today"),
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey id={self.id} name={self.name!r} status={self.status!r} "
            f"quota_used_today={self.quota_used_today}>"
        )


class ApiKeyUsageLog(Base):
    """Append-only record of one upstream call (or cache hit).

    api_key_id is NULL for cache hits, which spend no quota and use no key.
    """

    __tablename__ = "youtube_api_key_usage_log"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    api_key_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        sa.ForeignKey("youtube_api_keys.id", ondelete="SET NULL"),
        nullable=True,
    )
    endpoint: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    channel_ids: Mapped[list] = mapped_column(PortableJSON, nullable=False, default=list)
    units_used: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    response_cached: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    success: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        sa.Index("idx_usage_log_key_created", "api_key_id", "created_at"),
    )
