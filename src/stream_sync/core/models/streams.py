"""Channel roster and live-stream ORM models.

``youtube_channels`` is the roster the sync tiers cover.  Roster maintenance
happens elsewhere; this package only reads it and writes the avatar columns.

``live_streams`` holds one row per broadcast, keyed by the YouTube video id.
Rows are never deleted: ended and missed broadcasts are kept as history.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from stream_sync.core.models.base import Base, TimestampMixin, utcnow


class StreamStatus(str, Enum):
    """Broadcast lifecycle status.  See :mod:`stream_sync.sync.lifecycle`."""

    UPCOMING = "upcoming"
    LIVE = "live"
    ENDED = "ended"
    MISSED = "missed"


class Channel(TimestampMixin, Base):
    """A YouTube channel in the sync roster."""

    __tablename__ = "youtube_channels"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    youtube_channel_id: Mapped[str] = mapped_column(
        sa.String(64),
        nullable=False,
        unique=True,
    )
    channel_name: Mapped[Optional[str]] = mapped_column(sa.String(200), nullable=True)
    custom_display_name: Mapped[Optional[str]] = mapped_column(sa.String(200), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    avatar_last_fetched_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    avatar_fetch_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Channel {self.youtube_channel_id} name={self.channel_name!r}>"


class LiveStream(TimestampMixin, Base):
    """Durable record of a single broadcast.

    Invariant: ``status == 'live'`` implies ``actual_start_time_utc`` is set
    and ``actual_end_time_utc`` is not.  Status only ever moves forward
    (upcoming → live → ended, or upcoming → missed).
    """

    __tablename__ = "live_streams"

    video_id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    youtube_channel_id: Mapped[str] = mapped_column(
        sa.String(64),
        sa.ForeignKey("youtube_channels.youtube_channel_id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    stream_url: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(16),
        nullable=False,
        default=StreamStatus.UPCOMING.value,
    )
    scheduled_start_time_utc: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    actual_start_time_utc: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    actual_end_time_utc: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    view_count: Mapped[Optional[int]] = mapped_column(sa.BigInteger, nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    __table_args__ = (
        sa.Index("idx_live_streams_channel_status", "youtube_channel_id", "status"),
        sa.Index("idx_live_streams_scheduled", "scheduled_start_time_utc"),
    )

    def __repr__(self) -> str:
        return (
            f"<LiveStream {self.video_id} channel={self.youtube_channel_id} "
            f"status={self.status!r}>"
        )
