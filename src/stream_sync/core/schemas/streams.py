"""Pydantic schemas for the read-only stream query surface."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class LiveStreamRead(BaseModel):
    """One broadcast as returned by ``GET /api/streams``."""

    model_config = ConfigDict(from_attributes=True)

    video_id: str
    youtube_channel_id: str
    title: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    stream_url: str
    status: str
    scheduled_start_time_utc: Optional[datetime] = None
    actual_start_time_utc: Optional[datetime] = None
    actual_end_time_utc: Optional[datetime] = None
    view_count: Optional[int] = None
    fetched_at: Optional[datetime] = None
