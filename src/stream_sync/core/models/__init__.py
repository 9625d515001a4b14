"""SQLAlchemy ORM models for Stream Sync.

All models are imported here so that:
1. ``Base.metadata.create_all`` sees every table.
2. Application code can do ``from stream_sync.core.models import LiveStream``
   without knowing which sub-module a model lives in.
"""

from __future__ import annotations

from stream_sync.core.models.api_keys import ApiKey, ApiKeyStatus, ApiKeyUsageLog
from stream_sync.core.models.base import Base, TimestampMixin, utcnow
from stream_sync.core.models.cache import ApiResponseCache, SyncRunRecord
from stream_sync.core.models.streams import Channel, LiveStream, StreamStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "utcnow",
    # Credential pool
    "ApiKey",
    "ApiKeyStatus",
    "ApiKeyUsageLog",
    # Cache / history
    "ApiResponseCache",
    "SyncRunRecord",
    # Streams
    "Channel",
    "LiveStream",
    "StreamStatus",
]
