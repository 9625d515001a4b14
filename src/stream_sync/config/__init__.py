"""Configuration package for Stream Sync.

Re-exports the most commonly used configuration symbols so that
callers can write::

    from stream_sync.config import get_settings, SyncTier

without needing to know which sub-module each symbol lives in.
"""

from __future__ import annotations

from stream_sync.config.settings import Settings, get_settings
from stream_sync.config.tiers import (
    ChannelScope,
    SyncTier,
    SyncWindow,
    TierConfig,
    build_tier_configs,
)

__all__ = [
    # settings
    "Settings",
    "get_settings",
    # tiers
    "ChannelScope",
    "SyncTier",
    "SyncWindow",
    "TierConfig",
    "build_tier_configs",
]
