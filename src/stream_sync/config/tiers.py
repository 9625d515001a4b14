"""Sync tier definitions and per-tier configuration.

Defines the three sync tiers (ACTIVE, TODAY, FULL) that trade freshness
against YouTube quota spend.  Each tier has its own channel scope, time
window, upstream event-type filter, debounce interval and cache TTL:

  - ACTIVE:  channels with something live or about to go live; polled often
             to catch ``upcoming → live`` and ``live → ended`` promptly.
  - TODAY:   the whole roster, UTC day start until 06:00 the next day.
  - FULL:    the whole roster over a wide lookback/lookahead window; discovers
             new upcoming broadcasts and backfills completed ones.

Every interval and TTL comes from :class:`stream_sync.config.settings.Settings`
so operators can tune them without code changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum

from stream_sync.config.settings import Settings


class SyncTier(str, Enum):
    """Sync granularities handled by the tier scheduler."""

    ACTIVE = "active"
    TODAY = "today"
    FULL = "full"


class ChannelScope(str, Enum):
    """Which roster channels a tier run covers."""

    ACTIVE = "active"
    """Channels with a live stream, an imminent upcoming stream, or a
    recently started stream that has not ended."""

    ALL = "all"
    """Every channel in the roster."""


@dataclass(frozen=True)
class SyncWindow:
    """Half-open time window ``[start, end)`` a tier run covers."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class TierConfig:
    """Configuration parameters for a single sync tier.

    Attributes:
        tier: The :class:`SyncTier` this configuration applies to.
        event_types: Upstream ``eventType`` filters searched per channel.
            One ``search.list`` call (100 units) is issued per entry.
        channel_scope: Which roster channels the tier covers.
        min_interval: Minimum time between two runs of the tier.
        cache_ttl: Freshness window of cached search responses.
        lookback: Past extent of the window (relative to the anchor).
        lookahead: Future extent of the window (relative to the anchor).
        anchor_to_day_start: Anchor the window at UTC midnight of the current
            day instead of at ``now``.
    """

    tier: SyncTier
    event_types: tuple[str, ...]
    channel_scope: ChannelScope
    min_interval: timedelta
    cache_ttl: timedelta
    lookback: timedelta
    lookahead: timedelta
    anchor_to_day_start: bool = False

    def window_for(self, now: datetime) -> SyncWindow:
        """Return the sync window for a run starting at *now*, truncated to the minute."""
        if self.anchor_to_day_start:
            anchor = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        else:
            anchor = now.replace(second=0, microsecond=0)
        return SyncWindow(start=anchor - self.lookback, end=anchor + self.lookahead)

    def window_key(self, window: SyncWindow) -> str:
        """Return an identity for *window* that is stable while it slides.

        Sliding windows are identified by their extent around the run time,
        day-anchored windows by their anchor date.  Used in cache signatures.
        """
        if self.anchor_to_day_start:
            return f"day:{window.start.date().isoformat()}"
        return f"-{int(self.lookback.total_seconds())}s+{int(self.lookahead.total_seconds())}s"


def build_tier_configs(settings: Settings) -> dict[SyncTier, TierConfig]:
    """Build the per-tier configuration table from application settings.

    Args:
        settings: Loaded application settings.

    Returns:
        Mapping of every :class:`SyncTier` to its :class:`TierConfig`.
    """
    return {
        SyncTier.ACTIVE: TierConfig(
            tier=SyncTier.ACTIVE,
            event_types=("live",),
            channel_scope=ChannelScope.ACTIVE,
            min_interval=timedelta(seconds=settings.active_min_interval_seconds),
            cache_ttl=timedelta(seconds=settings.active_cache_ttl_seconds),
            lookback=timedelta(hours=settings.active_lookback_hours),
            lookahead=timedelta(minutes=settings.active_lookahead_minutes),
        ),
        SyncTier.TODAY: TierConfig(
            tier=SyncTier.TODAY,
            event_types=("upcoming", "live"),
            channel_scope=ChannelScope.ALL,
            min_interval=timedelta(seconds=settings.today_min_interval_seconds),
            cache_ttl=timedelta(seconds=settings.today_cache_ttl_seconds),
            lookback=timedelta(0),
            lookahead=timedelta(days=1, hours=settings.today_overrun_hours),
            anchor_to_day_start=True,
        ),
        SyncTier.FULL: TierConfig(
            tier=SyncTier.FULL,
            event_types=("upcoming", "live", "completed"),
            channel_scope=ChannelScope.ALL,
            min_interval=timedelta(seconds=settings.full_min_interval_seconds),
            cache_ttl=timedelta(seconds=settings.full_cache_ttl_seconds),
            lookback=timedelta(hours=settings.full_lookback_hours),
            lookahead=timedelta(hours=settings.full_lookahead_hours),
        ),
    }
