"""YouTube Data API v3 endpoints and quota constants.

The YouTube Data API v3 has a daily quota of 10,000 units per GCP project
(per API key in the pool).  ``search.list`` is by far the most expensive
endpoint at 100 units per call, so every sync pass is budgeted in search
calls; ``videos.list`` and ``channels.list`` are nearly free by comparison.

Quota unit costs (from the YouTube Data API v3 documentation):
- ``search.list``:        100 units per call
- ``videos.list``:          1 unit  per call (batch up to 50 IDs)
- ``channels.list``:        1 unit  per call (batch up to 50 IDs)
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

YOUTUBE_API_BASE_URL: str = "https://www.googleapis.com/youtube/v3"
"""Base URL for all YouTube Data API v3 endpoints."""

YOUTUBE_VIDEO_BASE_URL: str = "https://www.youtube.com/watch?v="
"""Prefix for building a public watch URL from a video ID."""

# ---------------------------------------------------------------------------
# Endpoint names (used for quota accounting, cache signatures and logs)
# ---------------------------------------------------------------------------

SEARCH_ENDPOINT: str = "search.list"
VIDEOS_ENDPOINT: str = "videos.list"
CHANNELS_ENDPOINT: str = "channels.list"

QUOTA_COSTS: dict[str, int] = {
    SEARCH_ENDPOINT: 100,
    VIDEOS_ENDPOINT: 1,
    CHANNELS_ENDPOINT: 1,
}
"""Quota units charged per call, keyed by endpoint name."""

# ---------------------------------------------------------------------------
# Batch limits
# ---------------------------------------------------------------------------

MAX_RESULTS_PER_SEARCH_PAGE: int = 50
"""Upper bound for ``maxResults`` on ``search.list``."""

MAX_IDS_PER_BATCH: int = 50
"""Maximum IDs per ``videos.list`` / ``channels.list`` call."""

# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

QUOTA_ERROR_REASONS: frozenset[str] = frozenset({"quotaExceeded", "dailyLimitExceeded"})
"""403 reasons meaning the key's daily quota is spent."""

TRANSIENT_ERROR_REASONS: frozenset[str] = frozenset({
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "backendError",
})
"""Reasons meaning "try again shortly" regardless of status code."""

AUTH_ERROR_REASONS: frozenset[str] = frozenset({
    "keyInvalid",
    "keyExpired",
    "forbidden",
    "accessNotConfigured",
    "ipRefererBlocked",
})
"""Reasons meaning the key itself is unusable."""

EVENT_TYPES: frozenset[str] = frozenset({"live", "upcoming", "completed", "none"})
"""Accepted ``eventType`` values.  ``"none"`` means "no event filter"."""

WINDOWED_EVENT_TYPES: frozenset[str] = frozenset({"completed", "none"})
"""Event types for which the sync window is sent as ``publishedAfter`` /
``publishedBefore``.  Live and upcoming broadcasts are often created days
before they air, so a publish-date filter would hide them."""
