"""Low-level HTTP client functions for the YouTube Data API v3.

Separates network I/O from the sync business logic.  Functions in this
module are pure I/O helpers that return the raw JSON body:

- :func:`search_broadcasts` — one ``search.list`` call for one channel.
- :func:`fetch_video_details` — one ``videos.list`` batch call.
- :func:`fetch_channels` — one ``channels.list`` batch call.
- :func:`extract_error_reason` — extract ``reason`` from an error body.

Every failure is classified into the :mod:`stream_sync.core.exceptions`
taxonomy by :func:`make_api_request`; callers decide what to retry and what
to report to the credential pool.  Callers provide the
:class:`httpx.AsyncClient` (with its timeout) and the API key.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from stream_sync.config.tiers import SyncWindow
from stream_sync.core.exceptions import (
    AuthError,
    QuotaExceededError,
    TransientUpstreamError,
    UpstreamError,
)
from stream_sync.youtube.config import (
    AUTH_ERROR_REASONS,
    CHANNELS_ENDPOINT,
    EVENT_TYPES,
    MAX_IDS_PER_BATCH,
    MAX_RESULTS_PER_SEARCH_PAGE,
    QUOTA_ERROR_REASONS,
    SEARCH_ENDPOINT,
    TRANSIENT_ERROR_REASONS,
    VIDEOS_ENDPOINT,
    WINDOWED_EVENT_TYPES,
    YOUTUBE_API_BASE_URL,
)

logger = logging.getLogger(__name__)


def extract_error_reason(response: httpx.Response) -> str:
    """Extract the ``reason`` field from a YouTube API error response body.

    Args:
        response: The :class:`httpx.Response` containing the error body.

    Returns:
        The ``reason`` string (e.g. ``"quotaExceeded"``), or ``"unknown"``
        if the body cannot be parsed.
    """
    try:
        body = response.json()
    except ValueError:
        return "unknown"
    if not isinstance(body, dict):
        return "unknown"
    error = body.get("error")
    if not isinstance(error, dict):
        return "unknown"
    errors = error.get("errors") or []
    if errors and isinstance(errors[0], dict):
        return str(errors[0].get("reason", "unknown"))
    return "unknown"


def _classify_http_error(endpoint: str, response: httpx.Response) -> UpstreamError:
    """Map a non-2xx response to the matching exception type."""
    status_code = response.status_code
    reason = extract_error_reason(response)
    message = f"youtube: HTTP {status_code} (reason={reason}) on '{endpoint}'"

    if status_code == 403 and reason in QUOTA_ERROR_REASONS:
        return QuotaExceededError(message, endpoint=endpoint, status_code=status_code, reason=reason)
    if reason in TRANSIENT_ERROR_REASONS or status_code == 429 or status_code >= 500:
        return TransientUpstreamError(
            message, endpoint=endpoint, status_code=status_code, reason=reason
        )
    if status_code in (401, 403) or reason in AUTH_ERROR_REASONS:
        return AuthError(message, endpoint=endpoint, status_code=status_code, reason=reason)
    return UpstreamError(message, endpoint=endpoint, status_code=status_code, reason=reason)


async def make_api_request(
    client: httpx.AsyncClient,
    endpoint: str,
    params: dict[str, Any],
) -> dict[str, Any]:
    """Make a YouTube Data API v3 GET request with error classification.

    Args:
        client: Shared :class:`httpx.AsyncClient`.
        endpoint: Endpoint name, e.g. ``"search.list"``.  The path is the
            part before the dot.
        params: Query parameter dict.  Must include ``key``.

    Returns:
        Parsed JSON response dict.

    Raises:
        QuotaExceededError: HTTP 403 with a daily-quota reason.
        AuthError: HTTP 401, other HTTP 403, or a key-related reason.
        TransientUpstreamError: Timeout, connection error, 429, 5xx, or a
            body that is not a JSON object.
        UpstreamError: Any other non-2xx response.
    """
    url = f"{YOUTUBE_API_BASE_URL}/{endpoint.split('.', 1)[0]}"
    try:
        response = await client.get(url, params=params)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise _classify_http_error(endpoint, exc.response) from exc
    except httpx.TimeoutException as exc:
        raise TransientUpstreamError(
            f"youtube: timeout on '{endpoint}'", endpoint=endpoint
        ) from exc
    except httpx.RequestError as exc:
        raise TransientUpstreamError(
            f"youtube: connection error on '{endpoint}': {exc.__class__.__name__}",
            endpoint=endpoint,
        ) from exc

    try:
        body = response.json()
    except ValueError as exc:
        raise TransientUpstreamError(
            f"youtube: non-JSON body on '{endpoint}'",
            endpoint=endpoint,
            status_code=response.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise TransientUpstreamError(
            f"youtube: unexpected body type {type(body).__name__} on '{endpoint}'",
            endpoint=endpoint,
            status_code=response.status_code,
        )
    return body


def _to_rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


async def search_broadcasts(
    client: httpx.AsyncClient,
    api_key: str,
    channel_id: str,
    event_type: str,
    window: SyncWindow | None = None,
    max_results: int = MAX_RESULTS_PER_SEARCH_PAGE,
) -> dict[str, Any]:
    """Fetch one ``search.list`` page of a channel's broadcasts.

    Args:
        client: Shared HTTP client.
        api_key: YouTube Data API v3 key.
        channel_id: ``UC...`` channel id.
        event_type: One of ``live``, ``upcoming``, ``completed`` or ``none``
            (no event filter).
        window: Sync window.  Sent as ``publishedAfter``/``publishedBefore``
            only for ``completed`` and ``none`` searches.
        max_results: ``maxResults`` (capped at 50).

    Returns:
        Raw ``search.list`` response body.

    Raises:
        ValueError: If *event_type* is not recognised.
        UpstreamError: Any classified upstream failure.
    """
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type {event_type!r}")
    params: dict[str, Any] = {
        "part": "snippet",
        "channelId": channel_id,
        "type": "video",
        "order": "date",
        "maxResults": min(max_results, MAX_RESULTS_PER_SEARCH_PAGE),
        "key": api_key,
    }
    if event_type != "none":
        params["eventType"] = event_type
    if window is not None and event_type in WINDOWED_EVENT_TYPES:
        params["publishedAfter"] = _to_rfc3339(window.start)
        params["publishedBefore"] = _to_rfc3339(window.end)

    return await make_api_request(client, SEARCH_ENDPOINT, params)


async def fetch_video_details(
    client: httpx.AsyncClient,
    api_key: str,
    video_ids: Sequence[str],
) -> dict[str, Any]:
    """Fetch ``snippet``, ``liveStreamingDetails`` and ``statistics`` for up to 50 videos.

    Raises:
        ValueError: If more than 50 ids are passed.
        UpstreamError: Any classified upstream failure.
    """
    if len(video_ids) > MAX_IDS_PER_BATCH:
        raise ValueError(f"at most {MAX_IDS_PER_BATCH} ids per videos.list call")
    params = {
        "part": "snippet,liveStreamingDetails,statistics",
        "id": ",".join(video_ids),
        "key": api_key,
    }
    return await make_api_request(client, VIDEOS_ENDPOINT, params)


async def fetch_channels(
    client: httpx.AsyncClient,
    api_key: str,
    channel_ids: Sequence[str],
) -> dict[str, Any]:
    """Fetch the ``snippet`` of up to 50 channels.

    Raises:
        ValueError: If more than 50 ids are passed.
        UpstreamError: Any classified upstream failure.
    """
    if len(channel_ids) > MAX_IDS_PER_BATCH:
        raise ValueError(f"at most {MAX_IDS_PER_BATCH} ids per channels.list call")
    params = {
        "part": "snippet",
        "id": ",".join(channel_ids),
        "maxResults": MAX_IDS_PER_BATCH,
        "key": api_key,
    }
    return await make_api_request(client, CHANNELS_ENDPOINT, params)


def build_http_client(timeout: float) -> httpx.AsyncClient:
    """Return an :class:`httpx.AsyncClient` with the given request timeout."""
    return httpx.AsyncClient(timeout=timeout)
