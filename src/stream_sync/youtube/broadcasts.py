"""Turn raw YouTube payloads into broadcast observations.

A sync pass for one channel produces a payload of the shape::

    {
        "search": {"live": {...search.list body...}, "upcoming": {...}},
        "videos": [{...videos.list body...}, ...],
    }

which is also exactly what the response cache stores.  This module reads
such payloads back into :class:`BroadcastObservation` objects, one per
video, combining the search snippet with the richer ``videos.list`` data
when available.

Items that cannot be interpreted raise :class:`MalformedUpstreamResponse`
from the per-item parsers; :func:`observations_from_payload` logs and skips
them so one bad item never costs the rest of the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from stream_sync.core.exceptions import MalformedUpstreamResponse
from stream_sync.youtube.config import YOUTUBE_VIDEO_BASE_URL

logger = logging.getLogger(__name__)


class ObservedEvent(str, Enum):
    """Broadcast phase as reported by upstream at observation time."""

    UPCOMING = "upcoming"
    LIVE = "live"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BroadcastObservation:
    """One video as seen upstream during a sync pass."""

    video_id: str
    event: ObservedEvent
    title: str = ""
    description: str | None = None
    thumbnail_url: str | None = None
    scheduled_start: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    view_count: int | None = None

    @property
    def stream_url(self) -> str:
        return f"{YOUTUBE_VIDEO_BASE_URL}{self.video_id}"


@dataclass
class ParsedPayload:
    """Result of reading one channel payload."""

    observations: list[BroadcastObservation]
    live_video_ids: set[str]
    """Ids returned by the ``eventType=live`` search, if one was made."""
    live_query_performed: bool
    malformed: list[str]
    """Short descriptions of skipped items."""


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _parse_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _parse_datetime(value: Any, field_name: str, raw_item: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp; ``None`` passes through.

    Raises:
        MalformedUpstreamResponse: If a value is present but unparseable.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedUpstreamResponse(f"{field_name} is not a string", raw_item=raw_item)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedUpstreamResponse(
            f"{field_name} is not a timestamp: {value!r}", raw_item=raw_item
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _best_thumbnail(snippet: dict[str, Any]) -> str | None:
    thumbnails = snippet.get("thumbnails") or {}
    for size in ("maxres", "high", "medium", "default"):
        entry = thumbnails.get(size)
        if isinstance(entry, dict) and entry.get("url"):
            return entry["url"]
    return None


def _classify(
    live_broadcast_content: str | None,
    actual_start: datetime | None,
    actual_end: datetime | None,
    scheduled_start: datetime | None,
) -> ObservedEvent:
    if actual_end is not None:
        return ObservedEvent.COMPLETED
    if actual_start is not None:
        return ObservedEvent.LIVE
    if live_broadcast_content == "live":
        return ObservedEvent.LIVE
    if live_broadcast_content == "upcoming" or scheduled_start is not None:
        return ObservedEvent.UPCOMING
    return ObservedEvent.COMPLETED


# ---------------------------------------------------------------------------
# Per-item parsers
# ---------------------------------------------------------------------------


def search_item_video_id(item: Any) -> str:
    """Return the video id of a ``search.list`` item.

    Raises:
        MalformedUpstreamResponse: If the item has no usable ``id.videoId``.
    """
    if not isinstance(item, dict):
        raise MalformedUpstreamResponse("search item is not an object", raw_item=item)
    ident = item.get("id")
    video_id = ident.get("videoId") if isinstance(ident, dict) else None
    if not isinstance(video_id, str) or not video_id:
        raise MalformedUpstreamResponse("search item has no id.videoId", raw_item=item)
    return video_id


def parse_search_item(item: Any) -> BroadcastObservation:
    """Build an observation from a ``search.list`` item alone.

    Used when ``videos.list`` did not return the video (deleted or made
    private between the two calls).

    Raises:
        MalformedUpstreamResponse: If the item cannot be interpreted.
    """
    video_id = search_item_video_id(item)
    snippet = item.get("snippet")
    if not isinstance(snippet, dict):
        raise MalformedUpstreamResponse("search item has no snippet", raw_item=item)
    content = snippet.get("liveBroadcastContent")
    return BroadcastObservation(
        video_id=video_id,
        event=_classify(content, None, None, None),
        title=snippet.get("title") or "",
        description=snippet.get("description"),
        thumbnail_url=_best_thumbnail(snippet),
    )


def parse_video_item(item: Any) -> BroadcastObservation:
    """Build an observation from a ``videos.list`` item.

    Raises:
        MalformedUpstreamResponse: If the item cannot be interpreted.
    """
    if not isinstance(item, dict):
        raise MalformedUpstreamResponse("video item is not an object", raw_item=item)
    video_id = item.get("id")
    if not isinstance(video_id, str) or not video_id:
        raise MalformedUpstreamResponse("video item has no id", raw_item=item)
    snippet = item.get("snippet")
    if not isinstance(snippet, dict):
        raise MalformedUpstreamResponse("video item has no snippet", raw_item=item)
    details = item.get("liveStreamingDetails") or {}
    if not isinstance(details, dict):
        raise MalformedUpstreamResponse("liveStreamingDetails is not an object", raw_item=item)
    statistics = item.get("statistics") or {}

    scheduled_start = _parse_datetime(details.get("scheduledStartTime"), "scheduledStartTime", item)
    actual_start = _parse_datetime(details.get("actualStartTime"), "actualStartTime", item)
    actual_end = _parse_datetime(details.get("actualEndTime"), "actualEndTime", item)

    return BroadcastObservation(
        video_id=video_id,
        event=_classify(snippet.get("liveBroadcastContent"), actual_start, actual_end, scheduled_start),
        title=snippet.get("title") or "",
        description=snippet.get("description"),
        thumbnail_url=_best_thumbnail(snippet),
        scheduled_start=scheduled_start,
        actual_start=actual_start,
        actual_end=actual_end,
        view_count=_parse_int(statistics.get("viewCount") if isinstance(statistics, dict) else None),
    )


# ---------------------------------------------------------------------------
# Payload-level helpers
# ---------------------------------------------------------------------------


def _items(body: Any) -> list[Any]:
    if not isinstance(body, dict):
        return []
    items = body.get("items")
    return items if isinstance(items, list) else []


def search_video_ids(search_bodies: dict[str, Any]) -> list[str]:
    """Return the de-duplicated video ids found across search responses.

    Malformed search items are skipped here; they are reported once by
    :func:`observations_from_payload`.
    """
    seen: dict[str, None] = {}
    for body in search_bodies.values():
        for item in _items(body):
            try:
                seen.setdefault(search_item_video_id(item), None)
            except MalformedUpstreamResponse:
                continue
    return list(seen)


def observations_from_payload(payload: dict[str, Any]) -> ParsedPayload:
    """Read a channel payload into observations.

    Args:
        payload: ``{"search": {event_type: body}, "videos": [body, ...]}``.

    Returns:
        A :class:`ParsedPayload`; malformed items are logged and listed in
        ``malformed`` rather than raised.
    """
    search_bodies: dict[str, Any] = payload.get("search") or {}
    malformed: list[str] = []

    search_items: dict[str, Any] = {}
    live_ids: set[str] = set()
    for event_type, body in search_bodies.items():
        for item in _items(body):
            try:
                video_id = search_item_video_id(item)
            except MalformedUpstreamResponse as exc:
                logger.warning("Skipping malformed search item: %s", exc)
                malformed.append(str(exc))
                continue
            search_items.setdefault(video_id, item)
            if event_type == "live":
                live_ids.add(video_id)

    observations: dict[str, BroadcastObservation] = {}
    for body in payload.get("videos") or []:
        for item in _items(body):
            try:
                observation = parse_video_item(item)
            except MalformedUpstreamResponse as exc:
                logger.warning("Skipping malformed video item: %s", exc)
                malformed.append(str(exc))
                continue
            observations[observation.video_id] = observation

    for video_id, item in search_items.items():
        if video_id in observations:
            continue
        try:
            observations[video_id] = parse_search_item(item)
        except MalformedUpstreamResponse as exc:
            logger.warning("Skipping malformed search item %s: %s", video_id, exc)
            malformed.append(str(exc))

    return ParsedPayload(
        observations=list(observations.values()),
        live_video_ids=live_ids,
        live_query_performed="live" in search_bodies,
        malformed=malformed,
    )
