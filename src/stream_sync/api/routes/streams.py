"""Read-only stream query route.

``GET /api/streams``
    Broadcasts filtered by ``status`` (repeatable), a ``[start, end)``
    window on the effective start time and ``channel_id``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stream_sync.api.dependencies import get_stream_repository
from stream_sync.core.models.streams import StreamStatus
from stream_sync.core.schemas.streams import LiveStreamRead
from stream_sync.sync.repository import StreamRepository

router = APIRouter()


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Interpret naive query timestamps as UTC."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=UTC)


@router.get("", response_model=list[LiveStreamRead])
async def list_streams(
    streams: Annotated[StreamRepository, Depends(get_stream_repository)],
    status_filter: Annotated[Optional[list[StreamStatus]], Query(alias="status")] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    channel_id: Optional[str] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 200,
) -> list[LiveStreamRead]:
    """Return broadcasts ordered by effective start time.

    Raises:
        HTTPException 422: If ``start`` is not before ``end``.
    """
    start, end = _as_utc(start), _as_utc(end)
    if start is not None and end is not None and start >= end:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start must be before end",
        )
    rows = await streams.list_streams(
        statuses=status_filter,
        start=start,
        end=end,
        channel_id=channel_id,
        limit=limit,
    )
    return [LiveStreamRead.model_validate(row) for row in rows]
