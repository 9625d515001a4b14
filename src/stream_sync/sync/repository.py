"""Stream and channel persistence.

:class:`StreamRepository` owns every write to ``live_streams``.  Writes are
compare-and-set on the prior status: the UPDATE only matches if the row
still has the status the new state was computed from.  When another tier
changed the row in between, the write re-reads and re-evaluates the
lifecycle against the fresh row.  Since :func:`lifecycle.reconcile` is
monotonic, concurrent writers can race on scalar fields (last write wins)
but can never regress a status.

:class:`ChannelRepository` reads the roster and writes the avatar columns.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.core.models.base import utcnow
from stream_sync.core.models.streams import Channel, LiveStream, StreamStatus
from stream_sync.sync.lifecycle import StreamState, is_regression, reconcile
from stream_sync.youtube.broadcasts import BroadcastObservation, ParsedPayload

logger = logging.getLogger(__name__)

_MAX_WRITE_ATTEMPTS: int = 3


@dataclass
class ApplyResult:
    """Outcome of applying one channel's observations."""

    upserted: int = 0
    rejected: int = 0
    transitions: Counter[str] = field(default_factory=Counter)
    """Counts keyed ``"<from>-><to>"``; first sightings use ``"new-><to>"``."""


def _state_of(row: LiveStream) -> StreamState:
    return StreamState(
        status=StreamStatus(row.status),
        scheduled_start=row.scheduled_start_time_utc,
        actual_start=row.actual_start_time_utc,
        actual_end=row.actual_end_time_utc,
    )


class _WriteResult:
    __slots__ = ("written", "rejected", "transition")

    def __init__(self, written: bool, rejected: bool = False, transition: str | None = None) -> None:
        self.written = written
        self.rejected = rejected
        self.transition = transition


class StreamRepository:
    """Durable store of broadcast records keyed by video id.

    Args:
        session_factory: Async session factory.  Defaults to the process-wide
            factory from :mod:`stream_sync.core.database`.
        grace: Missed-broadcast grace window.  Defaults to
            ``Settings.missed_grace_hours``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        grace: timedelta | None = None,
    ) -> None:
        if grace is None:
            from stream_sync.config.settings import get_settings  # noqa: PLC0415

            grace = timedelta(hours=get_settings().missed_grace_hours)
        self._session_factory = session_factory
        self.grace = grace

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from stream_sync.core.database import get_session_factory  # noqa: PLC0415

            self._session_factory = get_session_factory()
        return self._session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def apply(
        self,
        channel_id: str,
        parsed: ParsedPayload,
        now: datetime | None = None,
    ) -> ApplyResult:
        """Apply one channel's observations and lifecycle sweeps.

        1. Upsert every observed video.
        2. End tracked live broadcasts missing from the live query (only if
           one was performed).
        3. Mark tracked upcoming broadcasts past the grace window as missed.

        Args:
            channel_id: Owning channel of every observation.
            parsed: Observations read from the channel payload.
            now: Time of the sync pass.

        Returns:
            Counts of upserts, rejected writes and status transitions.
        """
        now = now or utcnow()
        result = ApplyResult()
        observed: set[str] = set()

        for observation in parsed.observations:
            observed.add(observation.video_id)
            absent = parsed.live_query_performed and observation.video_id not in parsed.live_video_ids
            outcome = await self._write(channel_id, observation.video_id, observation, now, absent)
            self._tally(result, outcome)

        # Unobserved live records: may have ended.  Unobserved upcoming: may be missed.
        tracked = await self._tracked_video_ids(channel_id, exclude=observed)
        for video_id, status in tracked:
            if status is StreamStatus.LIVE and not parsed.live_query_performed:
                continue
            outcome = await self._write(
                channel_id,
                video_id,
                None,
                now,
                absent_from_live_query=parsed.live_query_performed,
            )
            self._tally(result, outcome)

        return result

    @staticmethod
    def _tally(result: ApplyResult, outcome: _WriteResult) -> None:
        if outcome.rejected:
            result.rejected += 1
        elif outcome.written:
            result.upserted += 1
        if outcome.transition:
            result.transitions[outcome.transition] += 1

    async def _tracked_video_ids(
        self,
        channel_id: str,
        exclude: set[str],
    ) -> list[tuple[str, StreamStatus]]:
        stmt = select(LiveStream.video_id, LiveStream.status).where(
            LiveStream.youtube_channel_id == channel_id,
            LiveStream.status.in_([StreamStatus.UPCOMING.value, StreamStatus.LIVE.value]),
        )
        async with self._sessions()() as session:
            rows = (await session.execute(stmt)).all()
        return [(video_id, StreamStatus(status)) for video_id, status in rows if video_id not in exclude]

    async def _write(
        self,
        channel_id: str,
        video_id: str,
        observation: BroadcastObservation | None,
        now: datetime,
        absent_from_live_query: bool = False,
    ) -> _WriteResult:
        for _ in range(_MAX_WRITE_ATTEMPTS):
            async with self._sessions()() as session:
                row = await session.get(LiveStream, video_id)

                if row is None:
                    if observation is None:
                        return _WriteResult(written=False)
                    state = reconcile(None, observation, now, self.grace)
                    session.add(
                        LiveStream(
                            video_id=video_id,
                            youtube_channel_id=channel_id,
                            title=observation.title,
                            description=observation.description,
                            thumbnail_url=observation.thumbnail_url,
                            stream_url=observation.stream_url,
                            status=state.status.value,
                            scheduled_start_time_utc=state.scheduled_start,
                            actual_start_time_utc=state.actual_start,
                            actual_end_time_utc=state.actual_end,
                            view_count=observation.view_count,
                            fetched_at=now,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        # Another tier inserted the same video first; retry as an update.
                        await session.rollback()
                        continue
                    return _WriteResult(written=True, transition=f"new->{state.status.value}")

                prior = _state_of(row)
                state = reconcile(prior, observation, now, self.grace, absent_from_live_query)
                if is_regression(prior.status, state.status):
                    logger.error(
                        "Rejected status regression for %s: %s -> %s.",
                        video_id,
                        prior.status.value,
                        state.status.value,
                    )
                    return _WriteResult(written=False, rejected=True)
                if observation is None and state == prior:
                    return _WriteResult(written=False)

                values: dict[str, Any] = {
                    "status": state.status.value,
                    "scheduled_start_time_utc": state.scheduled_start,
                    "actual_start_time_utc": state.actual_start,
                    "actual_end_time_utc": state.actual_end,
                    "updated_at": now,
                }
                if observation is not None:
                    values.update(
                        title=observation.title or row.title,
                        description=observation.description
                        if observation.description is not None
                        else row.description,
                        thumbnail_url=observation.thumbnail_url or row.thumbnail_url,
                        view_count=observation.view_count
                        if observation.view_count is not None
                        else row.view_count,
                        fetched_at=now,
                    )

                swapped = await session.execute(
                    update(LiveStream)
                    .where(
                        LiveStream.video_id == video_id,
                        LiveStream.status == prior.status.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if swapped.rowcount == 0:
                    await session.rollback()
                    logger.debug("Status of %s changed concurrently; re-evaluating.", video_id)
                    continue
                await session.commit()

            transition = None
            if state.status is not prior.status:
                transition = f"{prior.status.value}->{state.status.value}"
                logger.info("Stream %s transitioned %s.", video_id, transition)
            return _WriteResult(written=True, transition=transition)

        logger.warning("Gave up writing %s after repeated concurrent status changes.", video_id)
        return _WriteResult(written=False, rejected=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, video_id: str) -> LiveStream | None:
        async with self._sessions()() as session:
            return await session.get(LiveStream, video_id)

    async def list_streams(
        self,
        statuses: Sequence[StreamStatus] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        channel_id: str | None = None,
        limit: int = 200,
    ) -> list[LiveStream]:
        """Query broadcasts by status and time window.

        A broadcast falls in the window when its effective start time
        (actual start, else scheduled start) lies in ``[start, end)``.
        Results are ordered by that time.
        """
        effective_start = sa.func.coalesce(
            LiveStream.actual_start_time_utc, LiveStream.scheduled_start_time_utc
        )
        stmt = select(LiveStream).order_by(effective_start.asc(), LiveStream.video_id).limit(limit)
        if statuses:
            stmt = stmt.where(LiveStream.status.in_([s.value for s in statuses]))
        if start is not None:
            stmt = stmt.where(effective_start >= start)
        if end is not None:
            stmt = stmt.where(effective_start < end)
        if channel_id is not None:
            stmt = stmt.where(LiveStream.youtube_channel_id == channel_id)
        async with self._sessions()() as session:
            return list((await session.execute(stmt)).scalars())

    async def active_channel_ids(
        self,
        now: datetime,
        lookback: timedelta,
        lookahead: timedelta,
    ) -> list[str]:
        """Channels the active tier should poll.

        A channel qualifies when it has a live broadcast, an upcoming one
        scheduled before ``now + lookahead``, or a broadcast that started
        after ``now - lookback`` and has not ended.
        """
        stmt = (
            select(LiveStream.youtube_channel_id)
            .where(
                sa.or_(
                    LiveStream.status == StreamStatus.LIVE.value,
                    sa.and_(
                        LiveStream.status == StreamStatus.UPCOMING.value,
                        LiveStream.scheduled_start_time_utc <= now + lookahead,
                    ),
                    sa.and_(
                        LiveStream.actual_start_time_utc >= now - lookback,
                        LiveStream.actual_end_time_utc.is_(None),
                        LiveStream.status.not_in(
                            [StreamStatus.ENDED.value, StreamStatus.MISSED.value]
                        ),
                    ),
                )
            )
            .distinct()
            .order_by(LiveStream.youtube_channel_id)
        )
        async with self._sessions()() as session:
            return list((await session.execute(stmt)).scalars())


class ChannelRepository:
    """Roster reads and avatar writes for ``youtube_channels``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from stream_sync.core.database import get_session_factory  # noqa: PLC0415

            self._session_factory = get_session_factory()
        return self._session_factory

    async def add_channel(self, youtube_channel_id: str, channel_name: str | None = None) -> Channel:
        async with self._sessions()() as session:
            channel = Channel(youtube_channel_id=youtube_channel_id, channel_name=channel_name)
            session.add(channel)
            await session.commit()
            return channel

    async def all_channel_ids(self) -> list[str]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(Channel.youtube_channel_id).order_by(Channel.youtube_channel_id)
            )
            return list(result.scalars())

    async def channels_for_avatar_refresh(self, limit: int, force_all: bool = False) -> list[str]:
        """Channel ids whose avatar should be (re)fetched, least recently tried first."""
        stmt = (
            select(Channel.youtube_channel_id)
            .order_by(
                Channel.avatar_last_fetched_at.asc().nullsfirst(),
                Channel.youtube_channel_id,
            )
            .limit(limit)
        )
        if not force_all:
            stmt = stmt.where(sa.or_(Channel.avatar_url.is_(None), Channel.avatar_url == ""))
        async with self._sessions()() as session:
            return list((await session.execute(stmt)).scalars())

    async def record_avatar(
        self,
        youtube_channel_id: str,
        avatar_url: str | None,
        channel_name: str | None,
        now: datetime,
    ) -> None:
        values: dict[str, Any] = {
            "avatar_url": avatar_url,
            "avatar_last_fetched_at": now,
            "avatar_fetch_error": None,
            "updated_at": now,
        }
        if channel_name:
            values["channel_name"] = channel_name
        await self._update(youtube_channel_id, values)

    async def record_avatar_error(self, youtube_channel_id: str, error: str, now: datetime) -> None:
        await self._update(
            youtube_channel_id,
            {"avatar_fetch_error": error[:500], "avatar_last_fetched_at": now, "updated_at": now},
        )

    async def _update(self, youtube_channel_id: str, values: dict[str, Any]) -> None:
        async with self._sessions()() as session:
            await session.execute(
                update(Channel)
                .where(Channel.youtube_channel_id == youtube_channel_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
