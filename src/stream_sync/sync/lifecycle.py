"""Broadcast lifecycle state machine.

States and order::

    upcoming (0)  →  live (1)  →  ended (2)
        └──────────────────────→  missed (2)

``ended`` and ``missed`` are absorbing.  :func:`reconcile` is a pure
function from (prior record, upstream observation, clock) to the next
record state; it never moves status backwards, so momentary upstream
inconsistencies (search index lag, eventual consistency between
``search.list`` and ``videos.list``) cannot make a broadcast flap.

Rules, evaluated on every sync pass:

- no prior record: start from ``upcoming`` and apply the observation, so a
  first sighting can land directly in ``live`` or ``ended``;
- observed live while upcoming: ``live``, ``actual_start`` from upstream
  or *now*;
- observed completed: ``ended``, ``actual_end`` from upstream, or *now*
  when the record was live;
- live and absent from a live query that was performed (and not reported
  live by ``videos.list`` either): ``ended`` at *now*;
- upcoming with ``scheduled_start`` more than *grace* in the past: ``missed``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from stream_sync.core.models.streams import StreamStatus
from stream_sync.youtube.broadcasts import BroadcastObservation, ObservedEvent

STATUS_ORDER: dict[StreamStatus, int] = {
    StreamStatus.UPCOMING: 0,
    StreamStatus.LIVE: 1,
    StreamStatus.ENDED: 2,
    StreamStatus.MISSED: 2,
}

TERMINAL_STATUSES: frozenset[StreamStatus] = frozenset({StreamStatus.ENDED, StreamStatus.MISSED})


@dataclass(frozen=True)
class StreamState:
    """The lifecycle-relevant fields of a :class:`LiveStream` record."""

    status: StreamStatus
    scheduled_start: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None


def is_regression(prior: StreamStatus, new: StreamStatus) -> bool:
    """Return ``True`` if moving from *prior* to *new* would go backwards.

    Moving between the two terminal states also counts: once ended, a
    broadcast can never become missed, and vice versa.
    """
    if prior in TERMINAL_STATUSES:
        return new != prior
    return STATUS_ORDER[new] < STATUS_ORDER[prior]


def reconcile(
    prior: StreamState | None,
    observation: BroadcastObservation | None,
    now: datetime,
    grace: timedelta,
    absent_from_live_query: bool = False,
) -> StreamState:
    """Compute the next state of a broadcast record.

    Args:
        prior: Current stored state, or ``None`` for a first sighting.
        observation: What upstream reported this pass, or ``None`` when the
            video was not returned.
        now: Time of the sync pass.
        grace: How long past its scheduled start an upcoming broadcast may
            stay upcoming before it is declared missed.
        absent_from_live_query: The pass ran an ``eventType=live`` search for
            the owning channel and this video was not in the results.

    Returns:
        The new :class:`StreamState`.  Never earlier in the lifecycle order
        than *prior*.

    Raises:
        ValueError: If both *prior* and *observation* are ``None``.
    """
    if prior is None:
        if observation is None:
            raise ValueError("cannot reconcile without a prior record or an observation")
        prior = StreamState(status=StreamStatus.UPCOMING)

    scheduled = prior.scheduled_start
    if observation is not None and observation.scheduled_start is not None:
        scheduled = observation.scheduled_start

    if prior.status in TERMINAL_STATUSES:
        # Status is frozen; upstream may still refine the recorded times.
        if observation is None or prior.status is StreamStatus.MISSED:
            return replace(prior, scheduled_start=scheduled)
        return replace(
            prior,
            scheduled_start=scheduled,
            actual_start=prior.actual_start or observation.actual_start,
            actual_end=observation.actual_end or prior.actual_end,
        )

    status = prior.status
    actual_start = prior.actual_start
    actual_end = prior.actual_end

    if observation is not None and observation.event is ObservedEvent.LIVE:
        status = StreamStatus.LIVE
        actual_start = actual_start or observation.actual_start or now
        actual_end = None
    elif observation is not None and observation.event is ObservedEvent.COMPLETED:
        was_live = status is StreamStatus.LIVE
        status = StreamStatus.ENDED
        actual_start = actual_start or observation.actual_start
        actual_end = observation.actual_end or (now if was_live else actual_end)
    elif absent_from_live_query and status is StreamStatus.LIVE:
        status = StreamStatus.ENDED
        actual_end = now

    if (
        status is StreamStatus.UPCOMING
        and scheduled is not None
        and scheduled < now - grace
    ):
        status = StreamStatus.MISSED

    return StreamState(
        status=status,
        scheduled_start=scheduled,
        actual_start=actual_start,
        actual_end=actual_end,
    )
