"""Sync trigger routes.

``POST /api/sync/{tier}``
    Trigger one tier (``active``, ``today`` or ``full``).  The body is
    optional: ``{"force_refresh": bool, "skip_cache": bool}``.  Answers 200
    with ``status="ran"`` and the run's counters, or ``status="skipped"``
    when the tier is running or ran too recently.  An unknown tier is a 422.

``POST /api/sync/avatars``
    Trigger the avatar refresher.

``GET /api/sync/state``
    In-process guard state of every job.

``GET /api/sync/history``
    Most recent executed runs.
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends, Query

from stream_sync.api.dependencies import SchedulerDep, get_run_history
from stream_sync.config.tiers import SyncTier
from stream_sync.core.schemas.sync import (
    AvatarRefreshRequest,
    JobStateRead,
    SyncRunRead,
    SyncTriggerRequest,
    TriggerResponse,
)
from stream_sync.sync.executor import SyncOptions
from stream_sync.sync.history import RunHistory
from stream_sync.sync.scheduler import Ran, TriggerOutcome

router = APIRouter()


def _to_response(outcome: TriggerOutcome) -> TriggerResponse:
    if isinstance(outcome, Ran):
        return TriggerResponse(status="ran", result=outcome.result.to_dict())
    return TriggerResponse(status="skipped", reason=outcome.reason)


# Declared before /{tier} so "avatars" is not parsed as a tier.
@router.post("/avatars", response_model=TriggerResponse)
async def trigger_avatar_refresh(
    scheduler: SchedulerDep,
    body: Annotated[Optional[AvatarRefreshRequest], Body()] = None,
) -> TriggerResponse:
    """Refresh channel avatars (missing ones, or all with ``force_all``)."""
    body = body or AvatarRefreshRequest()
    outcome = await scheduler.trigger_avatar_refresh(limit=body.limit, force_all=body.force_all)
    return _to_response(outcome)


@router.get("/state", response_model=list[JobStateRead])
async def sync_state(scheduler: SchedulerDep) -> list[JobStateRead]:
    """Return ``last_run_at`` and ``in_progress`` for every job seen by this process."""
    return [
        JobStateRead(job=name, **state)
        for name, state in sorted(scheduler.state.snapshot().items())
    ]


@router.get("/history", response_model=list[SyncRunRead])
async def sync_history(
    history: Annotated[RunHistory, Depends(get_run_history)],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    job: Optional[str] = None,
) -> list[SyncRunRead]:
    """Return the most recent executed runs, newest first."""
    runs = await history.recent(limit=limit, job_name=job)
    return [SyncRunRead.model_validate(run) for run in runs]


@router.post("/{tier}", response_model=TriggerResponse)
async def trigger_tier(
    tier: SyncTier,
    scheduler: SchedulerDep,
    body: Annotated[Optional[SyncTriggerRequest], Body()] = None,
) -> TriggerResponse:
    """Trigger one sync tier."""
    body = body or SyncTriggerRequest()
    outcome = await scheduler.trigger(
        tier,
        SyncOptions(force_refresh=body.force_refresh, skip_cache=body.skip_cache),
    )
    return _to_response(outcome)
