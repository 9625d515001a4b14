"""Celery tasks driven by the Beat schedule in ``workers/beat_schedule.py``.

- ``sync_tier``: trigger one tier through the :class:`TierScheduler`.
- ``refresh_avatars``: trigger the avatar refresher.
- ``reset_daily_quota``: zero every key's daily counters.
- ``sweep_response_cache``: delete expired cache rows.

All tasks are synchronous Celery tasks that bridge to the async core via
``asyncio.run()``.  Each builds its collaborators inside that call so that
database and Redis connections belong to the task's own event loop.

Error handling policy: each task catches all exceptions at the outermost
level, logs them at ERROR level and does NOT re-raise.  There is no retry
queue; the next beat tick is the retry.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from stream_sync.config.tiers import SyncTier
from stream_sync.sync.executor import SyncOptions
from stream_sync.sync.scheduler import Ran, TriggerOutcome
from stream_sync.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


def _outcome_to_dict(outcome: TriggerOutcome) -> dict[str, Any]:
    if isinstance(outcome, Ran):
        return {"status": "ran", "result": outcome.result.to_dict()}
    return {"status": "skipped", "reason": outcome.reason}


async def _sync_tier(tier: SyncTier, options: SyncOptions) -> TriggerOutcome:
    from stream_sync.sync.service import build_tier_scheduler  # noqa: PLC0415

    scheduler = build_tier_scheduler()
    try:
        return await scheduler.trigger(tier, options)
    finally:
        await scheduler.aclose()


async def _refresh_avatars(limit: int | None, force_all: bool) -> TriggerOutcome:
    from stream_sync.sync.service import build_tier_scheduler  # noqa: PLC0415

    scheduler = build_tier_scheduler()
    try:
        return await scheduler.trigger_avatar_refresh(limit=limit, force_all=force_all)
    finally:
        await scheduler.aclose()


async def _reset_quota(force: bool) -> int:
    from stream_sync.core.credential_pool import CredentialPool  # noqa: PLC0415

    return await CredentialPool().reset_daily_quota(force=force)


async def _sweep_cache() -> int:
    from stream_sync.core.response_cache import ResponseCache  # noqa: PLC0415

    return await ResponseCache().sweep()


@celery_app.task(name="stream_sync.workers.tasks.sync_tier")
def sync_tier(
    tier: str,
    force_refresh: bool = False,
    skip_cache: bool = False,
) -> dict[str, Any]:
    """Run one sync tier.

    Args:
        tier: ``"active"``, ``"today"`` or ``"full"``.
        force_refresh: Bypass the response cache.
        skip_cache: Bypass the response cache.

    Returns:
        ``{"status": "ran", "result": {...}}`` or
        ``{"status": "skipped", "reason": ...}``.
    """
    log = logger.bind(task="sync_tier", tier=tier)
    try:
        sync_tier_value = SyncTier(tier)
    except ValueError:
        log.error("sync_tier: unknown tier")
        return {"status": "error", "error": f"unknown tier {tier!r}"}

    options = SyncOptions(force_refresh=force_refresh, skip_cache=skip_cache)
    try:
        outcome = asyncio.run(_sync_tier(sync_tier_value, options))
    except Exception as exc:
        log.error("sync_tier: failed", error=str(exc), exc_info=True)
        return {"status": "error", "error": str(exc)}

    summary = _outcome_to_dict(outcome)
    log.info("sync_tier: complete", status=summary["status"])
    return summary


@celery_app.task(name="stream_sync.workers.tasks.refresh_avatars")
def refresh_avatars(limit: int | None = None, force_all: bool = False) -> dict[str, Any]:
    """Refresh missing channel avatars (all avatars with ``force_all``)."""
    log = logger.bind(task="refresh_avatars")
    try:
        outcome = asyncio.run(_refresh_avatars(limit, force_all))
    except Exception as exc:
        log.error("refresh_avatars: failed", error=str(exc), exc_info=True)
        return {"status": "error", "error": str(exc)}
    summary = _outcome_to_dict(outcome)
    log.info("refresh_avatars: complete", status=summary["status"])
    return summary


@celery_app.task(name="stream_sync.workers.tasks.reset_daily_quota")
def reset_daily_quota(force: bool = False) -> dict[str, Any]:
    """Zero daily quota counters on keys not yet reset today (every key with ``force``)."""
    log = logger.bind(task="reset_daily_quota")
    try:
        reset = asyncio.run(_reset_quota(force))
    except Exception as exc:
        log.error("reset_daily_quota: failed", error=str(exc), exc_info=True)
        return {"error": str(exc), "keys_reset": 0}
    log.info("reset_daily_quota: complete", keys_reset=reset)
    return {"keys_reset": reset}


@celery_app.task(name="stream_sync.workers.tasks.sweep_response_cache")
def sweep_response_cache() -> dict[str, Any]:
    """Delete expired response cache rows."""
    log = logger.bind(task="sweep_response_cache")
    try:
        deleted = asyncio.run(_sweep_cache())
    except Exception as exc:
        log.error("sweep_response_cache: failed", error=str(exc), exc_info=True)
        return {"error": str(exc), "deleted": 0}
    log.info("sweep_response_cache: complete", deleted=deleted)
    return {"deleted": deleted}
