"""Unit tests for the Celery task wrappers and the beat schedule.

Tasks are called directly (no broker); the scheduler they build is patched
so no database is touched.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from stream_sync.sync.avatars import AvatarRefreshResult
from stream_sync.sync.executor import SyncOptions, SyncResult
from stream_sync.sync.scheduler import Ran, Skipped
from stream_sync.workers import tasks
from stream_sync.workers.beat_schedule import beat_schedule
from stream_sync.workers.celery_app import celery_app


def _patched_scheduler(**methods: AsyncMock) -> MagicMock:
    scheduler = MagicMock()
    scheduler.aclose = AsyncMock()
    for name, mock in methods.items():
        setattr(scheduler, name, mock)
    return scheduler


class TestSyncTierTask:
    def test_runs_tier_and_summarises(self) -> None:
        scheduler = _patched_scheduler(trigger=AsyncMock(return_value=Ran(SyncResult(tier="active", videos_upserted=2))))

        with patch("stream_sync.sync.service.build_tier_scheduler", return_value=scheduler):
            summary = tasks.sync_tier("active", force_refresh=True)

        assert summary["status"] == "ran"
        assert summary["result"]["videos_upserted"] == 2
        tier, options = scheduler.trigger.await_args.args
        assert tier.value == "active"
        assert options == SyncOptions(force_refresh=True, skip_cache=False)
        scheduler.aclose.assert_awaited_once()

    def test_skipped_outcome(self) -> None:
        scheduler = _patched_scheduler(trigger=AsyncMock(return_value=Skipped("debounced")))

        with patch("stream_sync.sync.service.build_tier_scheduler", return_value=scheduler):
            assert tasks.sync_tier("full") == {"status": "skipped", "reason": "debounced"}

    def test_unknown_tier_is_reported_not_raised(self) -> None:
        summary = tasks.sync_tier("hourly")
        assert summary["status"] == "error"

    def test_failures_are_reported_not_raised(self) -> None:
        scheduler = _patched_scheduler(trigger=AsyncMock(side_effect=RuntimeError("boom")))

        with patch("stream_sync.sync.service.build_tier_scheduler", return_value=scheduler):
            assert tasks.sync_tier("today") == {"status": "error", "error": "boom"}

        scheduler.aclose.assert_awaited_once()


class TestRefreshAvatarsTask:
    def test_forwards_arguments(self) -> None:
        scheduler = _patched_scheduler(
            trigger_avatar_refresh=AsyncMock(return_value=Ran(AvatarRefreshResult(refreshed=4)))
        )

        with patch("stream_sync.sync.service.build_tier_scheduler", return_value=scheduler):
            summary = tasks.refresh_avatars(limit=20, force_all=True)

        assert summary["result"]["refreshed"] == 4
        scheduler.trigger_avatar_refresh.assert_awaited_once_with(limit=20, force_all=True)
        scheduler.aclose.assert_awaited_once()


class TestBeatSchedule:
    def test_every_entry_targets_a_registered_task(self) -> None:
        for name, entry in beat_schedule.items():
            assert entry["task"] in celery_app.tasks, name

    def test_each_tier_is_scheduled(self) -> None:
        tiers = {
            entry["kwargs"]["tier"]
            for entry in beat_schedule.values()
            if entry["task"].endswith(".sync_tier")
        }
        assert tiers == {"active", "today", "full"}
