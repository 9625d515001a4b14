"""Celery Beat periodic task schedule for Stream Sync.

All times are UTC (configured in ``celery_app.py``).  Tier cadences match
the tiers' minimum intervals, so a beat tick is normally never debounced;
manual HTTP triggers in between are.

Schedule overview:

+----------------------+---------------------+------------------------------+
| Task name            | Schedule            | Purpose                      |
+======================+=====================+==============================+
| sync_active_tier     | Every 5 minutes     | Catch upcoming→live and      |
|                      |                     | live→ended transitions.      |
+----------------------+---------------------+------------------------------+
| sync_today_tier      | Every 30 minutes    | Today's schedule, whole      |
|                      |                     | roster.                      |
+----------------------+---------------------+------------------------------+
| sync_full_tier       | Hourly (:10)        | Discovery and backfill over  |
|                      |                     | the wide window.             |
+----------------------+---------------------+------------------------------+
| refresh_avatars      | 04:00 daily         | Fill missing channel avatars.|
+----------------------+---------------------+------------------------------+
| reset_daily_quota    | 00:01 daily         | Zero per-key quota counters. |
+----------------------+---------------------+------------------------------+
| sweep_response_cache | Hourly (:30)        | Delete expired cache rows.   |
+----------------------+---------------------+------------------------------+
"""

from __future__ import annotations

from celery.schedules import crontab

_TASK_PREFIX = "stream_sync.workers.tasks"

#: Celery Beat schedule dict.  Applied to ``celery_app.conf.beat_schedule``
#: in ``celery_app.py``.
beat_schedule: dict[str, dict] = {  # type: ignore[type-arg]
    "sync_active_tier": {
        "task": f"{_TASK_PREFIX}.sync_tier",
        "schedule": crontab(minute="*/5"),
        "kwargs": {"tier": "active"},
        "options": {"expires": 240},
    },
    "sync_today_tier": {
        "task": f"{_TASK_PREFIX}.sync_tier",
        "schedule": crontab(minute="*/30"),
        "kwargs": {"tier": "today"},
        "options": {"expires": 1_500},
    },
    "sync_full_tier": {
        "task": f"{_TASK_PREFIX}.sync_tier",
        "schedule": crontab(minute=10),
        "kwargs": {"tier": "full"},
        "options": {"expires": 3_000},
    },
    "refresh_avatars": {
        "task": f"{_TASK_PREFIX}.refresh_avatars",
        "schedule": crontab(hour=4, minute=0),
        "options": {"expires": 3_600},
    },
    "reset_daily_quota": {
        "task": f"{_TASK_PREFIX}.reset_daily_quota",
        "schedule": crontab(hour=0, minute=1),
        "options": {"expires": 3_600},
    },
    "sweep_response_cache": {
        "task": f"{_TASK_PREFIX}.sweep_response_cache",
        "schedule": crontab(minute=30),
        "options": {"expires": 3_000},
    },
}
