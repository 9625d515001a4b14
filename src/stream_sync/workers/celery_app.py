"""Celery application for Stream Sync.

Configures the broker, result backend, serialization and timezone.  All
configuration values are sourced from ``Settings`` so that no secrets or
environment-specific values are hard-coded here.

Usage (starting a worker)::

    celery -A stream_sync.workers.celery_app worker --loglevel=info

Usage (starting the Beat scheduler)::

    celery -A stream_sync.workers.celery_app beat --loglevel=info

Usage (within application code)::

    from stream_sync.workers.celery_app import celery_app

    celery_app.send_task("stream_sync.workers.tasks.sync_tier", kwargs={"tier": "full"})
"""

from __future__ import annotations

import asyncio
import logging

from celery import Celery
from celery.signals import task_postrun, worker_process_init
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

# Load .env into os.environ so the key bootstrap sees YOUTUBE_API_KEY*.
load_dotenv()

from stream_sync.config.settings import get_settings  # noqa: E402

settings = get_settings()

#: The global Celery application instance.
celery_app = Celery(
    "stream_sync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["stream_sync.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # JSON only: task arguments and results stay inspectable.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    # Quota resets at UTC midnight, so the schedule is in UTC as well.
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    # A tier run has no mid-flight cancellation; the hard limit is the backstop.
    task_soft_time_limit=1_800,
    task_time_limit=3_600,
    beat_schedule_filename="celerybeat-schedule",
)

from stream_sync.workers.beat_schedule import beat_schedule  # noqa: E402

celery_app.conf.beat_schedule = beat_schedule


# ---------------------------------------------------------------------------
# Engine disposal: asyncpg connections are bound to the loop that opened them
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _configure_worker_process(**kwargs: object) -> None:  # noqa: ARG001
    """Configure logging in each forked worker process."""
    from stream_sync.core.logging_config import configure_logging  # noqa: PLC0415

    configure_logging(settings.log_level)


@task_postrun.connect
def _dispose_async_engine_after_task(**kwargs: object) -> None:  # noqa: ARG001
    """Drop the async engine after each task.

    Every task calls ``asyncio.run()``, which creates and then closes an
    event loop.  Pooled connections from that loop cannot be reused by the
    next task, so the engine is disposed and rebuilt lazily on next use.
    """
    from stream_sync.core import database as _db  # noqa: PLC0415

    try:
        asyncio.run(_db.dispose_engine())
    except RuntimeError:
        _logger.warning("Could not dispose the async engine after task.", exc_info=True)
