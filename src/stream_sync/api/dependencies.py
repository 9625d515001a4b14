"""FastAPI dependency injection providers.

Every service a route needs hangs off the process-wide
:class:`TierScheduler`, so overriding :func:`get_scheduler` (tests do this
via ``app.dependency_overrides``) swaps the whole object graph at once::

    get_scheduler
    ├── get_credential_pool   — scheduler.executor.pool
    ├── get_usage_log         — scheduler.executor.usage_log
    ├── get_stream_repository — scheduler.streams
    └── get_run_history       — scheduler.history
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from stream_sync.core.credential_pool import CredentialPool
from stream_sync.core.usage_log import UsageLog
from stream_sync.sync.history import RunHistory
from stream_sync.sync.repository import StreamRepository
from stream_sync.sync.scheduler import TierScheduler


def get_scheduler() -> TierScheduler:
    """Return the API process's :class:`TierScheduler`."""
    from stream_sync.sync.service import get_tier_scheduler  # noqa: PLC0415

    return get_tier_scheduler()


SchedulerDep = Annotated[TierScheduler, Depends(get_scheduler)]


def get_credential_pool(scheduler: SchedulerDep) -> CredentialPool:
    return scheduler.executor.pool


def get_usage_log(scheduler: SchedulerDep) -> UsageLog:
    return scheduler.executor.usage_log


def get_stream_repository(scheduler: SchedulerDep) -> StreamRepository:
    return scheduler.streams


def get_run_history(scheduler: SchedulerDep) -> RunHistory:
    return scheduler.history
