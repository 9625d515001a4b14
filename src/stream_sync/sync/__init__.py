"""Stream synchronisation: lifecycle, persistence, execution and scheduling.

Public symbols:

- ``reconcile``: pure broadcast lifecycle transition function.
- ``StreamRepository`` / ``ChannelRepository``: persistence of broadcasts
  and the channel roster.
- ``SyncExecutor``, ``SyncOptions``, ``SyncResult``: one tier pass over a
  set of channels.
- ``AvatarRefresher``: low-priority channel avatar refresh.
- ``TierScheduler``, ``SchedulerState``, ``Ran``, ``Skipped``: the
  single-flight and debounce guard in front of every run.
- Factory functions: ``build_tier_scheduler()``, ``get_tier_scheduler()``,
  ``close_tier_scheduler()``.
"""

from __future__ import annotations

from stream_sync.sync.avatars import AvatarRefresher, AvatarRefreshResult
from stream_sync.sync.executor import SyncExecutor, SyncOptions, SyncResult
from stream_sync.sync.lifecycle import StreamState, reconcile
from stream_sync.sync.repository import ApplyResult, ChannelRepository, StreamRepository
from stream_sync.sync.scheduler import Ran, SchedulerState, Skipped, TierScheduler
from stream_sync.sync.service import build_tier_scheduler, close_tier_scheduler, get_tier_scheduler

__all__ = [
    "ApplyResult",
    "AvatarRefreshResult",
    "AvatarRefresher",
    "ChannelRepository",
    "Ran",
    "SchedulerState",
    "Skipped",
    "StreamRepository",
    "StreamState",
    "SyncExecutor",
    "SyncOptions",
    "SyncResult",
    "TierScheduler",
    "build_tier_scheduler",
    "close_tier_scheduler",
    "get_tier_scheduler",
    "reconcile",
]
