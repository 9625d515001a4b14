"""Pydantic schemas for the sync trigger surface.

A trigger always answers HTTP 200: a debounced or in-flight tier is a normal
outcome (``status="skipped"``), not an error.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class SyncTriggerRequest(BaseModel):
    """Optional body of ``POST /api/sync/{tier}``."""

    force_refresh: bool = False
    skip_cache: bool = False


class AvatarRefreshRequest(BaseModel):
    """Optional body of ``POST /api/sync/avatars``."""

    limit: Optional[int] = Field(default=None, ge=1, le=500)
    force_all: bool = False


class TriggerResponse(BaseModel):
    """Outcome of a trigger.

    Attributes:
        status: ``"ran"`` or ``"skipped"``.
        reason: Why the trigger was skipped (``in_progress``, ``debounced``
            or ``lease_held``).
        result: The run's result counters when it ran.
    """

    status: Literal["ran", "skipped"]
    reason: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class JobStateRead(BaseModel):
    job: str
    last_run_at: Optional[datetime] = None
    in_progress: bool = False


class SyncRunRead(BaseModel):
    """One row of ``sync_run_history``."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_name: str
    started_at: datetime
    finished_at: datetime
    success: bool
    result: dict[str, Any]
    error_message: Optional[str] = None
