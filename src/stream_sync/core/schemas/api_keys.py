"""Pydantic schemas for the API key pool operator surface.

The plaintext key is accepted on creation and by the key check only.  Every
read schema carries a masked form (first and last four characters) and
nothing else.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ApiKeyCreate(BaseModel):
    """Payload for adding a key to the pool.

    Attributes:
        name: Unique operator-facing label, e.g. ``"project-a"``.
        api_key: The YouTube Data API key.  Encrypted before storage.
        description: Optional free-text note.
    """

    name: str = Field(min_length=1, max_length=200)
    api_key: str = Field(min_length=8)
    description: Optional[str] = None


class ApiKeyUpdate(BaseModel):
    """Payload for renaming a key or editing its description.

    Omitted fields are left unchanged.  An empty description clears it.
    """

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None


class ApiKeyCheckRequest(BaseModel):
    """Payload for validating a key upstream.

    Exactly one of *api_key* (a key not yet in the pool) or *id* (a pooled
    key) must be given.
    """

    api_key: Optional[str] = Field(default=None, min_length=8)
    id: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ApiKeyCheckRequest":
        if (self.api_key is None) == (self.id is None):
            raise ValueError("give either api_key or id")
        return self


class ApiKeyCheckRead(BaseModel):
    """Outcome of a key check: ``valid``, ``quota_exceeded``, ``invalid`` or ``unreachable``."""

    status: str
    valid: bool
    message: str


class ApiKeyRead(BaseModel):
    """Operator view of a pooled key."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: Optional[str] = None
    masked_key: str = ""
    status: str
    quota_used_today: int
    total_requests: int
    last_used_at: Optional[datetime] = None
    last_quota_reset_at: datetime
    quota_exceeded_at: Optional[datetime] = None
    consecutive_errors: int
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None


class ApiKeyStats(BaseModel):
    """Usage figures for one key, aggregated from the usage log.

    Attributes:
        api_key_id: The key the figures belong to.
        units_used_24h: Quota units charged in the last 24 hours.
        units_used_1h: Quota units charged in the last hour.
        requests_24h: Usage log entries in the last 24 hours.
        errors_24h: Failed calls in the last 24 hours.
    """

    api_key_id: uuid.UUID
    units_used_24h: int = 0
    units_used_1h: int = 0
    requests_24h: int = 0
    errors_24h: int = 0
