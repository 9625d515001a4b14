"""Operator routes for the API key pool.

``GET  /api/keys``                    list keys (masked)
``POST /api/keys``                    add a key
``POST /api/keys/reset-quota``        reset every key's daily counters
``POST /api/keys/test``               check a new or pooled key upstream
``PATCH /api/keys/{id}``              rename a key or edit its description
``POST /api/keys/{id}/activate``      re-enable a key (clears its errors)
``POST /api/keys/{id}/deactivate``    take a key out of rotation
``POST /api/keys/{id}/reset-errors``  clear the consecutive error counter
``GET  /api/keys/{id}/stats``         usage over the last 24 hours

Plaintext keys are accepted on creation and by the key check, and never
returned.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from stream_sync.api.dependencies import get_credential_pool, get_usage_log
from stream_sync.config.settings import get_settings
from stream_sync.core.credential_pool import CredentialPool
from stream_sync.core.exceptions import (
    CredentialEncryptionError,
    DuplicateKeyError,
    KeyNotFoundError,
)
from stream_sync.core.models.api_keys import ApiKeyStatus
from stream_sync.core.schemas.api_keys import (
    ApiKeyCheckRead,
    ApiKeyCheckRequest,
    ApiKeyCreate,
    ApiKeyRead,
    ApiKeyStats,
    ApiKeyUpdate,
)
from stream_sync.core.usage_log import UsageLog
from stream_sync.youtube.key_check import check_api_key

router = APIRouter()

PoolDep = Annotated[CredentialPool, Depends(get_credential_pool)]


def _not_found(exc: KeyNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.get("", response_model=list[ApiKeyRead])
async def list_keys(pool: PoolDep) -> list[ApiKeyRead]:
    return await pool.list_keys()


@router.post("", response_model=ApiKeyRead, status_code=status.HTTP_201_CREATED)
async def create_key(payload: ApiKeyCreate, pool: PoolDep) -> ApiKeyRead:
    """Add a key to the pool.

    Raises:
        HTTPException 409: If a key with the same name exists.
    """
    try:
        return await pool.create_key(payload.name, payload.api_key, payload.description)
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/reset-quota")
async def reset_quota(pool: PoolDep) -> dict[str, int]:
    """Reset every key's daily quota counters, including keys already reset today."""
    return {"keys_reset": await pool.reset_daily_quota(force=True)}


@router.post("/test", response_model=ApiKeyCheckRead)
async def check_key(payload: ApiKeyCheckRequest, pool: PoolDep) -> ApiKeyCheckRead:
    """Check a key against the YouTube API (1 quota unit, not charged to the pool).

    Raises:
        HTTPException 404: If *id* names no pooled key.
        HTTPException 422: If the pooled key cannot be decrypted.
    """
    api_key = payload.api_key
    if payload.id is not None:
        try:
            api_key = await pool.reveal_secret(payload.id)
        except KeyNotFoundError as exc:
            raise _not_found(exc) from exc
        except CredentialEncryptionError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    result = await check_api_key(api_key, timeout=get_settings().youtube_request_timeout_seconds)
    return ApiKeyCheckRead(status=result.status.value, valid=result.valid, message=result.message)


@router.patch("/{key_id}", response_model=ApiKeyRead)
async def update_key(key_id: uuid.UUID, payload: ApiKeyUpdate, pool: PoolDep) -> ApiKeyRead:
    """Rename a key or edit its description.

    Raises:
        HTTPException 404: If the key does not exist.
        HTTPException 409: If the new name is taken.
    """
    try:
        return await pool.update_key(key_id, name=payload.name, description=payload.description)
    except KeyNotFoundError as exc:
        raise _not_found(exc) from exc
    except DuplicateKeyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.post("/{key_id}/activate", response_model=ApiKeyRead)
async def activate_key(key_id: uuid.UUID, pool: PoolDep) -> ApiKeyRead:
    try:
        return await pool.set_status(key_id, ApiKeyStatus.ACTIVE)
    except KeyNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{key_id}/deactivate", response_model=ApiKeyRead)
async def deactivate_key(key_id: uuid.UUID, pool: PoolDep) -> ApiKeyRead:
    try:
        return await pool.set_status(key_id, ApiKeyStatus.INACTIVE)
    except KeyNotFoundError as exc:
        raise _not_found(exc) from exc


@router.post("/{key_id}/reset-errors", response_model=ApiKeyRead)
async def reset_key_errors(key_id: uuid.UUID, pool: PoolDep) -> ApiKeyRead:
    try:
        return await pool.reset_errors(key_id)
    except KeyNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/{key_id}/stats", response_model=ApiKeyStats)
async def key_stats(
    key_id: uuid.UUID,
    pool: PoolDep,
    usage_log: Annotated[UsageLog, Depends(get_usage_log)],
) -> ApiKeyStats:
    """Units and requests charged to a key over the last 24 hours."""
    try:
        await pool.get_key(key_id)
    except KeyNotFoundError as exc:
        raise _not_found(exc) from exc
    return await usage_log.stats_for_key(key_id)
