"""Health check route.

``GET /api/health``
    Verifies the process can reach the database (``SELECT 1``) and Redis
    (``PING``).  Always returns HTTP 200; the ``status`` field distinguishes
    ``"ok"`` from ``"degraded"``.

This endpoint is diagnostic and must never raise HTTP 5xx errors.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import redis.asyncio as aioredis
import sqlalchemy as sa
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from stream_sync.config.settings import get_settings
from stream_sync.core.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


async def _check_database(session: AsyncSession) -> str:
    try:
        await session.execute(sa.text("SELECT 1"))
        return "ok"
    except Exception:
        logger.exception("Health check: database unreachable")
        return "error"


async def _check_redis() -> str:
    settings = get_settings()
    try:
        client: aioredis.Redis = aioredis.from_url(
            settings.redis_url,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await client.ping()
        finally:
            await client.aclose()
        return "ok"
    except Exception:
        logger.exception("Health check: Redis unreachable")
        return "error"


@router.get("/api/health")
async def system_health(session: AsyncSession = Depends(get_db)) -> JSONResponse:  # noqa: B008
    """Return database and Redis connectivity.

    Returns:
        JSON with keys: ``status``, ``database``, ``redis``, ``timestamp``.
    """
    db_status, redis_status = await asyncio.gather(_check_database(session), _check_redis())
    payload = {
        "status": "ok" if db_status == "ok" and redis_status == "ok" else "degraded",
        "database": db_status,
        "redis": redis_status,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    logger.info("system_health_check", extra={"health": payload})
    return JSONResponse(payload)
