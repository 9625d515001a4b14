"""FastAPI application factory and entry point.

Creates the application instance, registers middleware and mounts the
route routers.

Usage::

    # Development server (from project root)
    uvicorn stream_sync.api.main:app --reload

    # Production
    gunicorn stream_sync.api.main:app -k uvicorn.workers.UvicornWorker
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from stream_sync.config.settings import get_settings
from stream_sync.core.logging_config import configure_logging, request_id_var

# Applied at import time so records emitted while building the app are
# captured; re-applied with the configured level inside create_app().
configure_logging("INFO")

logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    """Build and configure the FastAPI application.

    Separated from the module-level ``app`` singleton so that tests can
    call ``create_app()`` with a patched settings environment.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Keeps a roster's YouTube live, upcoming and past broadcasts fresh under API quota.",
        version="0.1.0",
        debug=settings.debug,
        redirect_slashes=False,
    )

    # ---- Middleware --------------------------------------------------------

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request with a correlation id and its duration."""
        request_id = str(uuid.uuid4())
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = getattr(response, "status_code", 500)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn("request_complete", status_code=status_code, elapsed_ms=elapsed_ms)

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Routers ----------------------------------------------------------

    from stream_sync.api.routes import health, keys, streams, sync  # noqa: PLC0415

    application.include_router(health.router)
    application.include_router(sync.router, prefix="/api/sync", tags=["sync"])
    application.include_router(streams.router, prefix="/api/streams", tags=["streams"])
    application.include_router(keys.router, prefix="/api/keys", tags=["keys"])

    # ---- Lifecycle events -------------------------------------------------

    @application.on_event("startup")
    async def on_startup() -> None:
        """Create missing tables and load keys configured in the environment."""
        from stream_sync.core.credential_bootstrap import (  # noqa: PLC0415
            bootstrap_keys_from_env,
        )
        from stream_sync.core.database import init_db  # noqa: PLC0415

        try:
            await init_db()
            await bootstrap_keys_from_env()
        except SQLAlchemyError:
            logger.exception("application_startup_db_failed")
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            debug=settings.debug,
            log_level=settings.log_level,
        )

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        from stream_sync.core.database import dispose_engine  # noqa: PLC0415
        from stream_sync.sync.service import close_tier_scheduler  # noqa: PLC0415

        await close_tier_scheduler()
        await dispose_engine()
        logger.info("application_shutdown")

    return application


app = create_app()
"""The FastAPI application instance.

This is the ASGI callable passed to Uvicorn / Gunicorn.
"""
