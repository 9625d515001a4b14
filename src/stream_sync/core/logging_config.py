"""structlog setup shared by the API process and the Celery workers.

Records from both structlog and stdlib loggers go through one JSON handler
on stdout (coloured console output at ``DEBUG``).  YouTube keys travel as
the ``key`` query parameter, and httpx logs full request URLs, so every
rendered line has ``key=...`` scrubbed.
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, WrappedLogger

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
"""Set by the request middleware in ``api/main.py``."""

_SECRET_SUBSTRINGS: tuple[str, ...] = ("api_key", "secret", "token", "encryption_key")
_URL_KEY_PATTERN = re.compile(r"([?&]key=)[^&\s\"']+")
_REDACTED = "[REDACTED]"


def _scrub_url_keys(text: str) -> str:
    """Replace the value of any ``key=`` query parameter in *text*."""
    return _URL_KEY_PATTERN.sub(rf"\g<1>{_REDACTED}", text)


def _redact_secrets(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Redact secret-named fields and scrub keys out of string values."""
    for key, value in list(event_dict.items()):
        if any(secret in key.lower() for secret in _SECRET_SUBSTRINGS):
            event_dict[key] = _REDACTED
        elif isinstance(value, str):
            event_dict[key] = _scrub_url_keys(value)
    return event_dict


def _inject_request_id(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    rid = request_id_var.get()
    if rid is not None and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


class _UrlKeyFilter(logging.Filter):
    """Scrub keys from stdlib records whose URL only exists once %-formatted."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = _scrub_url_keys(record.getMessage())
            record.args = None
        elif isinstance(record.msg, str):
            record.msg = _scrub_url_keys(record.msg)
        return True


def configure_logging(log_level: str = "INFO") -> None:
    """Route stdlib and structlog records through one stdout handler.

    Safe to call more than once; the root handler is replaced each time.

    Args:
        log_level: Level name, case-insensitive.  ``DEBUG`` switches to the
            console renderer.
    """
    level_upper = log_level.upper()
    is_development = level_upper == "DEBUG"

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _inject_request_id,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    renderer: structlog.types.Processor = (
        structlog.dev.ConsoleRenderer(colors=True) if is_development else structlog.processors.JSONRenderer()
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    handler.addFilter(_UrlKeyFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_upper, logging.INFO))

    if not is_development:
        for noisy_logger in ("uvicorn.access", "httpx", "httpcore"):
            logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
