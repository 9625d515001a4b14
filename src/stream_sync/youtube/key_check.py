"""Validate a YouTube API key with one cheap upstream call.

Used by the operator surfaces before a key goes into rotation, or to find
out why a pooled key keeps failing.  The check issues a single
``channels.list`` lookup (1 quota unit) and maps the classified outcome:

- 2xx                    → ``valid``
- quota reasons          → ``quota_exceeded`` (the key works, but not today)
- auth reasons, 401/403  → ``invalid``
- timeout / 5xx / 429    → ``unreachable`` (say nothing about the key)

The result is reported to the caller only; the pool's counters are left
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import httpx

from stream_sync.core.exceptions import (
    AuthError,
    QuotaExceededError,
    TransientUpstreamError,
    UpstreamError,
)
from stream_sync.youtube._client import build_http_client, make_api_request
from stream_sync.youtube.config import CHANNELS_ENDPOINT

logger = logging.getLogger(__name__)

CHECK_CHANNEL_ID: str = "UC_x5XG1OV2P6uZZ5FSM9Ttw"
"""A long-lived public channel (Google for Developers) used as the lookup target."""


class KeyCheckStatus(str, Enum):
    VALID = "valid"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID = "invalid"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class KeyCheckResult:
    status: KeyCheckStatus
    message: str

    @property
    def valid(self) -> bool:
        return self.status is KeyCheckStatus.VALID


async def check_api_key(
    api_key: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> KeyCheckResult:
    """Check *api_key* against the YouTube Data API.

    Args:
        api_key: Plaintext key to check.
        client: Optional shared client; one with *timeout* is created
            otherwise.
        timeout: Request timeout when no client is given.

    Returns:
        A :class:`KeyCheckResult`.  Upstream failures are folded into the
        result, never raised.
    """
    params = {"part": "id", "id": CHECK_CHANNEL_ID, "key": api_key}
    own_client = client is None
    http = client or build_http_client(timeout)
    try:
        await make_api_request(http, CHANNELS_ENDPOINT, params)
    except QuotaExceededError as exc:
        return KeyCheckResult(KeyCheckStatus.QUOTA_EXCEEDED, f"API key has exceeded its quota ({exc.reason})")
    except AuthError as exc:
        return KeyCheckResult(KeyCheckStatus.INVALID, f"API key was rejected ({exc.reason})")
    except TransientUpstreamError as exc:
        logger.warning("Key check could not reach upstream: %s", exc)
        return KeyCheckResult(KeyCheckStatus.UNREACHABLE, str(exc))
    except UpstreamError as exc:
        return KeyCheckResult(KeyCheckStatus.INVALID, str(exc))
    finally:
        if own_client:
            await http.aclose()
    return KeyCheckResult(KeyCheckStatus.VALID, "API key is valid and working")
