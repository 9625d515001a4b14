"""Application-wide exception hierarchy for Stream Sync.

All custom exceptions subclass ``StreamSyncError``, enabling consistent
error handling and structured logging across the application.

Pool exhaustion is deliberately absent: ``CredentialPool.acquire`` returns
``None`` when no key qualifies, and callers treat that as a normal outcome.

Hierarchy::

    StreamSyncError
    ├── UpstreamError               (endpoint, status_code)
    │   ├── TransientUpstreamError
    │   ├── QuotaExceededError
    │   └── AuthError
    ├── MalformedUpstreamResponse   (raw_item)
    ├── KeyNotFoundError            (key_id)
    ├── DuplicateKeyError           (name)
    └── CredentialEncryptionError
"""

from __future__ import annotations

from typing import Any


class StreamSyncError(Exception):
    """Base class for all Stream Sync exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Upstream (YouTube Data API) exceptions
# ---------------------------------------------------------------------------


class UpstreamError(StreamSyncError):
    """Raised when a YouTube Data API call fails.

    Args:
        message: Human-readable description of the failure.
        endpoint: Logical endpoint name (e.g. ``"search.list"``).
        status_code: HTTP status code, or ``None`` for network failures.
        reason: The ``error.errors[0].reason`` string from the response body,
            when present.
    """

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.reason = reason


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout, 5xx or short-term rate limiting.

    Retried once in place with the same key; after that the channel is
    skipped for the current pass.
    """


class QuotaExceededError(UpstreamError):
    """The key's daily quota is spent (HTTP 403 ``quotaExceeded``).

    Never retried.  The key is flipped to ``quota_exceeded`` and the rest of
    the tier run is abandoned.
    """


class AuthError(UpstreamError):
    """The key was rejected (invalid, revoked or API not enabled).

    Counts towards the key's consecutive error total; enough of these
    deactivate the key until an operator re-enables it.
    """


class MalformedUpstreamResponse(StreamSyncError):
    """Raised when an upstream item lacks required fields or has bad values.

    Args:
        message: Human-readable description of the problem.
        raw_item: The offending item, kept for debug logging.
    """

    def __init__(self, message: str, raw_item: Any = None) -> None:
        super().__init__(message)
        self.raw_item = raw_item


# ---------------------------------------------------------------------------
# Credential exceptions
# ---------------------------------------------------------------------------


class KeyNotFoundError(StreamSyncError):
    """Raised when an operator action names an API key that does not exist.

    Args:
        key_id: The identifier that was looked up.
    """

    def __init__(self, key_id: object) -> None:
        super().__init__(f"API key '{key_id}' not found")
        self.key_id = key_id


class CredentialEncryptionError(StreamSyncError):
    """Raised when a key secret cannot be encrypted or decrypted.

    Usually means ``CREDENTIAL_ENCRYPTION_KEY`` is missing, malformed, or
    differs from the key the secret was stored with.
    """


class DuplicateKeyError(StreamSyncError):
    """Raised when an operator adds a key under a name that is already taken.

    Args:
        name: The conflicting key name.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"API key named '{name}' already exists")
        self.name = name
