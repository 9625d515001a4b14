"""Auto-populate the key pool from environment variables on startup.

Operators usually start with keys in ``.env``.  On startup every
``YOUTUBE_API_KEY``, ``YOUTUBE_API_KEY_2``, ``YOUTUBE_API_KEY_3``, ...
variable is inserted (encrypted) into ``youtube_api_keys`` under the name
``env:<VARIABLE>`` unless a key with that name already exists.  Numbering
stops at the first missing suffix.

Usage::

    # In the FastAPI lifespan or a Celery worker_ready hook:
    from stream_sync.core.credential_bootstrap import bootstrap_keys_from_env

    await bootstrap_keys_from_env()
"""

from __future__ import annotations

import os
from collections.abc import Mapping

import structlog

from stream_sync.core.credential_pool import CredentialPool
from stream_sync.core.exceptions import DuplicateKeyError

logger = structlog.get_logger(__name__)

_BASE_VARIABLE = "YOUTUBE_API_KEY"


def env_key_variables(env: Mapping[str, str]) -> list[tuple[str, str]]:
    """Return ``(variable, value)`` pairs for every configured key, in order."""
    found: list[tuple[str, str]] = []
    first = env.get(_BASE_VARIABLE, "").strip()
    if first:
        found.append((_BASE_VARIABLE, first))
    index = 2
    while True:
        name = f"{_BASE_VARIABLE}_{index}"
        value = env.get(name, "").strip()
        if not value:
            break
        found.append((name, value))
        index += 1
    return found


async def bootstrap_keys_from_env(
    pool: CredentialPool | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    """Insert keys configured in the environment that the pool does not have.

    Safe to call repeatedly.

    Args:
        pool: Target pool.  Defaults to the process-wide pool.
        env: Environment mapping.  Defaults to ``os.environ``.

    Returns:
        The number of keys inserted.
    """
    if env is None:
        env = os.environ
    if pool is None:
        from stream_sync.core.credential_pool import get_credential_pool  # noqa: PLC0415

        pool = get_credential_pool()

    inserted = 0
    for variable, value in env_key_variables(env):
        name = f"env:{variable}"
        try:
            await pool.create_key(name, value, description=f"Auto-populated from {variable}")
        except DuplicateKeyError:
            logger.debug("key_bootstrap_skip_existing", name=name)
            continue
        inserted += 1
        logger.info("key_bootstrap_inserted", name=name)

    logger.info("key_bootstrap_complete", inserted_count=inserted)
    return inserted
