"""Credential pool for YouTube Data API keys.

Database-backed pool with Fernet encryption at rest.  The
``youtube_api_keys`` table is the single source of truth for quota and
error state, so every process (FastAPI, Celery workers) sees the same pool.

Selection
---------
``acquire(required_units)`` picks, among keys with ``status = 'active'`` and
enough remaining daily quota, the key with the lowest ``quota_used_today``
(spreading consumption so no single key is driven to exhaustion first),
breaking ties by least-recently-used.  The units are reserved by a single
conditional ``UPDATE`` that re-checks status and remaining quota, so two
concurrent callers can never jointly overshoot a key's cap; a caller that
loses the race simply moves on to the next candidate.

``acquire`` returns ``None`` when no key qualifies.  That is the normal
"pool exhausted" outcome, not an error: callers skip the cycle and the next
scheduled tick (or the daily reset) heals it.

Reporting
---------
Every lease is settled with ``report(lease, outcome, units_used)``:

- ``SUCCESS``:         counters incremented, consecutive errors cleared.
- ``QUOTA_EXCEEDED``:  key parked as ``quota_exceeded`` until the next UTC day.
- ``TRANSIENT`` /
  ``AUTH``:            consecutive error count incremented; at the threshold
                       (5 by default) the key is set ``inactive`` and stays
                       that way until an operator re-enables it.

Daily rollover
--------------
Counters reset when a key's ``last_quota_reset_at`` falls before the current
UTC day.  ``acquire`` applies the rollover lazily and the Celery beat
schedule runs ``reset_daily_quota()`` just after midnight UTC.

Usage::

    pool = get_credential_pool()
    lease = await pool.acquire(required_units=101)
    if lease is None:
        return  # pool exhausted
    try:
        ...  # call the API with lease.api_key
    except QuotaExceededError as exc:
        await pool.report(lease, KeyOutcome.QUOTA_EXCEEDED, units_used=0, error=str(exc))
    else:
        await pool.report(lease, KeyOutcome.SUCCESS, units_used=101)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.core.exceptions import (
    CredentialEncryptionError,
    DuplicateKeyError,
    KeyNotFoundError,
)
from stream_sync.core.models.api_keys import ApiKey, ApiKeyStatus
from stream_sync.core.models.base import UtcDateTime, utcnow
from stream_sync.core.schemas.api_keys import ApiKeyRead

logger = logging.getLogger(__name__)

_MAX_ACQUIRE_ATTEMPTS: int = 5
"""Candidates tried before giving up when concurrent callers keep winning."""

_ERROR_MESSAGE_MAX_LENGTH: int = 500


class KeyOutcome(str, Enum):
    """Classified result of one leased upstream interaction."""

    SUCCESS = "success"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"
    AUTH = "auth"


@dataclass(frozen=True)
class KeyLease:
    """A key handed out by :meth:`CredentialPool.acquire`.

    Attributes:
        key_id: Primary key of the ``youtube_api_keys`` row.
        name: Operator-facing key name (safe to log).
        api_key: Decrypted key string.  Excluded from ``repr`` so the lease
            can be logged without leaking it.
        reserved_units: Units already added to ``quota_used_today``.
    """

    key_id: uuid.UUID
    name: str
    api_key: str = field(repr=False)
    reserved_units: int


# ---------------------------------------------------------------------------
# Encryption helpers
# ---------------------------------------------------------------------------


def _get_fernet(encryption_key: str | None = None) -> Any:
    """Return a Fernet instance for *encryption_key* (or the configured key).

    Raises:
        CredentialEncryptionError: If no key is configured or it is invalid.
    """
    from cryptography.fernet import Fernet  # noqa: PLC0415

    key = encryption_key
    if key is None:
        from stream_sync.config.settings import get_settings  # noqa: PLC0415

        key = get_settings().credential_encryption_key
    if not key:
        raise CredentialEncryptionError(
            "CREDENTIAL_ENCRYPTION_KEY is not set. "
            "Generate one with: from cryptography.fernet import Fernet; Fernet.generate_key().decode()"
        )
    try:
        return Fernet(key.encode("utf-8"))
    except ValueError as exc:
        raise CredentialEncryptionError(f"Invalid CREDENTIAL_ENCRYPTION_KEY: {exc}") from exc


def encrypt_secret(secret: str, encryption_key: str | None = None) -> str:
    """Encrypt an API key string for storage in ``api_key_encrypted``."""
    return _get_fernet(encryption_key).encrypt(secret.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str, encryption_key: str | None = None) -> str:
    """Decrypt a stored ``api_key_encrypted`` value.

    Raises:
        CredentialEncryptionError: If the token cannot be decrypted with the
            configured key.
    """
    from cryptography.fernet import InvalidToken  # noqa: PLC0415

    try:
        return _get_fernet(encryption_key).decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialEncryptionError("Failed to decrypt API key") from exc


def mask_secret(secret: str) -> str:
    """Return a display form showing only the first and last four characters."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


def _start_of_utc_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:_ERROR_MESSAGE_MAX_LENGTH]


# ---------------------------------------------------------------------------
# CredentialPool
# ---------------------------------------------------------------------------


class CredentialPool:
    """Database-backed pool of YouTube API keys with atomic quota reservation.

    Args:
        session_factory: Async session factory.  Defaults to the process-wide
            factory from :mod:`stream_sync.core.database`.
        daily_quota: Per-key daily unit cap.  Defaults to
            ``Settings.youtube_daily_quota_per_key``.
        error_threshold: Consecutive non-quota failures before a key is set
            inactive.  Defaults to ``Settings.key_error_threshold``.
        encryption_key: Fernet key.  Defaults to
            ``Settings.credential_encryption_key``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        daily_quota: int | None = None,
        error_threshold: int | None = None,
        encryption_key: str | None = None,
    ) -> None:
        if daily_quota is None or error_threshold is None:
            from stream_sync.config.settings import get_settings  # noqa: PLC0415

            settings = get_settings()
            daily_quota = daily_quota if daily_quota is not None else settings.youtube_daily_quota_per_key
            error_threshold = (
                error_threshold if error_threshold is not None else settings.key_error_threshold
            )
        self._session_factory = session_factory
        self.daily_quota = daily_quota
        self.error_threshold = error_threshold
        self._encryption_key = encryption_key

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from stream_sync.core.database import get_session_factory  # noqa: PLC0415

            self._session_factory = get_session_factory()
        return self._session_factory

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(
        self,
        required_units: int,
        now: datetime | None = None,
    ) -> KeyLease | None:
        """Reserve *required_units* of quota on the best available key.

        Query flow:
        1. Roll over daily counters for keys last reset before today (UTC).
        2. Select the eligible key with the lowest ``quota_used_today``,
           ties broken by ``last_used_at`` ascending (never-used first).
        3. Reserve the units with a conditional UPDATE; on a lost race,
           try the next candidate.

        Args:
            required_units: Quota units the caller expects to spend.
            now: Override for the current time (tests).

        Returns:
            A :class:`KeyLease`, or ``None`` when no key can cover the
            request (pool exhausted).
        """
        now = now or utcnow()
        if required_units > self.daily_quota:
            logger.warning(
                "Requested %d units exceeds the per-key cap of %d.",
                required_units,
                self.daily_quota,
            )
            return None

        await self._roll_over(now)

        cap = self.daily_quota
        skipped: set[uuid.UUID] = set()
        async with self._sessions()() as session:
            for _ in range(_MAX_ACQUIRE_ATTEMPTS):
                stmt = (
                    select(ApiKey)
                    .where(
                        ApiKey.status == ApiKeyStatus.ACTIVE.value,
                        ApiKey.quota_used_today + required_units <= cap,
                    )
                    .order_by(
                        ApiKey.quota_used_today.asc(),
                        ApiKey.last_used_at.asc().nullsfirst(),
                        ApiKey.id,
                    )
                    .limit(1)
                )
                if skipped:
                    stmt = stmt.where(ApiKey.id.not_in(skipped))
                candidate = (await session.execute(stmt)).scalar_one_or_none()
                if candidate is None:
                    await session.rollback()
                    logger.info("Credential pool exhausted for a %d-unit request.", required_units)
                    return None

                try:
                    secret = decrypt_secret(candidate.api_key_encrypted, self._encryption_key)
                except CredentialEncryptionError:
                    logger.error("Cannot decrypt API key '%s' (%s), skipping.", candidate.name, candidate.id)
                    skipped.add(candidate.id)
                    continue

                reserved = await session.execute(
                    update(ApiKey)
                    .where(
                        ApiKey.id == candidate.id,
                        ApiKey.status == ApiKeyStatus.ACTIVE.value,
                        ApiKey.quota_used_today + required_units <= cap,
                    )
                    .values(
                        quota_used_today=ApiKey.quota_used_today + required_units,
                        last_used_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if reserved.rowcount == 1:
                    logger.debug("Reserved %d units on key '%s'.", required_units, candidate.name)
                    return KeyLease(
                        key_id=candidate.id,
                        name=candidate.name,
                        api_key=secret,
                        reserved_units=required_units,
                    )
                # Another caller changed the row between select and update.
                session.expunge_all()

        logger.warning("Gave up reserving %d units after repeated contention.", required_units)
        return None

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    async def report(
        self,
        lease: KeyLease,
        outcome: KeyOutcome,
        units_used: int | None = None,
        error: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Settle a lease: reconcile quota and update the key's health.

        Args:
            lease: The lease returned by :meth:`acquire`.
            outcome: Classified result of the interaction.
            units_used: Units actually charged upstream.  Defaults to the
                reserved amount.  The difference is returned to (or taken
                from) ``quota_used_today``.
            error: Error message stored in ``last_error`` on failure.
            now: Override for the current time (tests).
        """
        now = now or utcnow()
        charged = lease.reserved_units if units_used is None else units_used
        delta = charged - lease.reserved_units
        adjusted = ApiKey.quota_used_today + delta
        values: dict[str, Any] = {
            "quota_used_today": sa.case((adjusted < 0, 0), else_=adjusted),
            "updated_at": now,
        }

        if outcome is KeyOutcome.SUCCESS:
            values.update(
                total_requests=ApiKey.total_requests + 1,
                consecutive_errors=0,
                last_used_at=now,
            )
        elif outcome is KeyOutcome.QUOTA_EXCEEDED:
            is_active = ApiKey.status == ApiKeyStatus.ACTIVE.value
            values.update(
                status=sa.case(
                    (is_active, ApiKeyStatus.QUOTA_EXCEEDED.value),
                    else_=ApiKey.status,
                ),
                quota_exceeded_at=sa.case(
                    (is_active, sa.literal(now, UtcDateTime())),
                    else_=ApiKey.quota_exceeded_at,
                ),
                last_error=_truncate(error) or "quotaExceeded",
                last_error_at=now,
            )
        else:
            errors = ApiKey.consecutive_errors + 1
            values.update(
                consecutive_errors=errors,
                status=sa.case(
                    (errors >= self.error_threshold, ApiKeyStatus.INACTIVE.value),
                    else_=ApiKey.status,
                ),
                last_error=_truncate(error),
                last_error_at=now,
            )

        async with self._sessions()() as session:
            result = await session.execute(
                update(ApiKey)
                .where(ApiKey.id == lease.key_id)
                .values(**values)
                .returning(ApiKey.status, ApiKey.consecutive_errors)
                .execution_options(synchronize_session=False)
            )
            row = result.one_or_none()
            await session.commit()

        if row is None:
            logger.warning("Report for unknown API key %s ignored.", lease.key_id)
            return

        status, consecutive_errors = row
        if outcome is KeyOutcome.QUOTA_EXCEEDED:
            logger.warning("API key '%s' (%s) hit its daily quota.", lease.name, lease.key_id)
        elif outcome is KeyOutcome.AUTH:
            logger.warning(
                "API key '%s' (%s) was rejected upstream (%d consecutive errors): %s",
                lease.name,
                lease.key_id,
                consecutive_errors,
                error,
            )
        if outcome in (KeyOutcome.AUTH, KeyOutcome.TRANSIENT) and (
            status == ApiKeyStatus.INACTIVE.value and consecutive_errors == self.error_threshold
        ):
            logger.error(
                "API key '%s' (%s) deactivated after %d consecutive errors; "
                "an operator must re-enable it.",
                lease.name,
                lease.key_id,
                consecutive_errors,
            )

    # ------------------------------------------------------------------
    # Daily reset
    # ------------------------------------------------------------------

    async def _roll_over(self, now: datetime) -> int:
        return await self._reset_counters(
            ApiKey.last_quota_reset_at < _start_of_utc_day(now), now
        )

    async def _reset_counters(self, condition: Any, now: datetime) -> int:
        async with self._sessions()() as session:
            result = await session.execute(
                update(ApiKey)
                .where(condition)
                .values(
                    quota_used_today=0,
                    last_quota_reset_at=now,
                    status=sa.case(
                        (
                            ApiKey.status == ApiKeyStatus.QUOTA_EXCEEDED.value,
                            ApiKeyStatus.ACTIVE.value,
                        ),
                        else_=ApiKey.status,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info("Reset daily quota counters on %d API key(s).", result.rowcount)
        return result.rowcount

    async def reset_daily_quota(self, force: bool = False, now: datetime | None = None) -> int:
        """Reset daily quota counters.

        Zeroes ``quota_used_today``, stamps ``last_quota_reset_at`` and moves
        ``quota_exceeded`` keys back to ``active``.  Inactive keys keep their
        status.

        Args:
            force: Reset every key, even ones already reset today.  This is
                the operator maintenance action; the scheduled sweep leaves
                it ``False``.
            now: Override for the current time (tests).

        Returns:
            Number of keys reset.
        """
        now = now or utcnow()
        if force:
            return await self._reset_counters(sa.true(), now)
        return await self._roll_over(now)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _to_read(self, key: ApiKey) -> ApiKeyRead:
        try:
            masked = mask_secret(decrypt_secret(key.api_key_encrypted, self._encryption_key))
        except CredentialEncryptionError:
            masked = "<undecryptable>"
        return ApiKeyRead.model_validate(key).model_copy(update={"masked_key": masked})

    async def create_key(
        self,
        name: str,
        api_key: str,
        description: str | None = None,
    ) -> ApiKeyRead:
        """Add a key to the pool as ``active``.

        Raises:
            DuplicateKeyError: If a key with *name* already exists.
        """
        async with self._sessions()() as session:
            existing = await session.execute(select(ApiKey.id).where(ApiKey.name == name))
            if existing.scalar_one_or_none() is not None:
                raise DuplicateKeyError(name)
            key = ApiKey(
                name=name,
                description=description,
                api_key_encrypted=encrypt_secret(api_key, self._encryption_key),
            )
            session.add(key)
            await session.commit()
            logger.info("Added API key '%s' (%s) to the pool.", name, key.id)
            return self._to_read(key)

    async def list_keys(self) -> list[ApiKeyRead]:
        """Return all keys with masked secrets, oldest first."""
        async with self._sessions()() as session:
            result = await session.execute(select(ApiKey).order_by(ApiKey.created_at, ApiKey.name))
            return [self._to_read(key) for key in result.scalars()]

    async def get_key(self, key_id: uuid.UUID) -> ApiKeyRead:
        """Return one key with its secret masked.

        Raises:
            KeyNotFoundError: If *key_id* does not exist.
        """
        async with self._sessions()() as session:
            key = await session.get(ApiKey, key_id)
            if key is None:
                raise KeyNotFoundError(key_id)
            return self._to_read(key)

    async def _update_key(self, key_id: uuid.UUID, **values: Any) -> ApiKeyRead:
        async with self._sessions()() as session:
            key = await session.get(ApiKey, key_id)
            if key is None:
                raise KeyNotFoundError(key_id)
            for column, value in values.items():
                setattr(key, column, value)
            await session.commit()
            return self._to_read(key)

    async def set_status(self, key_id: uuid.UUID, status: ApiKeyStatus) -> ApiKeyRead:
        """Enable or disable a key.

        Re-enabling clears ``consecutive_errors`` so the key gets a fresh
        error budget.  ``quota_exceeded`` cannot be set by hand.

        Raises:
            KeyNotFoundError: If *key_id* does not exist.
            ValueError: If *status* is ``quota_exceeded``.
        """
        if status is ApiKeyStatus.QUOTA_EXCEEDED:
            raise ValueError("quota_exceeded is set by the pool, not by operators")
        values: dict[str, Any] = {"status": status.value}
        if status is ApiKeyStatus.ACTIVE:
            values["consecutive_errors"] = 0
        updated = await self._update_key(key_id, **values)
        logger.info("API key '%s' (%s) set to %s.", updated.name, key_id, status.value)
        return updated

    async def update_key(
        self,
        key_id: uuid.UUID,
        name: str | None = None,
        description: str | None = None,
    ) -> ApiKeyRead:
        """Rename a key or change its description.

        ``None`` leaves a field unchanged; an empty description clears it.

        Raises:
            KeyNotFoundError: If *key_id* does not exist.
            DuplicateKeyError: If another key already uses *name*.
        """
        values: dict[str, Any] = {}
        if name is not None:
            async with self._sessions()() as session:
                clash = await session.execute(
                    select(ApiKey.id).where(ApiKey.name == name, ApiKey.id != key_id)
                )
                if clash.scalar_one_or_none() is not None:
                    raise DuplicateKeyError(name)
            values["name"] = name
        if description is not None:
            values["description"] = description or None
        return await self._update_key(key_id, **values)

    async def reveal_secret(self, key_id: uuid.UUID) -> str:
        """Return the plaintext of a stored key, for validating it upstream.

        Raises:
            KeyNotFoundError: If *key_id* does not exist.
            CredentialEncryptionError: If the stored value cannot be decrypted.
        """
        async with self._sessions()() as session:
            token = (
                await session.execute(select(ApiKey.api_key_encrypted).where(ApiKey.id == key_id))
            ).scalar_one_or_none()
        if token is None:
            raise KeyNotFoundError(key_id)
        return decrypt_secret(token, self._encryption_key)

    async def reset_errors(self, key_id: uuid.UUID) -> ApiKeyRead:
        """Clear the consecutive error counter and last error of a key.

        Raises:
            KeyNotFoundError: If *key_id* does not exist.
        """
        return await self._update_key(key_id, consecutive_errors=0, last_error=None, last_error_at=None)


# ---------------------------------------------------------------------------
# Process-wide accessor
# ---------------------------------------------------------------------------

_pool_singleton: CredentialPool | None = None


def get_credential_pool() -> CredentialPool:
    """Return the process-wide :class:`CredentialPool`.

    The singleton is created on first access.  In tests, construct a pool
    directly with a test session factory instead.
    """
    global _pool_singleton  # noqa: PLW0603
    if _pool_singleton is None:
        _pool_singleton = CredentialPool()
    return _pool_singleton
