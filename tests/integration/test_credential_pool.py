"""Integration tests for the database-backed credential pool.

Covers:
- acquire(): eligibility, remaining-quota check, least-used-first ordering.
- report(): success, quota exhaustion, error threshold deactivation.
- Daily rollover and operator reset.
- Operator actions (set_status, reset_errors, get_key).

Runs against a per-test SQLite database (see ``tests/conftest.py``).
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta

import pytest

from stream_sync.core.credential_pool import CredentialPool, KeyOutcome
from stream_sync.core.exceptions import DuplicateKeyError, KeyNotFoundError
from stream_sync.core.models import ApiKeyStatus


class TestAcquire:
    @pytest.mark.asyncio
    async def test_returns_lease_with_decrypted_key(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        key_id = await make_key("key-a", secret="AIzaPLAINTEXT")

        lease = await pool.acquire(101, now=now)

        assert lease is not None
        assert lease.key_id == key_id
        assert lease.api_key == "AIzaPLAINTEXT"
        assert lease.reserved_units == 101
        assert "AIzaPLAINTEXT" not in repr(lease)
        row = await read_key(key_id)
        assert row.quota_used_today == 101
        assert row.last_used_at == now

    @pytest.mark.asyncio
    async def test_insufficient_remaining_quota_is_exhausted(self, pool: CredentialPool, make_key, now: datetime) -> None:
        """An active key with 9,999 of 10,000 units used cannot cover 100."""
        await make_key("key-a", quota_used_today=9_999)

        assert await pool.acquire(100, now=now) is None

    @pytest.mark.asyncio
    async def test_exact_fit_is_allowed(self, pool: CredentialPool, make_key, now: datetime) -> None:
        await make_key("key-a", quota_used_today=9_900)

        assert await pool.acquire(100, now=now) is not None

    @pytest.mark.asyncio
    async def test_request_larger_than_cap_is_exhausted(self, pool: CredentialPool, make_key, now: datetime) -> None:
        await make_key("key-a")

        assert await pool.acquire(10_001, now=now) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [ApiKeyStatus.INACTIVE, ApiKeyStatus.QUOTA_EXCEEDED])
    async def test_ineligible_status_is_skipped(
        self, pool: CredentialPool, make_key, now: datetime, status: ApiKeyStatus
    ) -> None:
        await make_key("key-a", status=status.value)

        assert await pool.acquire(1, now=now) is None

    @pytest.mark.asyncio
    async def test_least_used_key_first(self, pool: CredentialPool, make_key, now: datetime) -> None:
        await make_key("busy", quota_used_today=5_000)
        idle = await make_key("idle", quota_used_today=200)

        lease = await pool.acquire(100, now=now)

        assert lease is not None and lease.key_id == idle

    @pytest.mark.asyncio
    async def test_ties_broken_by_least_recently_used(self, pool: CredentialPool, make_key, now: datetime) -> None:
        await make_key("recent", quota_used_today=100, last_used_at=now - timedelta(minutes=1))
        stale = await make_key("stale", quota_used_today=100, last_used_at=now - timedelta(hours=3))

        lease = await pool.acquire(100, now=now)

        assert lease is not None and lease.key_id == stale

    @pytest.mark.asyncio
    async def test_consumption_spreads_across_keys(self, pool: CredentialPool, make_key, now: datetime) -> None:
        first = await make_key("key-a")
        second = await make_key("key-b")

        leases = [await pool.acquire(101, now=now) for _ in range(4)]

        used = [lease.key_id for lease in leases if lease is not None]
        assert used.count(first) == 2
        assert used.count(second) == 2

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_overshoot_cap(
        self, pool: CredentialPool, make_key, read_key, now: datetime
    ) -> None:
        key_id = await make_key("key-a", quota_used_today=9_700)

        leases = await asyncio.gather(*(pool.acquire(100, now=now) for _ in range(5)))

        assert sum(lease is not None for lease in leases) == 3
        assert (await read_key(key_id)).quota_used_today == 10_000

    @pytest.mark.asyncio
    async def test_undecryptable_key_is_skipped(self, pool: CredentialPool, make_key, now: datetime) -> None:
        await make_key("broken", api_key_encrypted="not-a-fernet-token")
        good = await make_key("good", quota_used_today=50)

        lease = await pool.acquire(10, now=now)

        assert lease is not None and lease.key_id == good


class TestReport:
    @pytest.mark.asyncio
    async def test_success_reconciles_units_and_clears_errors(
        self, pool: CredentialPool, make_key, read_key, now: datetime
    ) -> None:
        key_id = await make_key("key-a", consecutive_errors=3)
        lease = await pool.acquire(301, now=now)
        assert lease is not None

        await pool.report(lease, KeyOutcome.SUCCESS, units_used=101, now=now)

        row = await read_key(key_id)
        assert row.quota_used_today == 101
        assert row.consecutive_errors == 0
        assert row.total_requests == 1

    @pytest.mark.asyncio
    async def test_quota_exceeded_parks_key(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        key_id = await make_key("key-a")
        lease = await pool.acquire(101, now=now)
        assert lease is not None

        await pool.report(lease, KeyOutcome.QUOTA_EXCEEDED, units_used=0, error="quotaExceeded", now=now)

        row = await read_key(key_id)
        assert row.status == ApiKeyStatus.QUOTA_EXCEEDED.value
        assert row.quota_exceeded_at == now
        assert row.quota_used_today == 0
        assert row.consecutive_errors == 0
        assert await pool.acquire(1, now=now) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("outcome", [KeyOutcome.AUTH, KeyOutcome.TRANSIENT])
    async def test_five_consecutive_errors_deactivate_key(
        self, pool: CredentialPool, make_key, read_key, now: datetime, outcome: KeyOutcome
    ) -> None:
        key_id = await make_key("key-a")

        for attempt in range(1, 6):
            lease = await pool.acquire(1, now=now)
            assert lease is not None, f"key unavailable before error {attempt}"
            await pool.report(lease, outcome, units_used=1, error=f"failure {attempt}", now=now)

        row = await read_key(key_id)
        assert row.status == ApiKeyStatus.INACTIVE.value
        assert row.consecutive_errors == 5
        assert row.last_error == "failure 5"
        assert await pool.acquire(1, now=now) is None

    @pytest.mark.asyncio
    async def test_success_between_errors_resets_the_count(
        self, pool: CredentialPool, make_key, read_key, now: datetime
    ) -> None:
        key_id = await make_key("key-a")
        for outcome in [KeyOutcome.TRANSIENT] * 4 + [KeyOutcome.SUCCESS] + [KeyOutcome.TRANSIENT] * 4:
            lease = await pool.acquire(1, now=now)
            assert lease is not None
            await pool.report(lease, outcome, now=now)

        row = await read_key(key_id)
        assert row.status == ApiKeyStatus.ACTIVE.value
        assert row.consecutive_errors == 4

    @pytest.mark.asyncio
    async def test_refund_never_goes_negative(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        key_id = await make_key("key-a")
        lease = await pool.acquire(101, now=now)
        assert lease is not None
        await pool.reset_daily_quota(force=True, now=now)

        await pool.report(lease, KeyOutcome.SUCCESS, units_used=0, now=now)

        assert (await read_key(key_id)).quota_used_today == 0


class TestDailyReset:
    @pytest.mark.asyncio
    async def test_acquire_rolls_over_previous_day(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        key_id = await make_key(
            "key-a",
            quota_used_today=10_000,
            status=ApiKeyStatus.QUOTA_EXCEEDED.value,
            last_quota_reset_at=now - timedelta(days=1),
        )

        lease = await pool.acquire(100, now=now)

        assert lease is not None and lease.key_id == key_id
        row = await read_key(key_id)
        assert row.status == ApiKeyStatus.ACTIVE.value
        assert row.quota_used_today == 100
        assert row.last_quota_reset_at == now

    @pytest.mark.asyncio
    async def test_scheduled_reset_skips_keys_reset_today(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        today = await make_key("today", quota_used_today=500)
        yesterday = await make_key("yesterday", quota_used_today=700, last_quota_reset_at=now - timedelta(days=1))

        assert await pool.reset_daily_quota(now=now) == 1

        assert (await read_key(today)).quota_used_today == 500
        assert (await read_key(yesterday)).quota_used_today == 0

    @pytest.mark.asyncio
    async def test_forced_reset_keeps_inactive_keys_inactive(
        self, pool: CredentialPool, make_key, read_key, now: datetime
    ) -> None:
        parked = await make_key("parked", quota_used_today=10_000, status=ApiKeyStatus.QUOTA_EXCEEDED.value)
        disabled = await make_key("disabled", quota_used_today=40, status=ApiKeyStatus.INACTIVE.value)

        assert await pool.reset_daily_quota(force=True, now=now) == 2

        assert (await read_key(parked)).status == ApiKeyStatus.ACTIVE.value
        disabled_row = await read_key(disabled)
        assert disabled_row.status == ApiKeyStatus.INACTIVE.value
        assert disabled_row.quota_used_today == 0


class TestOperatorActions:
    @pytest.mark.asyncio
    async def test_create_key_rejects_duplicate_names(self, pool: CredentialPool) -> None:
        created = await pool.create_key("project-a", "AIzaSyEXAMPLE1234")
        assert created.masked_key == "AIza...1234"

        with pytest.raises(DuplicateKeyError):
            await pool.create_key("project-a", "AIzaSyOTHER56789")

    @pytest.mark.asyncio
    async def test_reactivation_grants_fresh_error_budget(
        self, pool: CredentialPool, make_key, read_key
    ) -> None:
        key_id = await make_key("key-a", status=ApiKeyStatus.INACTIVE.value, consecutive_errors=5)

        updated = await pool.set_status(key_id, ApiKeyStatus.ACTIVE)

        assert updated.status == ApiKeyStatus.ACTIVE.value
        assert (await read_key(key_id)).consecutive_errors == 0

    @pytest.mark.asyncio
    async def test_quota_exceeded_cannot_be_set_by_hand(self, pool: CredentialPool, make_key) -> None:
        key_id = await make_key("key-a")

        with pytest.raises(ValueError):
            await pool.set_status(key_id, ApiKeyStatus.QUOTA_EXCEEDED)

    @pytest.mark.asyncio
    async def test_reset_errors(self, pool: CredentialPool, make_key, read_key, now: datetime) -> None:
        key_id = await make_key("key-a", consecutive_errors=2, last_error="boom", last_error_at=now)

        await pool.reset_errors(key_id)

        row = await read_key(key_id)
        assert row.consecutive_errors == 0
        assert row.last_error is None

    @pytest.mark.asyncio
    async def test_unknown_key_raises(self, pool: CredentialPool) -> None:
        with pytest.raises(KeyNotFoundError):
            await pool.get_key(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_update_key_changes_only_given_fields(self, pool: CredentialPool, make_key, read_key) -> None:
        key_id = await make_key("key-a", description="old note")

        renamed = await pool.update_key(key_id, name="project-a")
        assert renamed.name == "project-a"
        assert renamed.description == "old note"

        cleared = await pool.update_key(key_id, description="")
        assert cleared.name == "project-a"
        assert (await read_key(key_id)).description is None

    @pytest.mark.asyncio
    async def test_update_key_rejects_a_taken_name(self, pool: CredentialPool, make_key) -> None:
        key_id = await make_key("key-a")
        await make_key("key-b")

        with pytest.raises(DuplicateKeyError):
            await pool.update_key(key_id, name="key-b")
        # Keeping its own name is not a clash.
        assert (await pool.update_key(key_id, name="key-a")).name == "key-a"

    @pytest.mark.asyncio
    async def test_update_unknown_key_raises(self, pool: CredentialPool) -> None:
        with pytest.raises(KeyNotFoundError):
            await pool.update_key(uuid.uuid4(), name="x")

    @pytest.mark.asyncio
    async def test_reveal_secret(self, pool: CredentialPool, make_key) -> None:
        key_id = await make_key("key-a", secret="AIzaSyEXAMPLE1234")

        assert await pool.reveal_secret(key_id) == "AIzaSyEXAMPLE1234"
        with pytest.raises(KeyNotFoundError):
            await pool.reveal_secret(uuid.uuid4())
        with pytest.raises(KeyNotFoundError):
            await pool.set_status(uuid.uuid4(), ApiKeyStatus.INACTIVE)
