"""Integration tests for the signature-keyed response cache."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest

from stream_sync.core.response_cache import ResponseCache, make_signature

WINDOW = "-259200s+172800s"


class TestMakeSignature:
    def test_argument_order_does_not_matter(self) -> None:
        a = make_signature("search.list", ["UC2", "UC1"], ["live", "upcoming"], WINDOW)
        b = make_signature("search.list", ["UC1", "UC2", "UC1"], ["upcoming", "live"], WINDOW)
        assert a == b

    def test_max_results_is_part_of_the_key(self) -> None:
        assert make_signature("search.list", ["UC1"], ["live"], max_results=50) != make_signature(
            "search.list", ["UC1"], ["live"], max_results=10
        )

    def test_different_requests_differ(self) -> None:
        base = make_signature("search.list", ["UC1"], ["live"], WINDOW)
        assert base != make_signature("search.list", ["UC2"], ["live"], WINDOW)
        assert base != make_signature("search.list", ["UC1"], ["upcoming"], WINDOW)
        assert base != make_signature("search.list", ["UC1"], ["live"], None)
        assert base != make_signature("videos.list", ["UC1"], ["live"], WINDOW)

    def test_signature_is_prefixed_by_endpoint(self) -> None:
        assert make_signature("search.list", ["UC1"], ["live"]).startswith("search.list:")


class TestResponseCache:
    @pytest.mark.asyncio
    async def test_put_then_get(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        payload = {"search": {"live": {"items": []}}, "videos": []}

        await cache.put("sig", payload, timedelta(minutes=5), channel_ids=["UC1"], now=now)

        assert await cache.get("sig", now=now + timedelta(minutes=4)) == payload

    @pytest.mark.asyncio
    async def test_entry_is_a_miss_at_and_after_expiry(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("sig", {"a": 1}, timedelta(minutes=5), now=now)

        assert await cache.get("sig", now=now + timedelta(minutes=5)) is None
        assert await cache.get("sig", now=now + timedelta(hours=1)) is None

    @pytest.mark.asyncio
    async def test_short_ttl_expires_with_the_wall_clock(self, session_factory) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("sig", {"a": 1}, timedelta(milliseconds=1))

        await asyncio.sleep(0.01)

        assert await cache.get("sig") is None

    @pytest.mark.asyncio
    async def test_unknown_signature_is_a_miss(self, session_factory) -> None:
        assert await ResponseCache(session_factory).get("nope") is None

    @pytest.mark.asyncio
    async def test_put_replaces_previous_entry(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("sig", {"version": 1, "extra": True}, timedelta(minutes=5), now=now)
        await cache.put("sig", {"version": 2}, timedelta(minutes=5), now=now + timedelta(minutes=1))

        assert await cache.get("sig", now=now + timedelta(minutes=2)) == {"version": 2}

    @pytest.mark.asyncio
    async def test_put_refreshes_expiry(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("sig", {"version": 1}, timedelta(minutes=5), now=now)
        await cache.put("sig", {"version": 2}, timedelta(minutes=5), now=now + timedelta(minutes=4))

        assert await cache.get("sig", now=now + timedelta(minutes=7)) == {"version": 2}

    @pytest.mark.asyncio
    async def test_sweep_deletes_only_expired_rows(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("short", {"a": 1}, timedelta(minutes=1), now=now)
        await cache.put("long", {"b": 2}, timedelta(hours=1), now=now)

        assert await cache.sweep(now=now + timedelta(minutes=30)) == 1

        assert await cache.get("short", now=now) is None
        assert await cache.get("long", now=now) == {"b": 2}

    @pytest.mark.asyncio
    async def test_put_evicts_expired_rows(self, session_factory, now: datetime) -> None:
        cache = ResponseCache(session_factory)
        await cache.put("old", {"a": 1}, timedelta(minutes=1), now=now)
        await cache.put("new", {"b": 2}, timedelta(minutes=5), now=now + timedelta(minutes=2))

        assert await cache.sweep(now=now + timedelta(minutes=2)) == 0
