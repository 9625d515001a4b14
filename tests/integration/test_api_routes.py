"""HTTP-level tests for the FastAPI routes.

The app is driven in-process through ``httpx.ASGITransport``.  The
scheduler dependency is overridden with one wired to the per-test SQLite
database, so every route exercises the real pool, repositories and
history.  YouTube is mocked with respx where a run reaches upstream.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
import pytest_asyncio
import respx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stream_sync.api.dependencies import get_scheduler
from stream_sync.api.main import create_app
from stream_sync.core.database import get_db
from stream_sync.sync.repository import ChannelRepository
from stream_sync.sync.scheduler import SchedulerState, TierScheduler
from stream_sync.sync.service import build_tier_scheduler
from stream_sync.youtube.config import YOUTUBE_API_BASE_URL


@pytest.fixture
def scheduler(session_factory: async_sessionmaker[AsyncSession]) -> TierScheduler:
    return build_tier_scheduler(session_factory, state=SchedulerState())


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: TierScheduler,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app()

    async def _test_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_db] = _test_db
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield http


def _live_search() -> dict[str, Any]:
    return {"items": [{"id": {"videoId": "v1"}, "snippet": {"title": "Live now", "liveBroadcastContent": "live"}}]}


def _live_videos() -> dict[str, Any]:
    return {
        "items": [
            {
                "id": "v1",
                "snippet": {"title": "Live now", "liveBroadcastContent": "live"},
                "liveStreamingDetails": {"actualStartTime": "2026-03-14T11:30:00Z"},
            }
        ]
    }


class TestSyncRoutes:
    @pytest.mark.asyncio
    async def test_trigger_with_empty_roster_runs(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sync/full")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ran"
        assert body["result"]["tier"] == "full"
        assert body["result"]["channels_synced"] == 0
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_second_trigger_is_debounced(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/sync/today")
        response = await client.post("/api/sync/today", json={"force_refresh": True})

        assert response.status_code == 200
        assert response.json() == {"status": "skipped", "reason": "debounced", "result": None}

    @pytest.mark.asyncio
    async def test_unknown_tier_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sync/hourly")
        assert response.status_code == 422

    @pytest.mark.asyncio
    @respx.mock
    async def test_full_sync_populates_streams(
        self,
        client: httpx.AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
        make_key,
    ) -> None:
        await make_key("key-a")
        await ChannelRepository(session_factory).add_channel("UC1", "Channel One")
        search = respx.get(f"{YOUTUBE_API_BASE_URL}/search").mock(
            return_value=httpx.Response(200, json=_live_search())
        )
        respx.get(f"{YOUTUBE_API_BASE_URL}/videos").mock(return_value=httpx.Response(200, json=_live_videos()))

        response = await client.post("/api/sync/full", json={"skip_cache": True})

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["videos_upserted"] == 1
        assert result["units_used"] == 301
        assert search.call_count == 3

        streams = await client.get("/api/streams", params={"status": "live"})
        assert streams.status_code == 200
        assert [s["video_id"] for s in streams.json()] == ["v1"]
        assert streams.json()[0]["stream_url"] == "https://www.youtube.com/watch?v=v1"

        history = await client.get("/api/sync/history", params={"job": "full"})
        assert history.status_code == 200
        runs = history.json()
        assert len(runs) == 1
        assert runs[0]["success"] is True
        assert runs[0]["result"]["videos_upserted"] == 1

    @pytest.mark.asyncio
    async def test_state_lists_jobs_that_ran(self, client: httpx.AsyncClient) -> None:
        await client.post("/api/sync/active")

        response = await client.get("/api/sync/state")

        assert response.status_code == 200
        jobs = {job["job"]: job for job in response.json()}
        assert jobs["active"]["in_progress"] is False
        assert jobs["active"]["last_run_at"] is not None

    @pytest.mark.asyncio
    async def test_avatar_trigger(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sync/avatars", json={"limit": 5})

        assert response.status_code == 200
        assert response.json()["status"] == "ran"
        assert response.json()["result"]["refreshed"] == 0

    @pytest.mark.asyncio
    async def test_avatar_limit_is_validated(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/sync/avatars", json={"limit": 0})
        assert response.status_code == 422


class TestStreamRoutes:
    @pytest.mark.asyncio
    async def test_empty_listing(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/streams",
            params={"start": "2026-03-14T00:00:00", "end": "2026-03-15T00:00:00Z"},
        )
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_inverted_window_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/streams",
            params={"start": "2026-03-15T00:00:00Z", "end": "2026-03-14T00:00:00Z"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_status_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/streams", params={"status": "paused"})
        assert response.status_code == 422


class TestKeyRoutes:
    @pytest.mark.asyncio
    async def test_create_list_and_duplicate(self, client: httpx.AsyncClient) -> None:
        created = await client.post("/api/keys", json={"name": "project-a", "api_key": "AIzaSyEXAMPLE1234"})

        assert created.status_code == 201
        body = created.json()
        assert body["masked_key"] == "AIza...1234"
        assert "api_key" not in body

        listed = await client.get("/api/keys")
        assert [k["name"] for k in listed.json()] == ["project-a"]
        assert "AIzaSyEXAMPLE1234" not in listed.text

        duplicate = await client.post("/api/keys", json={"name": "project-a", "api_key": "AIzaSyOTHER56789"})
        assert duplicate.status_code == 409

    @pytest.mark.asyncio
    async def test_deactivate_and_activate(self, client: httpx.AsyncClient, make_key) -> None:
        key_id = await make_key("key-a", consecutive_errors=5, status="inactive")

        activated = await client.post(f"/api/keys/{key_id}/activate")
        assert activated.status_code == 200
        assert activated.json()["status"] == "active"
        assert activated.json()["consecutive_errors"] == 0

        deactivated = await client.post(f"/api/keys/{key_id}/deactivate")
        assert deactivated.json()["status"] == "inactive"

    @pytest.mark.asyncio
    async def test_reset_errors_and_quota(self, client: httpx.AsyncClient, make_key) -> None:
        key_id = await make_key("key-a", consecutive_errors=2, quota_used_today=500)

        reset = await client.post(f"/api/keys/{key_id}/reset-errors")
        assert reset.json()["consecutive_errors"] == 0

        response = await client.post("/api/keys/reset-quota")
        assert response.json() == {"keys_reset": 1}

    @pytest.mark.asyncio
    async def test_stats_for_unused_key(self, client: httpx.AsyncClient, make_key) -> None:
        key_id = await make_key("key-a")

        response = await client.get(f"/api/keys/{key_id}/stats")

        assert response.status_code == 200
        assert response.json()["units_used_24h"] == 0
        assert response.json()["requests_24h"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", ["activate", "deactivate", "reset-errors"])
    async def test_unknown_key_is_404(self, client: httpx.AsyncClient, action: str) -> None:
        response = await client.post(f"/api/keys/{uuid.uuid4()}/{action}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_key_stats_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"/api/keys/{uuid.uuid4()}/stats")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_update_renames_and_edits_description(self, client: httpx.AsyncClient, make_key) -> None:
        key_id = await make_key("key-a")
        await make_key("key-b")

        renamed = await client.patch(f"/api/keys/{key_id}", json={"name": "project-a", "description": "main"})
        assert renamed.status_code == 200
        assert renamed.json()["name"] == "project-a"
        assert renamed.json()["description"] == "main"

        clash = await client.patch(f"/api/keys/{key_id}", json={"name": "key-b"})
        assert clash.status_code == 409

        missing = await client.patch(f"/api/keys/{uuid.uuid4()}", json={"name": "x"})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    @respx.mock
    async def test_check_pooled_key(self, client: httpx.AsyncClient, make_key) -> None:
        key_id = await make_key("key-a")
        channels = respx.get(f"{YOUTUBE_API_BASE_URL}/channels").mock(
            return_value=httpx.Response(200, json={"items": [{"id": "UC_x5XG1OV2P6uZZ5FSM9Ttw"}]})
        )

        response = await client.post("/api/keys/test", json={"id": str(key_id)})

        assert response.status_code == 200
        assert response.json()["status"] == "valid"
        assert response.json()["valid"] is True
        assert channels.calls.last.request.url.params["key"] == "AIza-key-a-secret"

    @pytest.mark.asyncio
    @respx.mock
    async def test_check_new_key_over_quota(self, client: httpx.AsyncClient) -> None:
        respx.get(f"{YOUTUBE_API_BASE_URL}/channels").mock(
            return_value=httpx.Response(403, json={"error": {"errors": [{"reason": "quotaExceeded"}]}})
        )

        response = await client.post("/api/keys/test", json={"api_key": "AIzaSyEXAMPLE1234"})

        assert response.status_code == 200
        assert response.json()["status"] == "quota_exceeded"
        assert response.json()["valid"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [{}, {"api_key": "AIzaSyEXAMPLE1234", "id": "00000000-0000-0000-0000-000000000001"}],
    )
    async def test_check_needs_exactly_one_target(self, client: httpx.AsyncClient, payload: dict) -> None:
        response = await client.post("/api/keys/test", json=payload)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_check_unknown_pooled_key_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/keys/test", json={"id": str(uuid.uuid4())})
        assert response.status_code == 404


class TestHealth:
    @pytest.mark.asyncio
    async def test_reports_database_status(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["database"] == "ok"
        assert body["status"] in ("ok", "degraded")
