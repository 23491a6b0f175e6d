"""Tests for the health and monitor routes."""

from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from playwright.async_api import Error as PlaywrightError

from pagewatch.api.routes import health, monitors
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.utils.clock import utcnow
from pagewatch.worker.pipeline import CheckPipeline
from pagewatch.worker.tasks import CheckScheduler

from conftest import FakeLauncher


def build_app(repository, pool, pipeline) -> FastAPI:
    app = FastAPI()
    app.include_router(health.router)
    app.include_router(monitors.router)
    app.state.repository = repository
    app.state.pool = pool
    app.state.pipeline = pipeline
    app.state.check_scheduler = CheckScheduler(repository=repository, pipeline=pipeline, pool=pool)
    return app


@pytest.fixture
def app(repository, pool, pipeline):
    return build_app(repository, pool, pipeline)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestDeepHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        response = await client.get("/api/health/deep")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] is True
        assert body["pool"]["total"] == 2
        assert body["pool"]["reset_triggered"] is False
        assert body["scheduler"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_unhealthy_pool_is_reset(self, client, pool, launcher):
        for _ in range(3):
            pool.record_failure("boom")

        response = await client.get("/api/health/deep")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["pool"]["healthy"] is False
        assert body["pool"]["reset_triggered"] is True
        assert pool.stats().healthy is True
        assert launcher.launches == 1

    @pytest.mark.asyncio
    async def test_stale_scheduler(self, client, app):
        check_scheduler = app.state.check_scheduler
        check_scheduler.started_at = utcnow() - timedelta(hours=1)
        check_scheduler.due_count = 2

        response = await client.get("/api/health/deep")

        assert response.status_code == 503
        assert response.json()["scheduler"]["due_targets"] == 2


class TestMonitorRoutes:
    @pytest.mark.asyncio
    async def test_check_unknown_monitor(self, client):
        response = await client.post("/api/monitors/9999/check")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_check_monitor(self, client, make_target, site):
        site.body_text = "hello"
        target = await make_target()

        response = await client.post(f"/api/monitors/{target.id}/check")

        assert response.status_code == 200
        body = response.json()
        assert body["monitor_id"] == target.id
        assert body["status"] == "unchanged"
        assert body["value"] == "hello"

    @pytest.mark.asyncio
    async def test_list_due(self, client, make_target):
        target = await make_target(name="Headphones")

        response = await client.get("/api/monitors/due")

        assert response.status_code == 200
        assert response.json() == [
            {"id": target.id, "name": "Headphones", "mode": "text", "due": True, "next_check_at": None}
        ]

    @pytest.mark.asyncio
    async def test_preview(self, client, site):
        site.elements["h1"] = "Product title"

        response = await client.post(
            "/api/monitors/preview", json={"url": "https://example.com", "selector": "h1"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "url": "https://example.com",
            "selector": "h1",
            "count": 1,
            "text": "Product title",
        }

    @pytest.mark.asyncio
    async def test_preview_navigation_error(self, client, site):
        site.goto_error = PlaywrightError("net::ERR_CONNECTION_REFUSED")

        response = await client.post(
            "/api/monitors/preview", json={"url": "https://example.com", "selector": "h1"}
        )

        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_preview_without_browser(self, repository, store):
        broken_pool = SessionPool(max_sessions=1, launcher=FakeLauncher(fail=True))
        pipeline = CheckPipeline(broken_pool, repository, store, settle_ms=0)
        app = build_app(repository, broken_pool, pipeline)

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as ac:
            response = await ac.post(
                "/api/monitors/preview", json={"url": "https://example.com", "selector": "h1"}
            )

        assert response.status_code == 503
