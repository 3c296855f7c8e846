"""
Tests for deliveryledger/main.py - app factory, middleware and lifespan.
"""
import asyncio
from unittest.mock import MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from deliveryledger.main import create_app, lifespan


def _make_mock_settings(**overrides):
    defaults = {
        "app_env": "test",
        "app_base_url": "http://localhost:8000",
        "log_level": "WARNING",
        "sentry_dsn": "",
        "require_webhook_signatures": False,
        "webhook_secret": "",
        "webhook_secret_meta": "",
        "webhook_secret_gupshup": "",
        "twilio_auth_token": "",
        "reconciliation_scheduler_enabled": False,
        "orphan_linker_enabled": False,
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


class TestCreateApp:
    def test_returns_fastapi_instance(self):
        with (
            patch("deliveryledger.main.get_settings", return_value=_make_mock_settings()),
            patch("deliveryledger.main.configure_structured_logging"),
        ):
            app = create_app()

        assert isinstance(app, FastAPI)
        assert app.title == "Delivery Ledger"

    def test_routes_registered(self):
        with (
            patch("deliveryledger.main.get_settings", return_value=_make_mock_settings()),
            patch("deliveryledger.main.configure_structured_logging"),
        ):
            app = create_app()

        paths = set(app.openapi()["paths"])
        assert "/api/v1/webhook/waba" in paths
        assert "/api/v1/webhook/{provider}" in paths
        assert "/api/v1/delivery/messages/{reference}/audit" in paths
        assert "/api/v1/delivery/export" in paths
        assert "/api/v1/reconciliation/run" in paths
        assert "/api/v1/reconciliation/anomalies/{anomaly_id}/resolve" in paths
        assert "/health/ready" in paths

    def test_correlation_id_echoed(self):
        with (
            patch("deliveryledger.main.get_settings", return_value=_make_mock_settings()),
            patch("deliveryledger.main.configure_structured_logging"),
        ):
            app = create_app()

        client = TestClient(app)
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "abc-123"

    def test_correlation_id_generated(self):
        with (
            patch("deliveryledger.main.get_settings", return_value=_make_mock_settings()),
            patch("deliveryledger.main.configure_structured_logging"),
        ):
            app = create_app()

        response = TestClient(app).get("/health")
        assert response.headers["X-Correlation-ID"]


class TestLifespan:
    async def test_startup_and_shutdown_without_scheduler(self):
        with (
            patch("deliveryledger.main.get_settings", return_value=_make_mock_settings()),
            patch("deliveryledger.main.close_redis") as mock_close_redis,
            patch("deliveryledger.main.dispose_engine") as mock_dispose,
        ):
            async with lifespan(MagicMock()):
                pass

        mock_close_redis.assert_awaited_once()
        mock_dispose.assert_awaited_once()

    async def test_scheduler_task_cancelled_on_shutdown(self):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def fake_scheduler():
            started.set()
            try:
                await asyncio.sleep(3600)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        settings = _make_mock_settings(reconciliation_scheduler_enabled=True)
        with (
            patch("deliveryledger.main.get_settings", return_value=settings),
            patch(
                "deliveryledger.workers.reconciliation_scheduler.run_reconciliation_scheduler",
                fake_scheduler,
            ),
            patch("deliveryledger.main.close_redis"),
            patch("deliveryledger.main.dispose_engine"),
        ):
            async with lifespan(MagicMock()):
                await asyncio.wait_for(started.wait(), timeout=1)

        assert cancelled.is_set()

    async def test_orphan_linker_started_when_enabled(self):
        started = asyncio.Event()

        async def fake_linker():
            started.set()
            await asyncio.sleep(3600)

        settings = _make_mock_settings(orphan_linker_enabled=True)
        with (
            patch("deliveryledger.main.get_settings", return_value=settings),
            patch("deliveryledger.workers.orphan_linker.run_orphan_linker", fake_linker),
            patch("deliveryledger.main.close_redis"),
            patch("deliveryledger.main.dispose_engine"),
        ):
            async with lifespan(MagicMock()):
                await asyncio.wait_for(started.wait(), timeout=1)

        assert started.is_set()
