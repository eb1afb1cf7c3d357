"""
Tests for health check endpoints.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from fastapi import FastAPI
from fastapi.testclient import TestClient

from identity_cache import main
from identity_cache.routes import health
from identity_cache.services.engine import IdentityCacheEngine
from tests.fakes import FakeDirectoryStore

HEALTHY_POOL = {
    "healthy": True,
    "pool_stats": {"pool_size": 4, "pool_available": 3, "pool_utilization_percent": 25.0},
    "warnings": [],
}


def _client(engine=None):
    app = FastAPI()
    app.include_router(health.router)
    app.state.engine = engine
    return TestClient(app)


def _started_engine():
    engine = IdentityCacheEngine(FakeDirectoryStore())
    asyncio.run(engine.start(run_startup_sequence=False))
    return engine


def test_healthz_endpoint():
    response = _client().get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_readyz_all_services_healthy(monkeypatch):
    monkeypatch.setattr(health, "db_health_check", AsyncMock(return_value=HEALTHY_POOL))

    response = _client(_started_engine()).get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["ok"] is True
    assert data["checks"]["database"]["pool_size"] == 4
    assert data["checks"]["directory_store"]["ok"] is True
    assert data["checks"]["configuration"]["ok"] is True


def test_readyz_database_unhealthy(monkeypatch):
    monkeypatch.setattr(
        health,
        "db_health_check",
        AsyncMock(return_value={"healthy": False, "error": "Pool not initialized"}),
    )

    data = _client(_started_engine()).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "Pool not initialized"


def test_readyz_database_check_raises(monkeypatch):
    monkeypatch.setattr(health, "db_health_check", AsyncMock(side_effect=RuntimeError("down")))

    data = _client(_started_engine()).get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["database"]["error"] == "RuntimeError: down"


def test_readyz_without_engine(monkeypatch):
    monkeypatch.setattr(health, "db_health_check", AsyncMock(return_value=HEALTHY_POOL))

    data = _client().get("/readyz").json()

    assert data["overall_ok"] is False
    assert data["checks"]["directory_store"]["ok"] is False


def test_readyz_logs_database_check(monkeypatch):
    monkeypatch.setattr(
        health,
        "db_health_check",
        AsyncMock(return_value={"healthy": False, "error": "Pool not initialized"}),
    )
    log_health_check = MagicMock()
    monkeypatch.setattr(health, "log_health_check", log_health_check)

    _client(_started_engine()).get("/readyz")

    service, healthy, _latency, error = log_health_check.call_args.args
    assert (service, healthy, error) == ("database", False, "Pool not initialized")


def test_requests_are_logged_by_middleware(monkeypatch):
    log_request = MagicMock()
    monkeypatch.setattr(main, "log_request", log_request)

    response = TestClient(main.app).get("/healthz")

    assert response.status_code == 200
    method, path, status_code, _duration = log_request.call_args.args
    assert (method, path, status_code) == ("GET", "/healthz", 200)
