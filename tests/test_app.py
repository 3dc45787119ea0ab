"""Tests for the application shell: health check, middleware and lifespan."""

import pytest
from fastapi.testclient import TestClient

from conftest import make_settings
from usersvc.app import create_app
from usersvc.service.runtime import Runtime
from usersvc.storage.memory import MemoryStore


class TestHealth:
    def test_healthz_reports_components(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["data"]["status"] == "healthy"
        assert body["data"]["checks"]["database"]["status"] == "healthy"
        assert body["data"]["checks"]["redis"]["status"] == "not_configured"

    def test_healthz_reports_store_outage(self, client, runtime, monkeypatch):
        def _down():
            raise OSError("disk gone")

        monkeypatch.setattr(runtime.store, "verify_connection", _down)
        response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["data"]["checks"]["database"]["status"] == "unhealthy"


class TestMiddleware:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/healthz").headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


class TestRuntime:
    def test_redis_required_outside_test_mode(self, tmp_path):
        settings = make_settings(tmp_path, test_mode=False, redis_url=None)
        with pytest.raises(RuntimeError):
            Runtime(settings, store=MemoryStore())

    def test_dev_fallback_allowed(self, tmp_path):
        settings = make_settings(
            tmp_path, test_mode=False, redis_url=None, allow_redis_fallback_dev=True
        )
        assert Runtime(settings, store=MemoryStore()).cache is None

    def test_memory_store_from_settings(self, tmp_path):
        runtime = Runtime(make_settings(tmp_path))
        assert isinstance(runtime.store, MemoryStore)
        assert runtime.store.fs_root == tmp_path

    def test_no_token_minting_route(self, client):
        paths = {getattr(route, "path", "") for route in client.app.routes}
        assert "/auth/login" in paths
        assert not any("generate-tokens" in path or "/test/" in path for path in paths)

    def test_lifespan_closes_runtime(self, tmp_path):
        runtime = Runtime(make_settings(tmp_path), store=MemoryStore())
        with TestClient(create_app(runtime=runtime)) as client:
            token = client.post(
                "/auth/register",
                json={"name": "Alice", "email": "alice@test.com", "password": "Secret123"},
            ).json()["data"]["accessToken"]
            client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
        assert not runtime.activity._pending
