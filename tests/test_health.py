from unittest.mock import AsyncMock

import pytest
import redis
from fastapi.testclient import TestClient

from throttle.app.core.config import settings
from throttle.app.main import create_app
from throttle.app.middleware.rate_limit import RedisStateStore, TieredStateStore


def test_health_local_store(store):
    with TestClient(create_app(store=store)) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["store"] == {"status": "ok", "type": "memory"}
    # Health checks are never throttled
    assert "X-RateLimit-Limit" not in resp.headers
    assert "X-Request-ID" in resp.headers


def test_health_degraded_when_redis_is_down(local_store):
    redis_client = AsyncMock()
    redis_client.get.side_effect = redis.ConnectionError("refused")
    store = TieredStateStore(local=local_store, remote=RedisStateStore(redis_client=redis_client))

    with TestClient(create_app(store=store)) as client:
        data = client.get("/health").json()

    assert data["status"] == "degraded"
    assert data["components"]["store"]["error"] == "connection_error"
    redis_client.aclose.assert_awaited_once()


def test_requests_are_throttled_by_path(store):
    with TestClient(create_app(store=store)) as client:
        resp = client.get("/public/anything")

    assert resp.headers["X-RateLimit-Limit"] == "20"
    assert resp.headers["X-RateLimit-Remaining"] == "19"


@pytest.mark.parametrize(
    ("debug", "message"),
    [
        (False, "Internal server error"),
        (True, "ledger out of sync"),
    ],
)
def test_unhandled_errors_respect_debug(store, monkeypatch, debug, message):
    monkeypatch.setattr(settings, "debug", debug)
    app = create_app(store=store)

    @app.get("/explode")
    async def explode():
        raise RuntimeError("ledger out of sync")

    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.get("/explode", headers={"X-Request-ID": "req-500"})

    assert resp.status_code == 500
    data = resp.json()
    assert data["error"] == "internal_error"
    assert data["message"] == message
    assert data["request_id"] == "req-500"
    assert ("exception_type" in data) is debug
    assert "Traceback" not in resp.text
