"""Tests for request ID middleware."""

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from throttle.app.core.logging import get_current_request_id
from throttle.app.middleware.request_id import RequestIdMiddleware, get_request_id


class TestRequestIdMiddleware:
    """Test RequestIdMiddleware."""

    @pytest.fixture
    def app(self):
        """Create test FastAPI app with middleware."""
        app = FastAPI()
        app.add_middleware(RequestIdMiddleware)

        @app.get("/test")
        async def test_endpoint(request: Request):
            return {
                "request_id": get_request_id(request),
                "log_request_id": get_current_request_id(),
            }

        return app

    @pytest.fixture
    def client(self, app):
        """Create test client."""
        return TestClient(app)

    def test_request_id_generation(self, client):
        """Test that request ID is generated."""
        response = client.get("/test")

        assert response.status_code == 200
        data = response.json()
        assert data["request_id"] != "unknown"
        assert len(data["request_id"]) > 0

    def test_request_id_from_header(self, client):
        """Test that request ID is extracted from header."""
        custom_id = "my-custom-request-id"
        response = client.get("/test", headers={"X-Request-ID": custom_id})

        assert response.json()["request_id"] == custom_id
        assert response.headers["X-Request-ID"] == custom_id

    def test_request_id_bound_for_logging(self, client):
        """Log records emitted while handling carry the request ID."""
        response = client.get("/test", headers={"X-Request-ID": "req-7"})
        assert response.json()["log_request_id"] == "req-7"

    def test_get_request_id_without_middleware(self):
        app = FastAPI()

        @app.get("/plain")
        async def plain(request: Request):
            return {"request_id": get_request_id(request)}

        response = TestClient(app).get("/plain")
        assert response.json()["request_id"] == "unknown"
