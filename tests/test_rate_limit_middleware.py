"""Tests for the rate limiting middleware."""

from typing import Optional

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware

from throttle.app.middleware.rate_limit import (
    Policy,
    PolicyRegistry,
    RateLimitMiddleware,
    RolePolicySelector,
    build_caller_context,
)


class FakeAuthMiddleware(BaseHTTPMiddleware):
    """Stands in for the authentication layer: trusts X-User-Id/X-User-Role."""

    async def dispatch(self, request: Request, call_next):
        user_id = request.headers.get("X-User-Id")
        if user_id:
            request.state.user = {"id": user_id, "role": request.headers.get("X-User-Role")}
        return await call_next(request)


def build_app(engine, policy=None, selector=None, registry: Optional[PolicyRegistry] = None,
              exempt_paths=None, enabled=True) -> FastAPI:
    app = FastAPI()

    @app.get("/items")
    async def items():
        return {"items": []}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("handler failed")

    @app.get("/auth/login")
    async def login():
        return {"token": "x"}

    app.add_middleware(
        RateLimitMiddleware,
        engine=engine,
        registry=registry,
        policy=policy,
        selector=selector,
        exempt_paths=exempt_paths,
        enabled=enabled,
    )
    app.add_middleware(FakeAuthMiddleware)
    return app


class TestRateLimitMiddleware:
    """End-to-end throttling through the HTTP layer."""

    def test_headers_and_denial(self, engine):
        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=2))
        client = TestClient(app)

        first = client.get("/items")
        second = client.get("/items")
        third = client.get("/items")

        assert first.status_code == 200
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert third.status_code == 429
        assert third.headers["Retry-After"] == "60"
        assert third.json()["error"] == "RATE_LIMIT_EXCEEDED"

    def test_users_are_limited_separately(self, engine):
        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=1))
        client = TestClient(app)

        assert client.get("/items", headers={"X-User-Id": "1"}).status_code == 200
        assert client.get("/items", headers={"X-User-Id": "1"}).status_code == 429
        assert client.get("/items", headers={"X-User-Id": "2"}).status_code == 200

    def test_forwarded_address_is_used(self, engine):
        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=1))
        client = TestClient(app)

        client.get("/items", headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

        assert client.get("/items", headers={"X-Forwarded-For": "203.0.113.9"}).status_code == 429
        assert client.get("/items", headers={"X-Forwarded-For": "203.0.113.10"}).status_code == 200

    def test_preset_by_name(self, engine):
        app = build_app(engine, policy="auth")
        client = TestClient(app)

        for _ in range(5):
            assert client.get("/items").status_code == 200
        response = client.get("/items")
        assert response.status_code == 429
        assert response.json()["message"] == "Too many login attempts. Please try again later."

    def test_path_selection(self, engine):
        app = build_app(engine)
        client = TestClient(app)

        assert client.get("/auth/login").headers["X-RateLimit-Limit"] == "5"
        assert client.get("/items").headers["X-RateLimit-Limit"] == "10000"

    def test_privileged_callers_bypass_api_limit(self, engine):
        app = build_app(engine, policy="api")
        client = TestClient(app)

        response = client.get("/items", headers={"X-User-Id": "1", "X-User-Role": "admin"})

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    def test_role_selector(self, engine):
        registry = PolicyRegistry()
        selector = RolePolicySelector(registry, {"guest": "public", "member": "api"})
        app = build_app(engine, registry=registry, selector=selector)
        client = TestClient(app)

        guest = client.get("/items")
        member = client.get("/items", headers={"X-User-Id": "1", "X-User-Role": "member"})

        assert guest.headers["X-RateLimit-Limit"] == "20"
        assert member.headers["X-RateLimit-Limit"] == "10000"

    def test_exempt_paths(self, engine):
        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=1),
                        exempt_paths=["/health"])
        client = TestClient(app)

        for _ in range(3):
            response = client.get("/health")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_disabled(self, engine):
        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=1),
                        enabled=False)
        client = TestClient(app)

        for _ in range(3):
            assert client.get("/items").status_code == 200

    def test_selector_errors_fail_open(self, engine):
        def broken_selector(context):
            raise LookupError("no policy")

        app = build_app(engine, selector=broken_selector)
        client = TestClient(app)

        assert client.get("/items").status_code == 200

    def test_unreadable_caller_fails_open(self, engine):
        class BrokenUser:
            @property
            def id(self):
                raise RuntimeError("session expired mid-request")

        app = build_app(engine, policy=Policy(name="tiny", window_ms=60_000, max_requests=1))

        @app.middleware("http")
        async def attach_broken_user(request: Request, call_next):
            request.state.user = BrokenUser()
            return await call_next(request)

        client = TestClient(app)

        for _ in range(3):
            response = client.get("/items")
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

    def test_handler_errors_are_not_swallowed(self, engine):
        app = build_app(engine, policy="api")
        client = TestClient(app)

        with pytest.raises(RuntimeError):
            client.get("/boom")


class TestBuildCallerContext:
    """Tests for reading the caller from the request."""

    def test_context_from_request(self):
        app = FastAPI()
        captured = {}

        @app.get("/things")
        async def things(request: Request):
            request.state.user = {"id": 9, "role": "member", "tenant_id": "acme"}
            captured["context"] = build_caller_context(request, address_headers=["X-Real-IP"])
            return {}

        TestClient(app).get(
            "/things",
            headers={"X-Real-IP": "192.0.2.1", "Authorization": "Bearer sk-key"},
        )

        context = captured["context"]
        assert context.identity == "9"
        assert context.role == "member"
        assert context.tenant_id == "acme"
        assert context.api_key == "sk-key"
        assert context.address_candidates == ("192.0.2.1", "testclient")
        assert context.path == "/things"
        assert context.method == "GET"

    def test_anonymous_request(self):
        app = FastAPI()
        captured = {}

        @app.post("/things")
        async def things(request: Request):
            captured["context"] = build_caller_context(request, address_headers=[])
            return {}

        TestClient(app).post("/things", headers={"Authorization": "Bearer " + "k" * 600})

        context = captured["context"]
        assert context.identity is None
        assert context.api_key is None
        assert context.method == "POST"
