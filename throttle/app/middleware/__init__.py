"""Middleware package for the throttling service."""

from throttle.app.middleware.auth import get_bearer_token, require_admin
from throttle.app.middleware.rate_limit import RateLimitMiddleware, build_caller_context
from throttle.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "build_caller_context",
    "get_bearer_token",
    "require_admin",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
