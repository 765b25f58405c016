"""Rate limiting middleware.

This package provides request throttling backed by a shared Redis store with
an in-process fallback. Supports fixed window, sliding window and token bucket
algorithms, selected per policy.
"""

from typing import Callable, Iterable, Optional, Union

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from throttle.app.core.config import settings
from throttle.app.core.logging import get_log_context, get_logger
# Re-export models
from throttle.app.middleware.rate_limit.models import (
    CallerContext,
    CounterState,
    Decision,
    RateLimitStrategy,
    WindowBucket,
)

# Re-export backends
from throttle.app.middleware.rate_limit.backends import (
    InMemoryStateStore,
    RedisStateStore,
    StateStore,
    StoreResult,
    TieredStateStore,
    build_state_store,
)

from throttle.app.middleware.rate_limit.admin import RateLimitAdmin, RateLimitStatus
from throttle.app.middleware.rate_limit.context import build_caller_context
from throttle.app.middleware.rate_limit.engine import Admission, RateLimiterEngine
from throttle.app.middleware.rate_limit.keys import (
    api_key_resolver,
    default_key_resolver,
    tenant_key_resolver,
)
from throttle.app.middleware.rate_limit.policies import (
    PathPolicySelector,
    Policy,
    PolicyRegistry,
    RolePolicySelector,
)
from throttle.app.middleware.rate_limit.strategies import (
    FixedWindowStrategy,
    SlidingWindowStrategy,
    TokenBucketStrategy,
    WindowStrategy,
    get_strategy,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "CallerContext",
    "CounterState",
    "Decision",
    "RateLimitStrategy",
    "WindowBucket",
    # Backends
    "StateStore",
    "StoreResult",
    "InMemoryStateStore",
    "RedisStateStore",
    "TieredStateStore",
    "build_state_store",
    # Strategies
    "WindowStrategy",
    "FixedWindowStrategy",
    "SlidingWindowStrategy",
    "TokenBucketStrategy",
    "get_strategy",
    # Policies and keys
    "Policy",
    "PolicyRegistry",
    "PathPolicySelector",
    "RolePolicySelector",
    "default_key_resolver",
    "api_key_resolver",
    "tenant_key_resolver",
    "build_caller_context",
    # Main classes
    "Admission",
    "RateLimiterEngine",
    "RateLimitAdmin",
    "RateLimitStatus",
    "RateLimitMiddleware",
]

PolicySelector = Callable[[CallerContext], Policy]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    The policy comes from, in order: an explicit selector, an explicit policy
    (instance or preset name), settings.rate_limit_default_policy, or the
    request path.
    """

    def __init__(
        self,
        app,
        engine: RateLimiterEngine,
        registry: Optional[PolicyRegistry] = None,
        policy: Union[Policy, str, None] = None,
        selector: Optional[PolicySelector] = None,
        exempt_paths: Optional[Iterable[str]] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        self.engine = engine
        self.registry = registry or PolicyRegistry()
        self.enabled = settings.rate_limit_enabled if enabled is None else enabled
        self.exempt_paths = frozenset(
            settings.rate_limit_exempt_paths if exempt_paths is None else exempt_paths
        )
        self.selector = selector or self._build_selector(policy)

    def _build_selector(self, policy: Union[Policy, str, None]) -> PolicySelector:
        if isinstance(policy, Policy):
            return lambda _: policy
        name = policy or settings.rate_limit_default_policy
        if name:
            fixed = self.registry.get(name)
            return lambda _: fixed
        return PathPolicySelector(self.registry)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self.enabled or request.url.path in self.exempt_paths:
            return await call_next(request)

        try:
            context = build_caller_context(request)
            policy = self.selector(context)
        except Exception as e:
            logger.exception(
                f"Rate limit setup failed, continuing without limit: {e}",
                extra=get_log_context(path=request.url.path, method=request.method),
            )
            return await call_next(request)

        return await self.engine.handle(policy, context, lambda: call_next(request))
