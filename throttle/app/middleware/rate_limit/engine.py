"""Rate limiter engine.

Orchestrates resolve -> load -> evaluate -> persist -> decide for one
request. The engine fails open: a throttling bug or a store outage must never
block the protected service.
"""

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from starlette.responses import JSONResponse, Response

from throttle.app.core.config import settings
from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.middleware.rate_limit.backends import StateStore
from throttle.app.middleware.rate_limit.models import CallerContext, CounterState, Decision
from throttle.app.middleware.rate_limit.policies import Policy
from throttle.app.middleware.rate_limit.strategies import get_strategy

logger = get_logger(__name__)

CallNext = Callable[[], Awaitable[Response]]


def format_epoch_ms(epoch_ms: int) -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Admission:
    """A decision together with what is needed to render and settle it."""
    policy: Policy
    key: str
    decision: Decision
    now: int

    @property
    def retry_after(self) -> int:
        """Seconds until the decision's reset time."""
        return max(0, math.ceil((self.decision.reset_at - self.now) / 1000))

    def headers(self) -> Dict[str, str]:
        """Rate limit response headers, empty when the policy disables them."""
        if not self.policy.emit_headers:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.policy.max_requests),
            "X-RateLimit-Remaining": str(self.decision.remaining if self.decision.allowed else 0),
            "X-RateLimit-Reset": str(self.decision.reset_at),
        }
        if not self.decision.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def denial_body(self) -> Dict[str, Any]:
        """JSON body returned when the request is throttled."""
        return {
            "success": False,
            "error": "RATE_LIMIT_EXCEEDED",
            "message": self.policy.message,
            "details": {
                "limit": self.policy.max_requests,
                "window": self.policy.window_ms,
                "resetTime": format_epoch_ms(self.decision.reset_at),
            },
        }


class RateLimiterEngine:
    """Applies policies to callers using a shared state store.

    Counters are read, evaluated and written back without atomicity, so
    concurrent requests on one key can be over-admitted (last write wins).
    """

    def __init__(
        self,
        store: StateStore,
        clock: Callable[[], float] = time.time,
        min_ttl_seconds: Optional[int] = None,
    ):
        """Initialize the engine.

        Args:
            store: State store, constructed once per process
            clock: Time source returning UNIX time in seconds
            min_ttl_seconds: Lower bound for persisted TTLs (defaults to settings)
        """
        self.store = store
        self._clock = clock
        self._min_ttl = min_ttl_seconds or settings.rate_limit_min_ttl_seconds

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _ttl_seconds(self, state: CounterState, now: int) -> int:
        return max(self._min_ttl, math.ceil((state.reset_at - now) / 1000))

    async def load(self, key: str) -> CounterState:
        """Load the state for a key, zero state when absent or unreadable."""
        result = await self.store.get(key)
        if not result.ok:
            logger.warning(
                f"Rate limit state unavailable: {result.error}",
                extra=get_log_context(rate_limit_key=key),
            )
            return CounterState()
        return result.value or CounterState()

    async def save(self, key: str, state: CounterState, now: int) -> bool:
        result = await self.store.put(key, state, self._ttl_seconds(state, now))
        if not result.ok:
            logger.warning(
                f"Failed to persist rate limit state: {result.error}",
                extra=get_log_context(rate_limit_key=key),
            )
        return result.ok

    async def check(self, policy: Policy, context: CallerContext) -> Admission:
        """Evaluate and record one request.

        Allowed requests are always recorded; denied ones unless the policy
        sets skip_failed.
        """
        now = self.now_ms()
        key = policy.key_resolver(context)
        strategy = get_strategy(policy.strategy)

        state = await self.load(key)
        decision, current = strategy.evaluate(policy, state, now)

        if decision.allowed or not policy.skip_failed:
            await self.save(key, strategy.consume(policy, current, now), now)

        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    rate_limit_key=key,
                    policy=policy.name,
                    strategy=policy.strategy.value,
                    path=context.path,
                    method=context.method,
                ),
            )
        return Admission(policy=policy, key=key, decision=decision, now=now)

    async def settle(self, admission: Admission, status_code: int) -> None:
        """Give back an admitted request that should not count.

        Only applies to policies with skip_successful and responses below
        400. This is a best-effort read-modify-write: a concurrent update on
        the same key can be lost, and errors are logged, never raised.
        """
        policy = admission.policy
        if not (admission.decision.allowed and policy.skip_successful and status_code < 400):
            return
        try:
            now = self.now_ms()
            strategy = get_strategy(policy.strategy)
            state = await self.load(admission.key)
            await self.save(admission.key, strategy.release(policy, state, now), now)
        except Exception as e:
            logger.exception(
                f"Failed to release successful request: {e}",
                extra=get_log_context(rate_limit_key=admission.key, policy=policy.name),
            )

    async def handle(
        self,
        policy: Policy,
        context: CallerContext,
        call_next: CallNext,
    ) -> Response:
        """Throttle one request around the downstream handler.

        Args:
            policy: Policy to enforce
            context: Caller context from the HTTP layer
            call_next: Invokes the protected handler

        Returns:
            The downstream response, or the denial response when throttled.
            Errors raised by the handler itself propagate unchanged.
        """
        try:
            if policy.skip_predicate is not None and policy.skip_predicate(context):
                admission = None
            else:
                admission = await self.check(policy, context)
                headers = admission.headers()
        except Exception as e:
            logger.exception(
                f"Rate limiting error, continuing without limit: {e}",
                extra=get_log_context(policy=policy.name, path=context.path, method=context.method),
            )
            return await call_next()

        if admission is None:
            return await call_next()

        if not admission.decision.allowed:
            return JSONResponse(
                admission.denial_body(),
                status_code=policy.status_code,
                headers=headers,
            )

        response = await call_next()
        response.headers.update(headers)
        await self.settle(admission, response.status_code)
        return response
