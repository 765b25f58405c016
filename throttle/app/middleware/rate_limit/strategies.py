"""Window strategies for the rate limiter.

Each strategy is a set of pure functions over CounterState: evaluating a
request never mutates the stored state, and recording or compensating a
request returns a new state. All timestamps are epoch milliseconds.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import TYPE_CHECKING, Dict, Tuple

from throttle.app.exceptions import ConfigurationError
from throttle.app.middleware.rate_limit.models import (
    CounterState,
    Decision,
    RateLimitStrategy,
    WindowBucket,
)

if TYPE_CHECKING:
    from throttle.app.middleware.rate_limit.policies import Policy


def _remaining(policy: "Policy", used: int, allowed: bool) -> int:
    return max(0, policy.max_requests - used - (1 if allowed else 0))


class WindowStrategy(ABC):
    """Abstract base class for window algorithms."""

    @abstractmethod
    def evaluate(
        self, policy: "Policy", state: CounterState, now: int
    ) -> Tuple[Decision, CounterState]:
        """Decide whether a request is allowed.

        Args:
            policy: Policy being enforced
            state: Stored state for the key (zero state if absent)
            now: Current time in epoch ms

        Returns:
            The decision and the state brought up to date with now
            (rolled over, expired buckets dropped, tokens refilled).
        """

    @abstractmethod
    def consume(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        """Return the state with one more request recorded."""

    @abstractmethod
    def release(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        """Return the state with one recorded request given back."""


class FixedWindowStrategy(WindowStrategy):
    """Counter per window aligned to multiples of the window duration.

    Rollover is lazy: a stored reset_at that differs from the current
    window's means the window advanced, so the count restarts at zero.
    Concurrent requests reading the same stale count may both be admitted.
    """

    def _reset_at(self, policy: "Policy", now: int) -> int:
        window_start = (now // policy.window_ms) * policy.window_ms
        return window_start + policy.window_ms

    def _current(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        reset_at = self._reset_at(policy, now)
        if state.reset_at != reset_at:
            return CounterState(count=0, reset_at=reset_at)
        return state

    def evaluate(
        self, policy: "Policy", state: CounterState, now: int
    ) -> Tuple[Decision, CounterState]:
        current = self._current(policy, state, now)
        allowed = current.count < policy.max_requests
        decision = Decision(
            allowed=allowed,
            remaining=_remaining(policy, current.count, allowed),
            reset_at=current.reset_at,
        )
        return decision, current

    def consume(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        current = self._current(policy, state, now)
        return replace(current, count=current.count + 1)

    def release(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        current = self._current(policy, state, now)
        return replace(current, count=max(0, current.count - 1))


class SlidingWindowStrategy(WindowStrategy):
    """Sum of sub-window buckets over the trailing window.

    Smooths the burst a fixed window allows at its boundary. The window is
    split into policy.sub_windows buckets; a bucket stops counting once its
    start is a full window in the past.
    """

    def _bucket_width(self, policy: "Policy") -> int:
        return max(1, policy.window_ms // policy.sub_windows)

    def _live(self, policy: "Policy", state: CounterState, now: int) -> Tuple[WindowBucket, ...]:
        horizon = now - policy.window_ms
        return tuple(b for b in state.buckets if b.timestamp > horizon and b.count > 0)

    def _state(self, policy: "Policy", buckets: Tuple[WindowBucket, ...]) -> CounterState:
        reset_at = buckets[-1].timestamp + policy.window_ms if buckets else 0
        return CounterState(
            count=sum(b.count for b in buckets),
            reset_at=reset_at,
            buckets=buckets,
        )

    def evaluate(
        self, policy: "Policy", state: CounterState, now: int
    ) -> Tuple[Decision, CounterState]:
        buckets = self._live(policy, state, now)
        current = self._state(policy, buckets)
        allowed = current.count < policy.max_requests
        # Capacity frees up when the oldest live bucket leaves the window
        reset_at = buckets[0].timestamp + policy.window_ms if buckets else now + policy.window_ms
        decision = Decision(
            allowed=allowed,
            remaining=_remaining(policy, current.count, allowed),
            reset_at=reset_at,
        )
        return decision, current

    def consume(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        buckets = list(self._live(policy, state, now))
        width = self._bucket_width(policy)
        bucket_start = (now // width) * width
        if buckets and buckets[-1].timestamp == bucket_start:
            buckets[-1] = replace(buckets[-1], count=buckets[-1].count + 1)
        else:
            buckets.append(WindowBucket(timestamp=bucket_start, count=1))
        return self._state(policy, tuple(buckets))

    def release(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        buckets = list(self._live(policy, state, now))
        if buckets:
            newest = buckets.pop()
            if newest.count > 1:
                buckets.append(replace(newest, count=newest.count - 1))
        return self._state(policy, tuple(buckets))


class TokenBucketStrategy(WindowStrategy):
    """Bucket of max_requests tokens refilled continuously over the window.

    tokens = min(capacity, tokens + elapsed * refill_rate); a request is
    allowed while at least one whole token is available.
    """

    def _refilled(self, policy: "Policy", state: CounterState, now: int) -> float:
        capacity = float(policy.max_requests)
        if state.tokens is None or state.last_refill is None:
            return capacity
        elapsed = max(0, now - state.last_refill)
        return min(capacity, state.tokens + elapsed * policy.max_requests / policy.window_ms)

    def _ms_until(self, policy: "Policy", tokens_needed: float) -> int:
        if tokens_needed <= 0:
            return 0
        return math.ceil(tokens_needed * policy.window_ms / policy.max_requests)

    def _state(self, policy: "Policy", count: int, tokens: float, now: int) -> CounterState:
        # Fresh-equivalent once the bucket is full again
        full_at = now + self._ms_until(policy, policy.max_requests - tokens)
        return CounterState(
            count=count,
            reset_at=max(full_at, now + 1),
            tokens=tokens,
            last_refill=now,
        )

    def evaluate(
        self, policy: "Policy", state: CounterState, now: int
    ) -> Tuple[Decision, CounterState]:
        tokens = self._refilled(policy, state, now)
        allowed = tokens >= 1
        if allowed:
            remaining = int(math.floor(tokens - 1))
            reset_at = now + self._ms_until(policy, policy.max_requests - (tokens - 1))
        else:
            remaining = 0
            reset_at = now + self._ms_until(policy, 1 - tokens)
        decision = Decision(allowed=allowed, remaining=max(0, remaining), reset_at=reset_at)
        return decision, self._state(policy, state.count, tokens, now)

    def consume(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        tokens = max(0.0, self._refilled(policy, state, now) - 1)
        return self._state(policy, state.count + 1, tokens, now)

    def release(self, policy: "Policy", state: CounterState, now: int) -> CounterState:
        tokens = min(float(policy.max_requests), self._refilled(policy, state, now) + 1)
        return self._state(policy, max(0, state.count - 1), tokens, now)


_STRATEGIES: Dict[RateLimitStrategy, WindowStrategy] = {
    RateLimitStrategy.FIXED_WINDOW: FixedWindowStrategy(),
    RateLimitStrategy.SLIDING_WINDOW: SlidingWindowStrategy(),
    RateLimitStrategy.TOKEN_BUCKET: TokenBucketStrategy(),
}


def get_strategy(strategy: RateLimitStrategy) -> WindowStrategy:
    """Return the implementation for a strategy enum value.

    Raises:
        ConfigurationError: If the strategy has no implementation
    """
    try:
        return _STRATEGIES[RateLimitStrategy(strategy)]
    except (KeyError, ValueError):
        raise ConfigurationError(f"Unsupported rate limit strategy: {strategy!r}", field="strategy")
