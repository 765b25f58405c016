"""Counter state stores for the rate limiter.

Provides a pluggable store abstraction with a shared Redis implementation, an
in-process implementation and a tiered store combining the two. Store calls
never raise: every operation returns a StoreResult the caller branches on.
"""

import asyncio
import json
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import redis
import redis.asyncio as aioredis

from throttle.app.core.config import Settings, settings
from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.exceptions import StoreUnavailableError
from throttle.app.middleware.rate_limit.models import CounterState

logger = get_logger(__name__)

KEY_PREFIX = "ratelimit:"


def storage_key(key: str) -> str:
    """Namespace a resolved throttling key for storage."""
    return f"{KEY_PREFIX}{key}"


@dataclass(frozen=True)
class StoreResult:
    """Outcome of a store operation.

    Attributes:
        ok: Whether the store answered
        value: Operation payload (CounterState or None for get, key list for scan)
        error: Failure description when ok is False
    """
    ok: bool
    value: Any = None
    error: Optional[StoreUnavailableError] = None

    @classmethod
    def success(cls, value: Any = None) -> "StoreResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: StoreUnavailableError) -> "StoreResult":
        return cls(ok=False, error=error)


class StateStore(ABC):
    """Abstract base class for counter state stores."""

    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> StoreResult:
        """Load the state for a key.

        Args:
            key: Resolved throttling key (without storage prefix)

        Returns:
            StoreResult whose value is the CounterState, or None if absent
        """

    @abstractmethod
    async def put(self, key: str, state: CounterState, ttl_seconds: int) -> StoreResult:
        """Persist the state for a key.

        Args:
            key: Resolved throttling key
            state: State to store
            ttl_seconds: Time-to-live in seconds
        """

    @abstractmethod
    async def delete(self, key: str) -> StoreResult:
        """Remove the state for a key. Absent keys are not an error."""

    @abstractmethod
    async def scan(self) -> StoreResult:
        """List the resolved keys currently stored."""

    async def close(self) -> None:
        """Release any connections held by the store."""


class RedisStateStore(StateStore):
    """Redis-backed store shared by every instance of the service.

    State is stored as JSON under ``ratelimit:<key>`` with SETEX. Each call is
    bounded by a timeout; connection errors, timeouts and malformed payloads
    are reported as failed results.
    """

    name = "remote"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        """Initialize Redis store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL
            timeout_seconds: Per-call timeout
        """
        self._redis_url = redis_url or settings.redis_url
        self._redis = redis_client
        self._timeout = timeout_seconds or settings.redis_timeout_seconds

    async def _get_redis(self) -> Any:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _failure(self, operation: str, key: Optional[str], reason: str) -> StoreResult:
        return StoreResult.failure(
            StoreUnavailableError(self.name, operation, reason)
        )

    async def _execute(
        self,
        operation: str,
        key: Optional[str],
        command: Callable[[Any], Awaitable[Any]],
    ) -> StoreResult:
        """Run a Redis command under the timeout and map errors to results."""
        try:
            client = await self._get_redis()
            value = await asyncio.wait_for(command(client), timeout=self._timeout)
        except (asyncio.TimeoutError, redis.TimeoutError) as e:
            logger.warning(
                f"Redis {operation} timed out: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            return self._failure(operation, key, "timeout")
        except redis.ConnectionError as e:
            logger.warning(
                f"Redis connection failed during {operation}: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            return self._failure(operation, key, "connection_error")
        except redis.RedisError as e:
            logger.warning(
                f"Redis error during {operation}: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            return self._failure(operation, key, "redis_error")
        except Exception as e:
            logger.exception(
                f"Unexpected Redis store error during {operation}: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            return self._failure(operation, key, "unexpected")
        return StoreResult.success(value)

    async def get(self, key: str) -> StoreResult:
        result = await self._execute("get", key, lambda c: c.get(storage_key(key)))
        if not result.ok or result.value is None:
            return result
        try:
            state = CounterState.from_payload(json.loads(result.value))
        except ValueError as e:
            logger.warning(
                f"Discarding malformed rate limit payload: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.name),
            )
            return self._failure("get", key, "malformed_payload")
        return StoreResult.success(state)

    async def put(self, key: str, state: CounterState, ttl_seconds: int) -> StoreResult:
        payload = json.dumps(state.to_payload())
        return await self._execute(
            "put", key, lambda c: c.setex(storage_key(key), ttl_seconds, payload)
        )

    async def delete(self, key: str) -> StoreResult:
        return await self._execute("delete", key, lambda c: c.delete(storage_key(key)))

    async def scan(self) -> StoreResult:
        async def _collect(client: Any) -> List[str]:
            keys = []
            async for raw in client.scan_iter(match=f"{KEY_PREFIX}*"):
                name = raw.decode() if isinstance(raw, bytes) else str(raw)
                keys.append(name[len(KEY_PREFIX):])
            return keys

        return await self._execute("scan", None, _collect)

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            # Use aclose() for proper async cleanup in redis-py 5.0+
            await self._redis.aclose()
            self._redis = None


class InMemoryStateStore(StateStore):
    """Process-local store.

    Not shared across instances. Memory is bounded without a background task:
    roughly one read in a hundred sweeps entries whose reset_at has passed.
    Read-modify-write cycles are not synchronized; races are accepted.
    """

    name = "local"

    def __init__(
        self,
        sweep_probability: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the local store.

        Args:
            sweep_probability: Chance a read triggers a sweep (defaults to settings)
            clock: Time source returning UNIX time in seconds
            rng: Random source returning floats in [0, 1)
        """
        if sweep_probability is None:
            sweep_probability = settings.rate_limit_local_sweep_probability
        self._sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng
        self._data: Dict[str, CounterState] = {}

    def __len__(self) -> int:
        return len(self._data)

    def sweep(self) -> int:
        """Remove entries whose reset_at has passed.

        Returns:
            Number of entries removed.
        """
        now_ms = int(self._clock() * 1000)
        expired = [k for k, state in self._data.items() if state.reset_at <= now_ms]
        for k in expired:
            del self._data[k]
        if expired:
            logger.debug(f"Swept {len(expired)} expired local rate limit entries")
        return len(expired)

    async def get(self, key: str) -> StoreResult:
        if self._rng() < self._sweep_probability:
            self.sweep()
        return StoreResult.success(self._data.get(storage_key(key)))

    async def put(self, key: str, state: CounterState, ttl_seconds: int) -> StoreResult:
        self._data[storage_key(key)] = state
        return StoreResult.success()

    async def delete(self, key: str) -> StoreResult:
        self._data.pop(storage_key(key), None)
        return StoreResult.success()

    async def scan(self) -> StoreResult:
        return StoreResult.success([k[len(KEY_PREFIX):] for k in self._data])


class TieredStateStore(StateStore):
    """Remote store first, local store on any failure.

    Availability wins over consistency: when Redis is slow, down or not
    configured at all, counters silently continue in process memory. A key
    whose last write only reached the local store is read locally until a
    remote write succeeds again, so a remote that still answers reads but
    rejects writes (OOM, read-only replica) cannot hide the local counters.
    """

    name = "tiered"

    def __init__(self, local: InMemoryStateStore, remote: Optional[StateStore] = None):
        self.local = local
        self.remote = remote
        # Keys whose latest state lives only in the local store
        self._local_only: Set[str] = set()

    def _log_fallback(self, result: StoreResult, key: Optional[str]) -> None:
        logger.warning(
            f"Falling back to local rate limit store: {result.error}",
            extra=get_log_context(rate_limit_key=key, store=self.local.name),
        )

    async def _call_remote(
        self,
        operation: str,
        key: Optional[str],
        command: Callable[[StateStore], Awaitable[StoreResult]],
    ) -> StoreResult:
        """Run a remote call, turning anything it raises into a failed result."""
        try:
            return await command(self.remote)
        except Exception as e:
            logger.exception(
                f"Remote rate limit store raised during {operation}: {e}",
                extra=get_log_context(rate_limit_key=key, store=self.remote.name),
            )
            return StoreResult.failure(
                StoreUnavailableError(self.remote.name, operation, "unexpected")
            )

    async def get(self, key: str) -> StoreResult:
        if key in self._local_only:
            result = await self.local.get(key)
            if result.value is not None:
                return result
            # Swept locally; the remote copy is authoritative again
            self._local_only.discard(key)
        if self.remote is not None:
            result = await self._call_remote("get", key, lambda r: r.get(key))
            if result.ok:
                return result
            self._log_fallback(result, key)
        return await self.local.get(key)

    async def put(self, key: str, state: CounterState, ttl_seconds: int) -> StoreResult:
        if self.remote is not None:
            result = await self._call_remote(
                "put", key, lambda r: r.put(key, state, ttl_seconds)
            )
            if result.ok:
                self._local_only.discard(key)
                return result
            self._log_fallback(result, key)
            self._local_only.add(key)
        return await self.local.put(key, state, ttl_seconds)

    async def delete(self, key: str) -> StoreResult:
        """Delete from both tiers; the local delete always happens."""
        remote_result = StoreResult.success()
        if self.remote is not None:
            remote_result = await self._call_remote("delete", key, lambda r: r.delete(key))
        self._local_only.discard(key)
        local_result = await self.local.delete(key)
        return remote_result if not remote_result.ok else local_result

    async def scan(self) -> StoreResult:
        if self.remote is not None:
            result = await self._call_remote("scan", None, lambda r: r.scan())
            if result.ok:
                return result
            self._log_fallback(result, None)
        return await self.local.scan()

    async def close(self) -> None:
        if self.remote is not None:
            await self.remote.close()


def build_state_store(
    config: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> TieredStateStore:
    """Build the process-wide state store from settings.

    Called once at startup; the instance is passed by reference to the engine
    and admin operations.
    """
    cfg = config or settings
    local = InMemoryStateStore(
        sweep_probability=cfg.rate_limit_local_sweep_probability,
        clock=clock,
    )
    remote: Optional[StateStore] = None
    if cfg.redis_enabled:
        remote = RedisStateStore(
            redis_url=cfg.redis_url,
            timeout_seconds=cfg.redis_timeout_seconds,
        )
        logger.info("Using Redis rate limit store with local fallback")
    else:
        logger.debug("Redis disabled; using local rate limit store only")
    return TieredStateStore(local=local, remote=remote)
