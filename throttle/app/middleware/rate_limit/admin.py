"""Out-of-band operations on stored rate limit state."""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from throttle.app.core.logging import get_log_context, get_logger
from throttle.app.middleware.rate_limit.engine import RateLimiterEngine, format_epoch_ms
from throttle.app.middleware.rate_limit.policies import Policy
from throttle.app.middleware.rate_limit.strategies import get_strategy

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    """Monitoring view of one key under a policy."""
    key: str
    current: int
    limit: int
    remaining: int
    reset_time: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["reset_time_iso"] = format_epoch_ms(self.reset_time) if self.reset_time else None
        return data


class RateLimitAdmin:
    """Reset and inspect counters without going through a request."""

    def __init__(self, engine: RateLimiterEngine):
        self.engine = engine

    async def reset(self, key: str) -> bool:
        """Forget everything stored for a key.

        The remote delete is best-effort; the local delete always happens.
        Resetting a key that was never seen succeeds.

        Returns:
            False if the remote store could not be cleared
        """
        result = await self.engine.store.delete(key)
        if not result.ok:
            logger.error(
                f"Failed to reset rate limit in shared store: {result.error}",
                extra=get_log_context(rate_limit_key=key),
            )
            return False
        logger.info("Rate limit reset", extra=get_log_context(rate_limit_key=key))
        return True

    async def status(self, key: str, policy: Policy) -> RateLimitStatus:
        """Evaluate a key against a policy without recording a request."""
        now = self.engine.now_ms()
        state = await self.engine.load(key)
        decision, current = get_strategy(policy.strategy).evaluate(policy, state, now)
        return RateLimitStatus(
            key=key,
            current=current.count,
            limit=policy.max_requests,
            # The decision counts the hypothetical request; a status does not
            remaining=decision.remaining + 1 if decision.allowed else 0,
            reset_time=decision.reset_at,
        )

    async def list_active(self, policy: Policy) -> List[RateLimitStatus]:
        """Status of every stored key; empty when the store cannot be listed."""
        result = await self.engine.store.scan()
        if not result.ok:
            logger.error(f"Failed to list rate limits: {result.error}")
            return []

        statuses = []
        for key in result.value:
            try:
                statuses.append(await self.status(key, policy))
            except Exception as e:
                logger.exception(
                    f"Failed to read rate limit status: {e}",
                    extra=get_log_context(rate_limit_key=key),
                )
                statuses.append(
                    RateLimitStatus(key=key, current=0, limit=0, remaining=0, reset_time=0, error=str(e))
                )
        return statuses
