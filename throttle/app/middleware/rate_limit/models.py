"""Rate limiting data models.

This module contains dataclasses for counter state, decisions and the caller
context the throttling engine works on.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RateLimitStrategy(str, Enum):
    """Window algorithms a policy can select."""
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


@dataclass(frozen=True)
class WindowBucket:
    """Sub-window counter used by the sliding window strategy."""
    timestamp: int
    count: int


@dataclass(frozen=True)
class CounterState:
    """Stored throttling state for one key.

    reset_at is the epoch-ms instant after which the state is equivalent to
    a fresh one.
    """
    count: int = 0
    reset_at: int = 0
    tokens: Optional[float] = None
    last_refill: Optional[int] = None
    buckets: Tuple[WindowBucket, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        """Serialize to the persisted JSON payload."""
        payload: Dict[str, Any] = {"count": self.count, "resetTime": self.reset_at}
        if self.tokens is not None:
            payload["tokens"] = self.tokens
        if self.last_refill is not None:
            payload["lastRefill"] = self.last_refill
        if self.buckets:
            payload["buckets"] = [
                {"timestamp": b.timestamp, "count": b.count} for b in self.buckets
            ]
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "CounterState":
        """Build a state from a persisted payload.

        Raises:
            ValueError: If the payload is malformed
        """
        if not isinstance(payload, dict):
            raise ValueError("rate limit payload must be an object")
        try:
            tokens = payload.get("tokens")
            last_refill = payload.get("lastRefill")
            return cls(
                count=max(0, int(payload.get("count", 0))),
                reset_at=int(payload.get("resetTime", 0)),
                tokens=float(tokens) if tokens is not None else None,
                last_refill=int(last_refill) if last_refill is not None else None,
                buckets=tuple(
                    WindowBucket(timestamp=int(b["timestamp"]), count=int(b["count"]))
                    for b in payload.get("buckets") or ()
                ),
            )
        except (TypeError, KeyError, ValueError, OverflowError) as e:
            raise ValueError(f"malformed rate limit payload: {e}") from e


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one request against a policy."""
    allowed: bool
    remaining: int
    reset_at: int


@dataclass(frozen=True)
class CallerContext:
    """What the throttling layer knows about the caller.

    Built by the HTTP middleware from the authentication layer's output and
    the request headers.
    """
    identity: Optional[str] = None
    role: Optional[str] = None
    api_key: Optional[str] = None
    tenant_id: Optional[str] = None
    # Ordered address-candidate header values, most trusted first
    address_candidates: Tuple[Optional[str], ...] = field(default_factory=tuple)
    path: str = "/"
    method: str = "GET"
