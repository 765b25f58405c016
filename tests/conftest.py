"""Shared fixtures for throttling tests."""

import pytest
from starlette.responses import Response

from throttle.app.middleware.rate_limit import (
    InMemoryStateStore,
    RateLimiterEngine,
    TieredStateStore,
)

# A UNIX time that falls exactly on a one-minute boundary
WINDOW_ALIGNED_START = 1_700_000_040.0


class FakeClock:
    """Manually advanced time source returning UNIX seconds."""

    def __init__(self, start: float = WINDOW_ALIGNED_START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    @property
    def now_ms(self) -> int:
        return int(self.now * 1000)


class Downstream:
    """Protected handler double that records how often it ran."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.calls = 0

    async def __call__(self) -> Response:
        self.calls += 1
        return Response(status_code=self.status_code)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def local_store(clock):
    return InMemoryStateStore(sweep_probability=0.0, clock=clock)


@pytest.fixture
def store(local_store):
    return TieredStateStore(local=local_store)


@pytest.fixture
def engine(store, clock):
    return RateLimiterEngine(store, clock=clock, min_ttl_seconds=60)


@pytest.fixture
def downstream():
    return Downstream()


@pytest.fixture
def make_downstream():
    """Factory for handlers answering with a given status code."""
    return Downstream
