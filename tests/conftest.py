import sys
from pathlib import Path

import pytest


# Ensure project src is on path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
for p in (ROOT, SRC):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

from scamguard.config import Settings  # noqa: E402
from scamguard.resilience import BreakerRegistry, ResilientCaller, RetryPolicy  # noqa: E402


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def caller(sleeps):
    return ResilientCaller(BreakerRegistry(), RetryPolicy(sleep=sleeps))
