"""Shared fixtures for the encore test suite.

Time never really passes in these tests: circuit breakers read a manually
advanced clock and retry backoff goes through a recording sleep.
"""

from __future__ import annotations

import pytest

from encore.reliability import ResilienceContext, ResilienceFacade


class FakeClock:
    """Monotonic clock advanced explicitly by the test."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self._clock is not None:
            self._clock.advance(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps(clock: FakeClock) -> SleepRecorder:
    return SleepRecorder(clock)


@pytest.fixture
def facade(clock: FakeClock, sleeps: SleepRecorder) -> ResilienceFacade:
    """A facade over a fresh, isolated ResilienceContext."""
    return ResilienceFacade(ResilienceContext.create(clock=clock), sleep=sleeps)
