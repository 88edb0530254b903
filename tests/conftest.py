"""Shared test fixtures for Infill."""

from __future__ import annotations

import pytest

from infill.backends.retry import RetryPolicy


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy that never sleeps."""
    return RetryPolicy(
        max_attempts=3,
        initial_delay_seconds=0.0,
        max_delay_seconds=0.0,
        enable_jitter=False,
    )
