"""
Shared pytest fixtures and configuration for flowtrack tests.

This module provides:
- A fake clock whose sleep advances time instantly
- A default execution handle
- Option fixtures with jitter disabled so delays are exact
- A tracker factory wired to the fake clock

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments:

    @pytest.mark.asyncio
    async def test_something(clock, handle):
        ...

    Fakes live in ``tests/_support/fakes.py``.
"""

from __future__ import annotations

import random
from typing import Any

import pytest

from flowtrack.execution import (
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    ExecutionHandle,
    ExecutionTracker,
    IntervalOptions,
    RetryOptions,
    TrackOptions,
)
from tests._support.fakes import FakeClock


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests without an explicit marker as unit tests."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def handle() -> ExecutionHandle:
    return ExecutionHandle(execution_id="42", endpoint="https://n8n.test")


@pytest.fixture
def retry_options() -> RetryOptions:
    """Exact delays 1, 2, 4 ... with three retries."""
    return RetryOptions(
        base_delay=1.0,
        max_delay=60.0,
        multiplier=2.0,
        max_attempts=3,
        max_elapsed=1000.0,
        jitter_fraction=0.0,
    )


@pytest.fixture
def interval_options() -> IntervalOptions:
    return IntervalOptions(min_interval=1.0, max_interval=10.0, growth=2.0)


@pytest.fixture
def breaker_options() -> CircuitBreakerOptions:
    return CircuitBreakerOptions(
        failure_threshold=5,
        open_duration=30.0,
        failure_window=None,
        open_backoff_multiplier=2.0,
        max_open_duration=300.0,
    )


@pytest.fixture
def track_options(retry_options: RetryOptions, interval_options: IntervalOptions) -> TrackOptions:
    return TrackOptions(
        retry=retry_options,
        interval=interval_options,
        call_timeout=None,
        deadline=None,
    )


@pytest.fixture
def registry(breaker_options: CircuitBreakerOptions, clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(breaker_options, clock=clock)


@pytest.fixture
def make_tracker(registry: CircuitBreakerRegistry, clock: FakeClock):
    """Factory: ``make_tracker(fetcher)`` -> ExecutionTracker on the fake clock."""

    def factory(fetcher: Any, **kwargs: Any) -> ExecutionTracker:
        return ExecutionTracker(
            fetcher,
            registry,
            clock=clock,
            sleep=clock.sleep,
            rng=random.Random(7),
            **kwargs,
        )

    return factory
