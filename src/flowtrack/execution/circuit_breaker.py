"""Circuit breaker guarding one remote endpoint.

One breaker exists per endpoint and is shared by every execution polling
that endpoint. Breakers live in a ``CircuitBreakerRegistry`` that the
caller owns and hands to the tracker.

Phases:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected with CircuitOpenError
    HALF_OPEN: Exactly one trial request allowed through

Every phase read and transition happens under one lock, so concurrent
pollers cannot race a transition. Pollers call ``acquire()`` right before
the remote call and ``record_success()``/``record_failure()`` right after.
``acquire()`` returns the generation it admitted the request in. Passing it
back with the verdict lets the breaker ignore a request admitted before
the circuit went half-open: only the trial decides a half-open circuit.

Example:
    >>> registry = CircuitBreakerRegistry(CircuitBreakerOptions.default())
    >>> breaker = registry.get_or_create("https://n8n.example.com")
    >>> generation = breaker.acquire()   # raises CircuitOpenError while open
    >>> try:
    ...     report = await fetch()
    ... except TransientRemoteError:
    ...     breaker.record_failure(generation)
    ...     raise
    ... else:
    ...     breaker.record_success(generation)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, model_validator

from flowtrack.core.errors import CircuitOpenError
from flowtrack.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class CircuitPhase(str, Enum):
    """Circuit breaker phases."""

    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Rejecting requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreakerOptions(BaseModel):
    """Explicit breaker thresholds.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        open_duration: Seconds the circuit stays open before a trial
        failure_window: Failures further apart than this restart the count
            (None counts consecutive failures regardless of spacing)
        open_backoff_multiplier: Growth of open_duration per failed trial
        max_open_duration: Cap for the grown open duration
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    failure_threshold: int = Field(ge=1)
    open_duration: float = Field(gt=0)
    failure_window: PositiveFloat | None
    open_backoff_multiplier: float = Field(ge=1.0)
    max_open_duration: float = Field(gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> CircuitBreakerOptions:
        if self.max_open_duration < self.open_duration:
            raise ValueError("max_open_duration must be >= open_duration")
        return self

    @classmethod
    def default(cls) -> CircuitBreakerOptions:
        return cls(
            failure_threshold=5,
            open_duration=60.0,
            failure_window=None,
            open_backoff_multiplier=2.0,
            max_open_duration=600.0,
        )

    @classmethod
    def strict(cls) -> CircuitBreakerOptions:
        """Opens early and stays open longer."""
        return cls(
            failure_threshold=3,
            open_duration=60.0,
            failure_window=120.0,
            open_backoff_multiplier=2.0,
            max_open_duration=900.0,
        )

    @classmethod
    def tolerant(cls) -> CircuitBreakerOptions:
        return cls(
            failure_threshold=10,
            open_duration=300.0,
            failure_window=None,
            open_backoff_multiplier=1.0,
            max_open_duration=300.0,
        )


@dataclass(frozen=True)
class CircuitState:
    """Point-in-time view of a breaker, for diagnostics."""

    endpoint: str
    phase: CircuitPhase
    consecutive_failures: int
    opened_at: float | None
    open_duration: float
    trial_budget: int
    reopen_count: int


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Circuit breaker for one endpoint.

    Attributes:
        endpoint: Endpoint key this breaker guards
        options: Thresholds and durations
        clock: Monotonic time source (injectable for tests)
    """

    endpoint: str
    options: CircuitBreakerOptions
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    _phase: CircuitPhase = field(default=CircuitPhase.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_at: float | None = field(default=None, init=False)
    _opened_at: float | None = field(default=None, init=False)
    _reopen_count: int = field(default=0, init=False)
    _half_open_calls: int = field(default=0, init=False)
    # Bumped on every transition
    _generation: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    # Only one trial passes while half-open.
    half_open_max_calls = 1

    @property
    def phase(self) -> CircuitPhase:
        """Get current phase (applies a due OPEN -> HALF_OPEN transition)."""
        with self._lock:
            self._check_state_transition()
            return self._phase

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def current_open_duration(self) -> float:
        """Open duration after backoff for repeated failed trials."""
        grown = self.options.open_duration * (
            self.options.open_backoff_multiplier ** self._reopen_count
        )
        return min(grown, self.options.max_open_duration)

    def remaining_open_time(self) -> float:
        """Seconds until an open circuit admits a trial (0 when not open)."""
        with self._lock:
            self._check_state_transition()
            if self._phase != CircuitPhase.OPEN or self._opened_at is None:
                return 0.0
            return max(self._opened_at + self.current_open_duration() - self.clock(), 0.0)

    def _check_state_transition(self) -> None:
        if self._phase == CircuitPhase.OPEN and self._opened_at is not None:
            if self.clock() - self._opened_at >= self.current_open_duration():
                self._transition_to(CircuitPhase.HALF_OPEN)

    def _transition_to(self, new_phase: CircuitPhase) -> None:
        old_phase = self._phase
        self._phase = new_phase
        self._generation += 1
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()

        if new_phase == CircuitPhase.CLOSED:
            self._failure_count = 0
            self._reopen_count = 0
            self._opened_at = None
        elif new_phase == CircuitPhase.OPEN:
            self._opened_at = self.clock()
        elif new_phase == CircuitPhase.HALF_OPEN:
            self._half_open_calls = 0

        logger.info(
            "circuit_state_changed",
            endpoint=self.endpoint,
            old_phase=old_phase.value,
            new_phase=new_phase.value,
            failures=self._failure_count,
            open_duration=self.current_open_duration(),
        )

    def allow_request(self) -> bool:
        """Check if a request may proceed, consuming the half-open trial."""
        with self._lock:
            self._check_state_transition()
            self._stats.total_requests += 1

            if self._phase == CircuitPhase.CLOSED:
                return True

            if self._phase == CircuitPhase.HALF_OPEN:
                if self._half_open_calls < self.half_open_max_calls:
                    self._half_open_calls += 1
                    return True

            self._stats.rejected_requests += 1
            return False

    @property
    def generation(self) -> int:
        with self._lock:
            self._check_state_transition()
            return self._generation

    def acquire(self) -> int:
        """Admit a request or raise CircuitOpenError without a remote call.

        Returns:
            The generation the request was admitted in
        """
        with self._lock:
            if self.allow_request():
                return self._generation
            remaining = self.remaining_open_time()
        logger.debug("circuit_rejected", endpoint=self.endpoint, remaining=remaining)
        raise CircuitOpenError(self.endpoint, remaining)

    def _is_stale(self, generation: int | None) -> bool:
        # A request admitted before the circuit went half-open is not the trial
        return (
            generation is not None
            and self._phase == CircuitPhase.HALF_OPEN
            and generation != self._generation
        )

    def record_success(self, generation: int | None = None) -> None:
        """Record a request that reached a responsive endpoint."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = utcnow()
            if self._is_stale(generation):
                return

            if self._phase == CircuitPhase.HALF_OPEN:
                self._transition_to(CircuitPhase.CLOSED)
            elif self._phase == CircuitPhase.CLOSED:
                self._failure_count = 0

    def record_failure(self, generation: int | None = None) -> None:
        """Record a transient failure (network, timeout, 5xx, 429)."""
        with self._lock:
            now = self.clock()
            self._stats.failed_requests += 1
            self._stats.last_failure_time = utcnow()
            if self._is_stale(generation):
                return

            if self._phase == CircuitPhase.CLOSED:
                window = self.options.failure_window
                if (
                    window is not None
                    and self._last_failure_at is not None
                    and now - self._last_failure_at > window
                ):
                    self._failure_count = 0
                self._failure_count += 1
                self._last_failure_at = now
                if self._failure_count >= self.options.failure_threshold:
                    self._transition_to(CircuitPhase.OPEN)

            elif self._phase == CircuitPhase.HALF_OPEN:
                # A failed trial reopens with a longer open duration
                self._reopen_count += 1
                self._last_failure_at = now
                self._transition_to(CircuitPhase.OPEN)

    def release(self, generation: int | None = None) -> None:
        """Return an unused half-open trial without judging the endpoint."""
        with self._lock:
            if self._is_stale(generation):
                return
            if self._phase == CircuitPhase.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitPhase.CLOSED)
            self._last_failure_at = None

    def force_open(self) -> None:
        """Force circuit to open state (for maintenance and tests)."""
        with self._lock:
            self._transition_to(CircuitPhase.OPEN)

    def snapshot(self) -> CircuitState:
        """Consistent view of phase and counters."""
        with self._lock:
            self._check_state_transition()
            return CircuitState(
                endpoint=self.endpoint,
                phase=self._phase,
                consecutive_failures=self._failure_count,
                opened_at=self._opened_at,
                open_duration=self.current_open_duration(),
                trial_budget=(
                    self.half_open_max_calls - self._half_open_calls
                    if self._phase == CircuitPhase.HALF_OPEN
                    else 0
                ),
                reopen_count=self._reopen_count,
            )


class CircuitBreakerRegistry:
    """Breakers keyed by endpoint, all built from the same options."""

    def __init__(
        self,
        options: CircuitBreakerOptions,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def get(self, endpoint: str) -> CircuitBreaker | None:
        """Get a breaker by endpoint, returns None if not found."""
        with self._lock:
            return self._breakers.get(endpoint)

    def get_or_create(self, endpoint: str) -> CircuitBreaker:
        """Get or create the breaker for an endpoint."""
        with self._lock:
            if endpoint not in self._breakers:
                self._breakers[endpoint] = CircuitBreaker(
                    endpoint=endpoint,
                    options=self.options,
                    clock=self._clock,
                )
            return self._breakers[endpoint]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._breakers.keys())

    def remove(self, endpoint: str) -> None:
        with self._lock:
            self._breakers.pop(endpoint, None)

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()

    def reset_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def snapshot_all(self) -> dict[str, dict[str, Any]]:
        """Phase and counters for every breaker, keyed by endpoint."""
        with self._lock:
            breakers = list(self._breakers.values())
        result: dict[str, dict[str, Any]] = {}
        for breaker in breakers:
            state = breaker.snapshot()
            result[breaker.endpoint] = {
                "phase": state.phase.value,
                "consecutive_failures": state.consecutive_failures,
                "open_duration": state.open_duration,
                "reopen_count": state.reopen_count,
                "failure_rate": breaker.stats.failure_rate,
            }
        return result


__all__ = [
    "CircuitPhase",
    "CircuitBreakerOptions",
    "CircuitState",
    "CircuitStats",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
