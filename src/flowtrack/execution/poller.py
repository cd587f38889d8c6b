"""Adaptive status polling for one remote execution.

``ExecutionPoller.run`` drives the lifecycle of a single execution::

    IDLE ──► POLLING ──┬──► WAITING ──► (POLLING ...)
                       ├──► SUCCEEDED
                       ├──► FAILED      (fatal error, budget or deadline spent)
                       └──► ABORTED     (cancelled by the owning stream)

Each cycle checks the overall deadline, pauses for the chosen delay (or
until ``wake()``), then runs one guarded fetch: circuit breaker gate,
status call bounded by the per-call timeout, outcome reported back to the
breaker. Observations are numbered here: the sequence number only moves
when the observation changes.

Manifesto:
    A poll that is cancelled must not leak a half-open trial. The fetch
    therefore runs in its own task, awaited through ``asyncio.shield``,
    and reports to the breaker from a done-callback whether or not anyone
    is still waiting for it.

Tags:
    polling, backoff, asyncio, flowtrack
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from flowtrack.core.errors import (
    DeadlineExceededError,
    FlowtrackError,
    RetryExhaustedError,
    UnknownStatusError,
)
from flowtrack.core.logging import get_logger
from flowtrack.execution.circuit_breaker import CircuitBreaker
from flowtrack.execution.models import (
    AttemptOutcome,
    ExecutionHandle,
    ExecutionState,
    PollAttempt,
    PollerPhase,
    RetryBudget,
    StatusKind,
    StatusReport,
    utcnow,
)
from flowtrack.execution.retry import RetryPolicy, classify_error
from flowtrack.execution.timeout import Deadline, run_with_timeout_async

if TYPE_CHECKING:
    from flowtrack.client.protocols import StatusFetcher

logger = get_logger(__name__)

Emit = Callable[[ExecutionState], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class IntervalOptions(BaseModel):
    """Adaptive interval bounds.

    Attributes:
        min_interval: Interval after a status change and while Waiting
        max_interval: Ceiling for a long Running streak
        growth: Factor applied per consecutive Running observation
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    min_interval: float = Field(gt=0)
    max_interval: float = Field(gt=0)
    growth: float = Field(ge=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> IntervalOptions:
        if self.max_interval < self.min_interval:
            raise ValueError("max_interval must be >= min_interval")
        return self

    @classmethod
    def high_frequency(cls) -> IntervalOptions:
        return cls(min_interval=0.5, max_interval=30.0, growth=1.5)

    @classmethod
    def balanced(cls) -> IntervalOptions:
        return cls(min_interval=2.0, max_interval=120.0, growth=1.3)

    @classmethod
    def battery_optimized(cls) -> IntervalOptions:
        """Slow polling for long-running jobs."""
        return cls(min_interval=10.0, max_interval=600.0, growth=2.0)

    @classmethod
    def minimal(cls) -> IntervalOptions:
        """Fixed 30 second interval."""
        return cls(min_interval=30.0, max_interval=30.0, growth=1.0)

    @classmethod
    def profile(cls, name: str) -> IntervalOptions:
        """Look up a named profile."""
        factory = INTERVAL_PROFILES.get(name)
        if factory is None:
            raise KeyError(
                f"Unknown interval profile '{name}'. Known: {sorted(INTERVAL_PROFILES)}"
            )
        return factory()


INTERVAL_PROFILES = {
    "high_frequency": IntervalOptions.high_frequency,
    "balanced": IntervalOptions.balanced,
    "battery_optimized": IntervalOptions.battery_optimized,
    "minimal": IntervalOptions.minimal,
}


class AdaptiveInterval:
    """Chooses the pause after each successful observation.

    The N-th consecutive Running observation schedules
    ``min(min_interval * growth ** (N - 1), max_interval)``. Any change of
    status kind resets the streak; Waiting always schedules ``min_interval``.
    """

    def __init__(self, options: IntervalOptions):
        self.options = options
        self._last_kind: StatusKind | None = None
        self._streak = 0

    def next(self, kind: StatusKind) -> float:
        if kind != self._last_kind:
            self._streak = 0
        self._last_kind = kind

        if kind != StatusKind.RUNNING:
            return self.options.min_interval

        self._streak += 1
        return min(
            self.options.min_interval * (self.options.growth ** (self._streak - 1)),
            self.options.max_interval,
        )

    def reset(self) -> None:
        self._last_kind = None
        self._streak = 0


# A poller is healthy above this success rate and below this error rate
HEALTHY_SUCCESS_RATE = 0.7
HEALTHY_ERROR_RATE = 0.3


@dataclass
class PollingStats:
    """Counters for one poller.

    ``response_times`` keeps the durations of recent successful fetches;
    ``average_response_time`` is their mean.
    """

    total_polls: int = 0
    successful_polls: int = 0
    errors: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    recent_attempts: deque[PollAttempt] = field(default_factory=lambda: deque(maxlen=20))
    response_times: deque[float] = field(default_factory=lambda: deque(maxlen=20))

    @property
    def success_rate(self) -> float:
        if self.total_polls == 0:
            return 0.0
        return self.successful_polls / self.total_polls

    @property
    def error_rate(self) -> float:
        if self.total_polls == 0:
            return 0.0
        return self.errors / self.total_polls

    @property
    def average_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    @property
    def is_healthy(self) -> bool:
        """True before the first poll, then judged on success and error rates."""
        if self.total_polls == 0:
            return True
        return (
            self.success_rate > HEALTHY_SUCCESS_RATE
            and self.error_rate < HEALTHY_ERROR_RATE
        )

    def record(
        self,
        attempt: PollAttempt,
        kind: StatusKind | None = None,
        response_time: float | None = None,
    ) -> None:
        self.total_polls += 1
        self.recent_attempts.append(attempt)
        if attempt.outcome == AttemptOutcome.SUCCESS:
            self.successful_polls += 1
            if kind is not None:
                self.status_counts[kind.value] = self.status_counts.get(kind.value, 0) + 1
            if response_time is not None:
                self.response_times.append(max(response_time, 0.0))
        else:
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_polls": self.total_polls,
            "successful_polls": self.successful_polls,
            "errors": self.errors,
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "average_response_time": self.average_response_time,
            "is_healthy": self.is_healthy,
            "status_counts": dict(self.status_counts),
        }


class ExecutionPoller:
    """Polls one execution until it reaches a terminal state.

    Args:
        handle: Execution to poll
        fetcher: StatusFetcher collaborator
        breaker: Circuit breaker shared by the handle's endpoint
        retry_policy: Decides retry-or-stop on failures
        interval_options: Adaptive interval bounds
        call_timeout: Per-call timeout in seconds (None = unbounded)
        deadline: Overall tracking deadline in seconds, started on first run
        clock: Monotonic time source
        sleep: Async sleep function
    """

    def __init__(
        self,
        handle: ExecutionHandle,
        fetcher: StatusFetcher,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        interval_options: IntervalOptions,
        *,
        call_timeout: float | None = None,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.handle = handle
        self.fetcher = fetcher
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.call_timeout = call_timeout
        self._deadline_seconds = deadline
        self._deadline: Deadline | None = None
        self._clock = clock
        self._sleep = sleep

        self._interval = AdaptiveInterval(interval_options)
        self._budget = RetryBudget()
        self._stats = PollingStats()
        self._phase = PollerPhase.IDLE
        self._sequence = 0
        self._last_state: ExecutionState | None = None
        self._last_error: BaseException | None = None
        self._next_delay = 0.0
        self._wake = asyncio.Event()
        self._inflight: set[asyncio.Task[StatusReport]] = set()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def phase(self) -> PollerPhase:
        return self._phase

    @property
    def budget(self) -> RetryBudget:
        return self._budget

    @property
    def stats(self) -> PollingStats:
        return self._stats

    @property
    def last_state(self) -> ExecutionState | None:
        return self._last_state

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def inflight(self) -> int:
        """Fetches still running, including abandoned ones."""
        return len(self._inflight)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def wake(self) -> None:
        """Cut the current pause short so the next fetch happens now."""
        self._wake.set()

    def abort(self) -> None:
        """Mark the poller aborted. The owning task is cancelled separately."""
        if not self._phase.is_final:
            self._phase = PollerPhase.ABORTED

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    async def run(self, emit: Emit) -> ExecutionState:
        """Poll until a terminal state, emitting every observation.

        Can be called again after an internal fault escaped; polling then
        resumes with the same sequence numbers and budget.

        Returns:
            The terminal ExecutionState

        Raises:
            FatalRemoteError: On a fatal response
            RetryExhaustedError: When the retry budget is spent
            DeadlineExceededError: When the overall deadline passes
        """
        if self._deadline is None and self._deadline_seconds is not None:
            self._deadline = Deadline.start(
                self._deadline_seconds,
                operation=f"track:{self.handle.execution_id}",
                clock=self._clock,
            )
        if self._phase == PollerPhase.IDLE:
            self._phase = PollerPhase.POLLING

        while True:
            self._check_deadline()
            await self._pause(self._next_delay)
            self._check_deadline()

            started = self._clock()
            try:
                report = await self.fetch_once()
            except FlowtrackError as error:
                self._next_delay = self._on_failure(error, self._clock() - started)
                continue
            except Exception as error:
                classified = classify_error(error)
                if classified is None:
                    raise
                self._next_delay = self._on_failure(classified, self._clock() - started)
                continue

            state = self._observe(report)
            self._stats.record(
                PollAttempt(
                    index=self._stats.total_polls,
                    interval=self._next_delay,
                    outcome=AttemptOutcome.SUCCESS,
                ),
                kind=state.kind,
                response_time=self._clock() - started,
            )
            logger.debug(
                "poll_succeeded",
                status=state.kind.value,
                raw_status=state.raw_status,
                sequence=state.sequence,
            )
            await emit(state)

            if state.is_terminal:
                self._phase = (
                    PollerPhase.SUCCEEDED
                    if state.kind == StatusKind.SUCCESS
                    else PollerPhase.FAILED
                )
                return state

            if state.kind == StatusKind.UNKNOWN:
                # Resets any Running or Waiting streak
                self._interval.next(state.kind)
                self._next_delay = self._on_failure(UnknownStatusError(state.raw_status), 0.0)
                continue

            self._phase = (
                PollerPhase.WAITING if state.kind == StatusKind.WAITING else PollerPhase.POLLING
            )
            self._next_delay = self._interval.next(state.kind)

    async def fetch_once(self) -> StatusReport:
        """Run one guarded status fetch.

        Raises CircuitOpenError without a remote call while the breaker is
        open. Cancelling the caller abandons the wait; the fetch itself runs
        to completion and reports its outcome to the breaker.
        """
        generation = self.breaker.acquire()
        task = asyncio.ensure_future(self._guarded_fetch())
        self._inflight.add(task)
        task.add_done_callback(functools.partial(self._fetch_done, generation=generation))
        return await asyncio.shield(task)

    async def _guarded_fetch(self) -> StatusReport:
        return await run_with_timeout_async(
            self.fetcher.fetch_status(self.handle),
            self.call_timeout,
            operation=f"fetch_status:{self.handle.execution_id}",
        )

    def _fetch_done(self, task: asyncio.Task[StatusReport], *, generation: int) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            self.breaker.release(generation)
            return

        error = task.exception()
        if error is None:
            self.breaker.record_success(generation)
            return

        classified = classify_error(error)
        if classified is None:
            # Not a verdict on the endpoint
            self.breaker.release(generation)
        elif classified.retryable:
            self.breaker.record_failure(generation)
        else:
            # The endpoint answered, even if the answer was unusable
            self.breaker.record_success(generation)

    def _observe(self, report: StatusReport) -> ExecutionState:
        if not report.same_observation(self._last_state):
            self._sequence += 1
        state = ExecutionState(
            execution_id=self.handle.execution_id,
            kind=report.kind,
            sequence=self._sequence,
            observed_at=utcnow(),
            raw_status=report.raw_status,
            payload=report.payload,
        )
        self._last_state = state
        return state

    def _on_failure(self, error: FlowtrackError, attempt_duration: float) -> float:
        """Charge a failure to the budget and return the delay before the next try."""
        self._last_error = error
        attempt_index = self._budget.attempts
        error.with_context(execution_id=self.handle.execution_id, attempt=attempt_index)

        decision = self.retry_policy.decide(
            error,
            attempt_index=attempt_index,
            elapsed=self._budget.elapsed + attempt_duration,
            previous_delay=self._budget.last_backoff,
        )
        outcome = (
            AttemptOutcome.TRANSIENT_ERROR if error.retryable else AttemptOutcome.FATAL_ERROR
        )
        if not isinstance(error, UnknownStatusError):
            self._stats.record(
                PollAttempt(
                    index=self._stats.total_polls,
                    interval=self._next_delay,
                    outcome=outcome,
                    error=str(error),
                )
            )
        logger.warning(
            "poll_failed",
            error=str(error),
            error_type=type(error).__name__,
            retryable=error.retryable,
            attempt=attempt_index,
        )

        if decision.reason == "fatal":
            self._phase = PollerPhase.FAILED
            raise error

        if not decision.retry:
            self._budget.charge(attempt_duration, 0.0)
            self._phase = PollerPhase.FAILED
            logger.error(
                "retry_exhausted",
                reason=decision.reason,
                attempts=self._budget.attempts,
                elapsed=self._budget.elapsed,
            )
            raise RetryExhaustedError(
                f"Retry budget spent ({decision.reason}) after "
                f"{self._budget.attempts} failed attempts",
                attempts=self._budget.attempts,
                elapsed=self._budget.elapsed,
                last_error=error,
            ).with_context(execution_id=self.handle.execution_id)

        self._budget.charge(attempt_duration, decision.delay, decision.backoff_delay)
        logger.info(
            "retry_scheduled",
            attempt=self._budget.attempts,
            delay=decision.delay,
            elapsed=self._budget.elapsed,
        )
        return decision.delay

    def recover_fault(self, fault: BaseException) -> None:
        """Charge an internal fault to the budget and schedule an immediate fetch.

        Raises:
            RetryExhaustedError: When the budget has no room left
        """
        self._last_error = fault
        options = self.retry_policy.options
        if (
            self._budget.attempts >= options.max_attempts
            or self._budget.elapsed >= options.max_elapsed
        ):
            self._phase = PollerPhase.FAILED
            logger.error(
                "retry_exhausted",
                reason="internal_fault",
                attempts=self._budget.attempts,
                elapsed=self._budget.elapsed,
            )
            raise RetryExhaustedError(
                f"Internal fault after {self._budget.attempts} failed attempts: {fault}",
                attempts=self._budget.attempts,
                elapsed=self._budget.elapsed,
                last_error=fault,
            ).with_context(execution_id=self.handle.execution_id)
        self._budget.charge(0.0, 0.0)
        self._next_delay = 0.0

    def _check_deadline(self) -> None:
        if self._deadline is None or not self._deadline.is_expired():
            return
        self._phase = PollerPhase.FAILED
        logger.error(
            "retry_exhausted",
            reason="deadline",
            deadline=self._deadline.timeout_seconds,
            attempts=self._budget.attempts,
        )
        raise DeadlineExceededError(
            self._deadline.timeout_seconds,
            attempts=self._budget.attempts,
            elapsed=self._deadline.elapsed,
            last_error=self._last_error,
        ).with_context(execution_id=self.handle.execution_id)

    async def _pause(self, delay: float) -> None:
        """Sleep for ``delay`` (capped by the deadline) or until woken."""
        if self._deadline is not None:
            delay = self._deadline.cap(delay)
        if self._wake.is_set():
            self._wake.clear()
            return
        if delay <= 0:
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()
        self._wake.clear()


__all__ = [
    "IntervalOptions",
    "INTERVAL_PROFILES",
    "AdaptiveInterval",
    "PollingStats",
    "ExecutionPoller",
]
