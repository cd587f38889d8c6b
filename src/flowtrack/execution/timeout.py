"""Timeout enforcement for execution tracking.

Timeouts are layered:

    ┌──────────────────────────────────────────────────────────────┐
    │ Deadline (overall)      bounds the whole tracked execution    │
    │   └── RetryOptions.max_elapsed   bounds time lost to failures │
    │         └── run_with_timeout_async   bounds one HTTP call     │
    └──────────────────────────────────────────────────────────────┘

``Deadline`` takes an injectable clock so pollers can be driven by a
fake clock in tests; it never cancels anything by itself; the poller
checks it between cycles and caps its pauses to ``remaining()``.

Examples:
    >>> deadline = Deadline.start(300.0, operation="track:42")
    >>> deadline.remaining() > 299
    True

    >>> report = await run_with_timeout_async(fetch(), 10.0, operation="fetch_status")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


class TimeoutExpired(TimeoutError):
    """Raised when an operation exceeds its time limit.

    Inherits from built-in TimeoutError for broad exception handling.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the operation ran before being interrupted
        operation: Name/description of the operation
    """

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str | None = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation or "operation"

        msg = f"Operation '{self.operation}' timed out after {timeout}s"

        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"

        super().__init__(msg)


@dataclass
class Deadline:
    """Absolute deadline on an injectable monotonic clock.

    Attributes:
        deadline: Absolute deadline timestamp (clock units)
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the bounded operation
        clock: Monotonic time source
        start_time: When the deadline started
    """

    deadline: float
    timeout_seconds: float
    operation: str = "operation"
    clock: Clock = field(default=time.monotonic, repr=False)
    start_time: float = field(default=0.0)

    @classmethod
    def start(
        cls,
        seconds: float,
        *,
        operation: str = "operation",
        clock: Clock = time.monotonic,
    ) -> Deadline:
        """Create a deadline ``seconds`` from now."""
        if seconds <= 0:
            raise ValueError(f"Deadline must be positive, got {seconds}")
        now = clock()
        return cls(
            deadline=now + seconds,
            timeout_seconds=seconds,
            operation=operation,
            clock=clock,
            start_time=now,
        )

    def remaining(self) -> float:
        """Remaining seconds; negative once expired."""
        return self.deadline - self.clock()

    @property
    def elapsed(self) -> float:
        """Elapsed time since start in seconds."""
        return self.clock() - self.start_time

    def is_expired(self) -> bool:
        """True if deadline has passed."""
        return self.clock() >= self.deadline

    def cap(self, delay: float) -> float:
        """Shorten ``delay`` so a pause never outlives the deadline."""
        return max(0.0, min(delay, self.remaining()))

    def check(self) -> None:
        """Raise TimeoutExpired if the deadline has passed."""
        if self.is_expired():
            raise TimeoutExpired(
                timeout=self.timeout_seconds,
                elapsed=self.elapsed,
                operation=self.operation,
            )


async def run_with_timeout_async(
    awaitable: Awaitable[T],
    timeout_seconds: float | None,
    operation: str | None = None,
) -> T:
    """Await ``awaitable`` with a time limit.

    ``timeout_seconds=None`` awaits without a limit.

    Raises:
        TimeoutExpired: If execution exceeds the timeout
        Exception: Any exception raised by the awaitable
    """
    if timeout_seconds is None:
        return await awaitable
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()

    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except TimeoutError:
        elapsed = time.monotonic() - start
        raise TimeoutExpired(
            timeout=timeout_seconds,
            elapsed=elapsed,
            operation=operation,
        ) from None


__all__ = [
    "TimeoutExpired",
    "Deadline",
    "run_with_timeout_async",
]
