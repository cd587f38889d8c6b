"""Retry policy with exponential backoff, jitter and a per-execution budget.

``RetryPolicy.decide`` is a pure decision: given an error, the failed
attempt index and the time already charged to failures, it answers
"retry after N seconds" or "stop". The poller owns the ``RetryBudget``
and applies the decision.

Delay for attempt ``i`` (zero-based)::

    base  = min(base_delay * multiplier ** i, max_delay)
    delay = base +/- uniform(jitter_fraction * base)
    delay = clamp(delay, previous_delay, max_delay)

The ``previous_delay`` floor keeps consecutive delays non-decreasing;
since ``multiplier >= 1`` the floor never pushes a delay outside its
jitter band. A ``retry_after`` hint raises only the delay of the error
carrying it; the floor passed on is the unhinted ``backoff_delay``.

Example:
    >>> from flowtrack.core.errors import TransientRemoteError
    >>> from flowtrack.execution.retry import RetryOptions, RetryPolicy
    >>>
    >>> policy = RetryPolicy(RetryOptions.balanced())
    >>> decision = policy.decide(TransientRemoteError("503"), attempt_index=0, elapsed=0.0)
    >>> decision.retry
    True
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
from pydantic import BaseModel, ConfigDict, Field, model_validator

from flowtrack.core.errors import (
    AuthenticationError,
    FatalRemoteError,
    FlowtrackError,
    MalformedResponseError,
    TransientRemoteError,
)


class RetryOptions(BaseModel):
    """Explicit retry configuration. Every field is required.

    Attributes:
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        multiplier: Exponential growth factor (>= 1)
        max_attempts: Failed attempts that may be retried
        max_elapsed: Seconds of failure time after which retrying stops
        jitter_fraction: Uniform jitter as a fraction of the delay (0-1)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_delay: float = Field(gt=0)
    max_delay: float = Field(gt=0)
    multiplier: float = Field(ge=1.0)
    max_attempts: int = Field(ge=0)
    max_elapsed: float = Field(gt=0)
    jitter_fraction: float = Field(ge=0.0, lt=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> RetryOptions:
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    @classmethod
    def balanced(cls) -> RetryOptions:
        return cls(
            base_delay=0.5,
            max_delay=30.0,
            multiplier=2.0,
            max_attempts=3,
            max_elapsed=300.0,
            jitter_fraction=0.1,
        )

    @classmethod
    def conservative(cls) -> RetryOptions:
        """Few, slowly growing retries. Gives up quickly."""
        return cls(
            base_delay=1.0,
            max_delay=10.0,
            multiplier=1.2,
            max_attempts=2,
            max_elapsed=60.0,
            jitter_fraction=0.05,
        )

    @classmethod
    def aggressive(cls) -> RetryOptions:
        """Many retries with a long ceiling, for flaky endpoints."""
        return cls(
            base_delay=0.2,
            max_delay=120.0,
            multiplier=1.5,
            max_attempts=5,
            max_elapsed=900.0,
            jitter_fraction=0.1,
        )

    @classmethod
    def minimal(cls) -> RetryOptions:
        return cls(
            base_delay=0.1,
            max_delay=1.0,
            multiplier=2.0,
            max_attempts=1,
            max_elapsed=30.0,
            jitter_fraction=0.1,
        )

    @classmethod
    def profile(cls, name: str) -> RetryOptions:
        """Look up a named profile."""
        factory = RETRY_PROFILES.get(name)
        if factory is None:
            raise KeyError(f"Unknown retry profile '{name}'. Known: {sorted(RETRY_PROFILES)}")
        return factory()


RETRY_PROFILES = {
    "balanced": RetryOptions.balanced,
    "conservative": RetryOptions.conservative,
    "aggressive": RetryOptions.aggressive,
    "minimal": RetryOptions.minimal,
}


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of ``RetryPolicy.decide``."""

    retry: bool
    delay: float
    reason: str
    # Jittered backoff before any retry_after hint; the floor for the next decide()
    backoff_delay: float = 0.0


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================


def parse_retry_after(value: str | None) -> float | None:
    """Parse an HTTP Retry-After header (seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def classify_status(
    status_code: int,
    *,
    message: str | None = None,
    retry_after: float | None = None,
) -> FlowtrackError:
    """Map an HTTP error status onto the transient/fatal taxonomy."""
    text = message or f"Remote returned HTTP {status_code}"
    if status_code == 429 or status_code >= 500:
        return TransientRemoteError(text, status_code=status_code, retry_after=retry_after)
    if status_code in (401, 403):
        return AuthenticationError(text, status_code=status_code)
    return FatalRemoteError(text, status_code=status_code)


def classify_error(error: BaseException) -> FlowtrackError | None:
    """Classify an exception raised while fetching status.

    Returns None for exceptions outside the remote-error taxonomy; the
    caller treats those as internal faults.
    """
    if isinstance(error, FlowtrackError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return classify_status(
            response.status_code,
            message=f"Remote returned HTTP {response.status_code} for {error.request.url}",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        ).with_context(url=str(error.request.url))

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return TransientRemoteError(f"Status request timed out: {error}", cause=error)

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return TransientRemoteError(f"Network error: {error}", cause=error)

    if isinstance(error, (json.JSONDecodeError, ValueError)):
        return MalformedResponseError(f"Malformed status response: {error}", cause=error)

    return None


# =============================================================================
# POLICY
# =============================================================================


class RetryPolicy:
    """Decides whether and when a failed attempt is retried."""

    def __init__(self, options: RetryOptions, *, rng: random.Random | None = None):
        self.options = options
        self._rng = rng or random.Random()

    def backoff(self, attempt_index: int) -> float:
        """Unjittered delay for a zero-based attempt index."""
        return min(
            self.options.base_delay * (self.options.multiplier ** attempt_index),
            self.options.max_delay,
        )

    def jitter_band(self, attempt_index: int) -> tuple[float, float]:
        """Lowest and highest delay ``decide`` may return for an attempt."""
        base = self.backoff(attempt_index)
        spread = base * self.options.jitter_fraction
        return max(base - spread, 0.0), min(base + spread, self.options.max_delay)

    def decide(
        self,
        error: BaseException,
        attempt_index: int,
        elapsed: float,
        previous_delay: float = 0.0,
    ) -> RetryDecision:
        """Decide retry-or-not for a failed attempt.

        Args:
            error: The failure (classified with ``classify_error`` if needed)
            attempt_index: Zero-based index of this failure in the budget
            elapsed: Seconds already charged to failures
            previous_delay: ``backoff_delay`` of the previous decision. Hints
                from earlier errors never carry over.

        Returns:
            RetryDecision with ``retry=False`` for fatal errors and when the
            attempt or elapsed budget is spent
        """
        classified = classify_error(error)
        if classified is None or not classified.retryable:
            return RetryDecision(retry=False, delay=0.0, reason="fatal")

        if attempt_index >= self.options.max_attempts:
            return RetryDecision(retry=False, delay=0.0, reason="max_attempts")

        if elapsed >= self.options.max_elapsed:
            return RetryDecision(retry=False, delay=0.0, reason="max_elapsed")

        base = self.backoff(attempt_index)
        spread = base * self.options.jitter_fraction
        delay = base + self._rng.uniform(-spread, spread)

        backoff_delay = max(0.0, min(max(delay, previous_delay), self.options.max_delay))
        delay = backoff_delay
        if classified.retry_after is not None:
            delay = max(delay, min(classified.retry_after, self.options.max_delay))

        return RetryDecision(
            retry=True, delay=delay, reason="transient", backoff_delay=backoff_delay
        )


__all__ = [
    "RetryOptions",
    "RETRY_PROFILES",
    "RetryDecision",
    "RetryPolicy",
    "classify_error",
    "classify_status",
    "parse_retry_after",
]
