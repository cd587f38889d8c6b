"""
Structured error types for flowtrack.

Every failure the tracking engine can observe is expressed as a
``FlowtrackError`` subclass carrying a category, an explicit retry flag,
an optional ``retry_after`` hint and a context block for logging. The
retry policy and the circuit breaker make their decisions from these
attributes, never from exception messages.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       FlowtrackError                          │
        │  (category, retryable, retry_after, context, cause)          │
        ├──────────────────────────────────────────────────────────────┤
        │                                                               │
        │  TransientRemoteError   FatalRemoteError    RetryExhaustedError│
        │  (retryable=True)       (retryable=False)   (terminal)        │
        │       │                      │                    │           │
        │  CircuitOpenError       AuthenticationError DeadlineExceeded  │
        │  UnknownStatusError     MalformedResponseError                │
        │                                                               │
        │  InvalidOptionsError (CONFIG)                                 │
        └──────────────────────────────────────────────────────────────┘

Propagation:
    - Transient and circuit-open errors are recovered inside the poll loop
      until the retry budget is spent.
    - Fatal errors end the stream immediately.
    - RetryExhaustedError / DeadlineExceededError end the stream once the
      budget or the overall deadline is spent.
    - Cancellation is not an error; streams end normally.

Examples:
    >>> error = TransientRemoteError("upstream returned 503", status_code=503)
    >>> error.retryable
    True
    >>> error.with_context(execution_id="42").context.execution_id
    '42'

Tags:
    error-handling, exception-hierarchy, retry-logic, flowtrack
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"           # Connection, timeout, 5xx, 429

    # Source/data errors
    SOURCE = "SOURCE"             # Remote rejected the request (4xx)
    PARSE = "PARSE"               # Malformed response body

    # Configuration errors (never retryable)
    CONFIG = "CONFIG"             # Invalid options
    AUTH = "AUTH"                 # Authentication, authorization

    # Application errors
    ORCHESTRATION = "ORCHESTRATION"  # Retry budget / deadline exhaustion

    # Internal errors
    INTERNAL = "INTERNAL"         # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set appear in ``to_dict()``, so log lines stay
    small. Anything not covered by a typed field goes in ``metadata``.

    Attributes:
        execution_id: Remote execution the error relates to
        endpoint: Endpoint key (usually the base URL)
        url: Request URL, when a request was made
        http_status: HTTP status code of the response
        attempt: Zero-based failed-attempt index
        metadata: Free-form extra fields
    """

    execution_id: str | None = None
    endpoint: str | None = None
    url: str | None = None
    http_status: int | None = None
    attempt: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        result: dict[str, Any] = {}
        for key in ("execution_id", "endpoint", "url", "http_status", "attempt"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class FlowtrackError(Exception):
    """
    Base class for all flowtrack errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can
    be overridden per instance.

    Attributes:
        message: Human-readable description
        category: ErrorCategory for routing
        retryable: Whether the poll loop may retry after this error
        retry_after: Minimum seconds to wait before retrying, if known
        context: ErrorContext with execution metadata
        cause: Underlying exception, also chained as ``__cause__``
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> FlowtrackError:
        """
        Add context to this error (fluent API).

        Usage:
            raise FatalRemoteError("rejected").with_context(execution_id="42")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# REMOTE ERRORS
# =============================================================================


class TransientRemoteError(FlowtrackError):
    """Network failure, per-call timeout, HTTP 5xx or HTTP 429."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.http_status = status_code


class CircuitOpenError(TransientRemoteError):
    """Raised without a remote call while the endpoint's breaker is open.

    Counted against the same retry budget as any transient error.
    ``retry_after`` holds the remaining open time.
    """

    def __init__(self, endpoint: str, remaining: float = 0.0):
        super().__init__(
            f"Circuit for '{endpoint}' is open, rejecting request",
            retry_after=max(remaining, 0.0),
        )
        self.endpoint = endpoint
        self.context.endpoint = endpoint


class UnknownStatusError(TransientRemoteError):
    """The remote answered with a status the tracker does not recognise."""

    def __init__(self, raw_status: str | None):
        super().__init__(f"Unrecognised execution status: {raw_status!r}")
        self.raw_status = raw_status


class FatalRemoteError(FlowtrackError):
    """HTTP 4xx other than 429, or any response that retrying cannot fix."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.http_status = status_code


class AuthenticationError(FatalRemoteError):
    """HTTP 401/403 from the remote API."""

    default_category = ErrorCategory.AUTH


class MalformedResponseError(FatalRemoteError):
    """Response body is not valid JSON or lacks required fields."""

    default_category = ErrorCategory.PARSE


# =============================================================================
# TERMINAL TRACKING ERRORS
# =============================================================================


class RetryExhaustedError(FlowtrackError):
    """The per-execution retry budget (attempts or elapsed time) is spent.

    Attributes:
        attempts: Failed attempts charged to the budget
        elapsed: Cumulative seconds charged to the budget
        last_error: The transient error that exhausted the budget
    """

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        elapsed: float = 0.0,
        last_error: BaseException | None = None,
    ):
        super().__init__(message, cause=last_error)
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        self.context.attempt = attempts


class DeadlineExceededError(RetryExhaustedError):
    """The overall tracking deadline passed before a terminal state was seen."""

    def __init__(
        self,
        deadline: float,
        *,
        attempts: int = 0,
        elapsed: float = 0.0,
        last_error: BaseException | None = None,
    ):
        super().__init__(
            f"Tracking deadline of {deadline}s exceeded",
            attempts=attempts,
            elapsed=elapsed,
            last_error=last_error,
        )
        self.deadline = deadline


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class InvalidOptionsError(FlowtrackError):
    """An options value failed validation."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable. Non-flowtrack errors are not."""
    if isinstance(error, FlowtrackError):
        return error.retryable
    return False


def get_retry_after(error: BaseException) -> float | None:
    """Get retry-after seconds from an error, if available."""
    if isinstance(error, FlowtrackError):
        return error.retry_after
    return None


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "FlowtrackError",
    "TransientRemoteError",
    "CircuitOpenError",
    "UnknownStatusError",
    "FatalRemoteError",
    "AuthenticationError",
    "MalformedResponseError",
    "RetryExhaustedError",
    "DeadlineExceededError",
    "InvalidOptionsError",
    "is_retryable",
    "get_retry_after",
]
