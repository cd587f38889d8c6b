"""
flowtrack - resilient tracking of remote workflow executions.

Trigger a webhook, then follow the execution it started as a lazy,
cancellable stream of states, with adaptive polling, retry with backoff,
per-endpoint circuit breaking and loss-free stream recovery.
"""

__version__ = "0.1.0"

from flowtrack.core.errors import (
    CircuitOpenError,
    DeadlineExceededError,
    FatalRemoteError,
    FlowtrackError,
    RetryExhaustedError,
    TransientRemoteError,
)
from flowtrack.execution import (
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    ExecutionHandle,
    ExecutionState,
    ExecutionStream,
    ExecutionTracker,
    IntervalOptions,
    RetryOptions,
    StatusKind,
    TrackingOutcome,
    TrackOptions,
)

__all__ = [
    "__version__",
    "FlowtrackError",
    "TransientRemoteError",
    "FatalRemoteError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "DeadlineExceededError",
    "CircuitBreakerOptions",
    "CircuitBreakerRegistry",
    "ExecutionHandle",
    "ExecutionState",
    "ExecutionStream",
    "ExecutionTracker",
    "IntervalOptions",
    "RetryOptions",
    "StatusKind",
    "TrackingOutcome",
    "TrackOptions",
]
