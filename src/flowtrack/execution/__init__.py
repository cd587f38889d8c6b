"""flowtrack execution: resilient tracking of remote workflow executions.

ARCHITECTURE
────────────
::

    ExecutionTracker.track(handle, options)   (track_many merges several)
      │
      ▼
    ExecutionStream (lazy async iterator, cancel / detach / reattach)
      ├── StreamRecovery    ─ cursor dedupe, single-slot coalescing
      └── ExecutionPoller   ─ adaptive interval, deadline, budget
            ├── CircuitBreaker ─ shared per endpoint (owned registry)
            ├── RetryPolicy    ─ backoff + jitter, transient/fatal split
            └── StatusFetcher  ─ collaborator (flowtrack.client)

MODULE MAP (recommended reading order)
──────────────────────────────────────
  1. models.py           ─ handles, states, budget, cursor
  2. retry.py            ─ RetryOptions, RetryPolicy, classify_error
  3. circuit_breaker.py  ─ CircuitBreaker + registry
  4. timeout.py          ─ Deadline, run_with_timeout_async
  5. poller.py           ─ IntervalOptions, ExecutionPoller
  6. recovery.py         ─ StreamRecovery
  7. stream.py           ─ TrackOptions, ExecutionStream, ExecutionTracker
"""

from flowtrack.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitPhase,
    CircuitState,
    CircuitStats,
)
from flowtrack.execution.models import (
    AttemptOutcome,
    ExecutionHandle,
    ExecutionState,
    PollAttempt,
    PollerPhase,
    RetryBudget,
    StatusKind,
    StatusReport,
    StreamCursor,
    TrackingOutcome,
)
from flowtrack.execution.poller import (
    INTERVAL_PROFILES,
    AdaptiveInterval,
    ExecutionPoller,
    IntervalOptions,
    PollingStats,
)
from flowtrack.execution.recovery import StreamRecovery
from flowtrack.execution.retry import (
    RETRY_PROFILES,
    RetryDecision,
    RetryOptions,
    RetryPolicy,
    classify_error,
    classify_status,
    parse_retry_after,
)
from flowtrack.execution.stream import ExecutionStream, ExecutionTracker, TrackOptions
from flowtrack.execution.timeout import Deadline, TimeoutExpired, run_with_timeout_async

__all__ = [
    # Models
    "StatusKind",
    "PollerPhase",
    "TrackingOutcome",
    "AttemptOutcome",
    "ExecutionHandle",
    "StatusReport",
    "ExecutionState",
    "PollAttempt",
    "RetryBudget",
    "StreamCursor",
    # Retry
    "RetryOptions",
    "RETRY_PROFILES",
    "RetryDecision",
    "RetryPolicy",
    "classify_error",
    "classify_status",
    "parse_retry_after",
    # Circuit breaker
    "CircuitPhase",
    "CircuitBreakerOptions",
    "CircuitState",
    "CircuitStats",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    # Timeout
    "Deadline",
    "TimeoutExpired",
    "run_with_timeout_async",
    # Poller
    "IntervalOptions",
    "INTERVAL_PROFILES",
    "AdaptiveInterval",
    "PollingStats",
    "ExecutionPoller",
    # Recovery / stream
    "StreamRecovery",
    "TrackOptions",
    "ExecutionStream",
    "ExecutionTracker",
]
