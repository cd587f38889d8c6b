"""Execution tracking models.

Immutable snapshots (``ExecutionHandle``, ``StatusReport``,
``ExecutionState``, ``PollAttempt``) and the small mutable bookkeeping
records owned by exactly one poller or stream (``RetryBudget``,
``StreamCursor``).

Status mapping from the remote API::

    new, running              -> RUNNING
    waiting                   -> WAITING
    success                   -> SUCCESS
    error, crashed, canceled  -> FAILED
    anything else             -> UNKNOWN
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class StatusKind(str, Enum):
    """Normalised status of a remote execution."""

    RUNNING = "running"
    WAITING = "waiting"    # Paused until external input arrives
    SUCCESS = "success"
    FAILED = "failed"
    UNKNOWN = "unknown"    # Unrecognised or missing status

    @property
    def is_terminal(self) -> bool:
        return self in (StatusKind.SUCCESS, StatusKind.FAILED)

    @classmethod
    def from_remote(cls, raw: str | None) -> StatusKind:
        """Map a raw remote status string onto a StatusKind."""
        if raw is None:
            return cls.UNKNOWN
        return _REMOTE_STATUS_MAP.get(raw.strip().lower(), cls.UNKNOWN)


_REMOTE_STATUS_MAP: dict[str, StatusKind] = {
    "new": StatusKind.RUNNING,
    "running": StatusKind.RUNNING,
    "waiting": StatusKind.WAITING,
    "success": StatusKind.SUCCESS,
    "error": StatusKind.FAILED,
    "crashed": StatusKind.FAILED,
    "canceled": StatusKind.FAILED,
}


class PollerPhase(str, Enum):
    """Lifecycle phase of one ExecutionPoller."""

    IDLE = "idle"
    POLLING = "polling"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in (PollerPhase.SUCCEEDED, PollerPhase.FAILED, PollerPhase.ABORTED)


class TrackingOutcome(str, Enum):
    """How an ExecutionStream ended, as seen by its consumer."""

    PENDING = "pending"        # Still running (or never started)
    COMPLETED = "completed"    # Ended with a terminal ExecutionState
    FAILED = "failed"          # Ended with a terminal error
    CANCELLED = "cancelled"    # Ended by cancel()/aclose()


class AttemptOutcome(str, Enum):
    """Result of one status-fetch attempt."""

    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True)
class ExecutionHandle:
    """Identity of one triggered remote execution.

    Attributes:
        execution_id: Remote execution id, or a synthesized placeholder
        endpoint: Endpoint key used to pick the shared circuit breaker
        triggered_at: When the trigger call was accepted
        resume_url: Address to post resume input to, if the remote gave one
        webhook_path: Webhook path the execution was started from
        workflow_id: Remote workflow id, if known
        confirmed: False when ``execution_id`` is a synthesized placeholder
    """

    execution_id: str
    endpoint: str
    triggered_at: datetime = field(default_factory=utcnow)
    resume_url: str | None = None
    webhook_path: str | None = None
    workflow_id: str | None = None
    confirmed: bool = True

    def __post_init__(self) -> None:
        if not self.execution_id:
            raise ValueError("execution_id cannot be empty")
        if not self.endpoint:
            raise ValueError("endpoint cannot be empty")


@dataclass(frozen=True)
class StatusReport:
    """One status observation as returned by a StatusFetcher."""

    kind: StatusKind
    raw_status: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def same_observation(self, other: StatusReport | ExecutionState | None) -> bool:
        """True if ``other`` reports the same status and payload."""
        if other is None:
            return False
        return (
            self.kind == other.kind
            and self.raw_status == other.raw_status
            and self.payload == other.payload
        )


@dataclass(frozen=True)
class ExecutionState:
    """Snapshot of a remote execution at one poll, ordered by ``sequence``."""

    execution_id: str
    kind: StatusKind
    sequence: int
    observed_at: datetime
    raw_status: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "execution_id": self.execution_id,
            "status": self.kind.value,
            "raw_status": self.raw_status,
            "sequence": self.sequence,
            "observed_at": self.observed_at.isoformat(),
            "payload": self.payload,
        }


@dataclass(frozen=True)
class PollAttempt:
    """One status-fetch try."""

    index: int
    interval: float
    outcome: AttemptOutcome
    error: str | None = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class RetryBudget:
    """Failure budget of one execution. Never reset.

    ``elapsed`` accumulates time charged to failures: the duration of each
    failed attempt plus the backoff delay scheduled after it.
    ``last_backoff`` is the jittered backoff without retry_after hints; it
    keeps the next backoff from shrinking.
    """

    attempts: int = 0
    elapsed: float = 0.0
    next_delay: float = 0.0
    last_delay: float = 0.0
    last_backoff: float = 0.0

    def charge(
        self, attempt_duration: float, delay: float, backoff: float | None = None
    ) -> None:
        """Record one failed attempt and the delay scheduled after it."""
        self.attempts += 1
        self.elapsed += max(attempt_duration, 0.0) + max(delay, 0.0)
        self.last_delay = delay
        self.next_delay = delay
        if backoff is not None:
            self.last_backoff = backoff


@dataclass
class StreamCursor:
    """Recovery bookmark owned by StreamRecovery."""

    last_sequence: int = 0
    last_state: ExecutionState | None = None
    pending_catch_up: bool = False

    def is_new(self, state: ExecutionState) -> bool:
        return state.sequence > self.last_sequence

    def advance(self, state: ExecutionState) -> None:
        """Move the cursor to a state that was just delivered."""
        self.last_sequence = state.sequence
        self.last_state = state
        self.pending_catch_up = False


__all__ = [
    "utcnow",
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
]
