"""Tests for execution tracking models."""

from datetime import timezone

import pytest

from flowtrack.execution.models import (
    ExecutionHandle,
    ExecutionState,
    PollerPhase,
    RetryBudget,
    StatusKind,
    StatusReport,
    StreamCursor,
    utcnow,
)


def _state(sequence: int, kind: StatusKind = StatusKind.RUNNING) -> ExecutionState:
    return ExecutionState(execution_id="42", kind=kind, sequence=sequence, observed_at=utcnow())


class TestStatusKind:
    """Tests for remote status mapping."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("new", StatusKind.RUNNING),
            ("running", StatusKind.RUNNING),
            ("waiting", StatusKind.WAITING),
            ("success", StatusKind.SUCCESS),
            ("error", StatusKind.FAILED),
            ("crashed", StatusKind.FAILED),
            ("canceled", StatusKind.FAILED),
            ("SUCCESS", StatusKind.SUCCESS),
            ("paused", StatusKind.UNKNOWN),
            (None, StatusKind.UNKNOWN),
        ],
    )
    def test_from_remote(self, raw, expected):
        assert StatusKind.from_remote(raw) == expected

    def test_terminal(self):
        assert StatusKind.SUCCESS.is_terminal
        assert StatusKind.FAILED.is_terminal
        assert not StatusKind.WAITING.is_terminal
        assert not StatusKind.UNKNOWN.is_terminal

    def test_poller_phase_final(self):
        assert PollerPhase.ABORTED.is_final
        assert not PollerPhase.WAITING.is_final


class TestExecutionHandle:
    """Tests for ExecutionHandle."""

    def test_defaults(self):
        handle = ExecutionHandle(execution_id="42", endpoint="https://n8n.test")
        assert handle.confirmed is True
        assert handle.resume_url is None
        assert handle.triggered_at.tzinfo == timezone.utc

    def test_empty_id_rejected(self):
        with pytest.raises(ValueError):
            ExecutionHandle(execution_id="", endpoint="e")

    def test_empty_endpoint_rejected(self):
        with pytest.raises(ValueError):
            ExecutionHandle(execution_id="42", endpoint="")

    def test_immutable(self):
        handle = ExecutionHandle(execution_id="42", endpoint="e")
        with pytest.raises(AttributeError):
            handle.execution_id = "43"


class TestStatusReport:
    def test_same_observation(self):
        a = StatusReport(StatusKind.RUNNING, "running", {"id": "42"})
        assert a.same_observation(StatusReport(StatusKind.RUNNING, "running", {"id": "42"}))
        assert not a.same_observation(StatusReport(StatusKind.RUNNING, "new", {"id": "42"}))
        assert not a.same_observation(StatusReport(StatusKind.RUNNING, "running", {"id": "43"}))
        assert not a.same_observation(None)

    def test_state_to_dict(self):
        data = _state(3, StatusKind.SUCCESS).to_dict()
        assert data["status"] == "success"
        assert data["sequence"] == 3
        assert data["execution_id"] == "42"


class TestRetryBudget:
    def test_charge_accumulates(self):
        """Attempt time and scheduled delay are both charged; never reset."""
        budget = RetryBudget()
        budget.charge(0.5, 1.0)
        budget.charge(0.5, 2.0)
        assert budget.attempts == 2
        assert budget.elapsed == 4.0
        assert budget.last_delay == 2.0

    def test_backoff_tracked_apart_from_hinted_delay(self):
        budget = RetryBudget()
        budget.charge(0.0, 20.0, backoff=1.0)
        assert budget.last_delay == 20.0
        assert budget.last_backoff == 1.0
        assert budget.elapsed == 20.0


class TestStreamCursor:
    def test_advance(self):
        cursor = StreamCursor(pending_catch_up=True)
        state = _state(2)
        assert cursor.is_new(state)
        cursor.advance(state)
        assert cursor.last_sequence == 2
        assert cursor.last_state is state
        assert not cursor.pending_catch_up
        assert not cursor.is_new(_state(2))
        assert not cursor.is_new(_state(1))
