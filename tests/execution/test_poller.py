"""Tests for AdaptiveInterval, PollingStats and ExecutionPoller."""

import asyncio
import random

import httpx
import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from flowtrack.core.errors import (
    CircuitOpenError,
    DeadlineExceededError,
    FatalRemoteError,
    MalformedResponseError,
    RetryExhaustedError,
    TransientRemoteError,
)
from flowtrack.execution.circuit_breaker import CircuitBreaker, CircuitPhase
from flowtrack.execution.models import (
    AttemptOutcome,
    PollAttempt,
    PollerPhase,
    StatusKind,
)
from flowtrack.execution.poller import (
    INTERVAL_PROFILES,
    AdaptiveInterval,
    ExecutionPoller,
    IntervalOptions,
    PollingStats,
)
from flowtrack.execution.retry import RetryPolicy
from tests._support.fakes import ScriptedFetcher, gated, report, wait_until


class TestIntervalOptions:
    """Tests for IntervalOptions validation and profiles."""

    @pytest.mark.parametrize("name", sorted(INTERVAL_PROFILES))
    def test_profiles(self, name):
        options = IntervalOptions.profile(name)
        assert options.max_interval >= options.min_interval

    def test_unknown_profile(self):
        with pytest.raises(KeyError):
            IntervalOptions.profile("turbo")

    def test_max_below_min_rejected(self):
        with pytest.raises(ValidationError):
            IntervalOptions(min_interval=10.0, max_interval=1.0, growth=1.5)

    def test_growth_below_one_rejected(self):
        with pytest.raises(ValidationError):
            IntervalOptions(min_interval=1.0, max_interval=10.0, growth=0.9)


class TestAdaptiveInterval:
    """Tests for the adaptive interval schedule."""

    def test_running_streak_grows(self, interval_options):
        """N-th Running observation schedules min * growth ** (N - 1), capped."""
        interval = AdaptiveInterval(interval_options)
        delays = [interval.next(StatusKind.RUNNING) for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_waiting_resets(self, interval_options):
        """A Waiting observation after a Running streak schedules min_interval."""
        interval = AdaptiveInterval(interval_options)
        for _ in range(4):
            interval.next(StatusKind.RUNNING)
        assert interval.next(StatusKind.WAITING) == 1.0
        assert interval.next(StatusKind.WAITING) == 1.0
        assert interval.next(StatusKind.RUNNING) == 1.0
        assert interval.next(StatusKind.RUNNING) == 2.0

    def test_reset(self, interval_options):
        interval = AdaptiveInterval(interval_options)
        interval.next(StatusKind.RUNNING)
        interval.next(StatusKind.RUNNING)
        interval.reset()
        assert interval.next(StatusKind.RUNNING) == 1.0


class TestPollingStats:
    def test_rates_and_window(self):
        stats = PollingStats()
        assert stats.success_rate == 0.0
        for i in range(25):
            outcome = AttemptOutcome.SUCCESS if i % 5 else AttemptOutcome.TRANSIENT_ERROR
            stats.record(PollAttempt(index=i, interval=1.0, outcome=outcome), StatusKind.RUNNING)
        assert stats.total_polls == 25
        assert stats.errors == 5
        assert stats.success_rate == 0.8
        assert stats.error_rate == 0.2
        assert len(stats.recent_attempts) == 20
        assert stats.to_dict()["status_counts"] == {"running": 20}

    def test_health(self):
        """Healthy while the success rate stays above 70% and errors below 30%."""
        stats = PollingStats()
        assert stats.is_healthy
        for i in range(7):
            stats.record(PollAttempt(index=i, interval=1.0, outcome=AttemptOutcome.SUCCESS))
        for i in range(3):
            stats.record(
                PollAttempt(index=7 + i, interval=1.0, outcome=AttemptOutcome.TRANSIENT_ERROR)
            )
        assert stats.success_rate == pytest.approx(0.7)
        assert not stats.is_healthy
        stats.record(PollAttempt(index=10, interval=1.0, outcome=AttemptOutcome.SUCCESS))
        assert stats.is_healthy

    def test_average_response_time(self):
        """Only successful fetches count toward the average."""
        stats = PollingStats()
        assert stats.average_response_time == 0.0
        for i, seconds in enumerate([0.2, 0.4]):
            stats.record(
                PollAttempt(index=i, interval=1.0, outcome=AttemptOutcome.SUCCESS),
                response_time=seconds,
            )
        stats.record(
            PollAttempt(index=2, interval=1.0, outcome=AttemptOutcome.TRANSIENT_ERROR),
            response_time=9.0,
        )
        assert stats.average_response_time == pytest.approx(0.3)
        assert stats.to_dict()["average_response_time"] == pytest.approx(0.3)


@pytest.fixture
def breaker(breaker_options, clock):
    return CircuitBreaker("https://n8n.test", breaker_options, clock=clock)


@pytest.fixture
def make_poller(handle, breaker, retry_options, interval_options, clock):
    def factory(fetcher, *, retry=None, deadline=None, sleep=None, **kwargs):
        return ExecutionPoller(
            handle,
            fetcher,
            breaker,
            RetryPolicy(retry or retry_options, rng=random.Random(1)),
            interval_options,
            deadline=deadline,
            clock=clock,
            sleep=sleep or clock.sleep,
            **kwargs,
        )

    return factory


class Collector:
    def __init__(self):
        self.states = []

    async def __call__(self, state):
        self.states.append(state)

    @property
    def sequences(self):
        return [s.sequence for s in self.states]


class TestExecutionPoller:
    """Tests for the poll loop."""

    @pytest.mark.asyncio
    async def test_polls_until_success(self, make_poller, clock):
        """First fetch is immediate; Running streak grows the interval."""
        fetcher = ScriptedFetcher(report("running"), report("running"), report("success"))
        poller = make_poller(fetcher)
        emit = Collector()

        final = await poller.run(emit)

        assert final.kind == StatusKind.SUCCESS
        assert poller.phase == PollerPhase.SUCCEEDED
        assert clock.sleeps == [1.0, 2.0]
        assert fetcher.calls == 3

    @pytest.mark.asyncio
    async def test_sequence_moves_only_on_change(self, make_poller):
        """Identical re-observations keep their sequence number."""
        fetcher = ScriptedFetcher(
            report("running"),
            report("running"),
            report("running", progress=50),
            report("success"),
        )
        emit = Collector()
        await make_poller(fetcher).run(emit)
        assert emit.sequences == [1, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_waiting_schedules_min_interval(self, make_poller, clock):
        fetcher = ScriptedFetcher(
            report("running"), report("running"), report("waiting"), report("success")
        )
        await make_poller(fetcher).run(Collector())
        assert clock.sleeps == [1.0, 2.0, 1.0]

    @pytest.mark.asyncio
    async def test_failed_status_is_terminal(self, make_poller):
        poller = make_poller(ScriptedFetcher(report("error")))
        final = await poller.run(Collector())
        assert final.kind == StatusKind.FAILED
        assert poller.phase == PollerPhase.FAILED

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, make_poller, clock):
        """Backoff delays replace the interval; one state is emitted."""
        fetcher = ScriptedFetcher(
            TransientRemoteError("503", status_code=503),
            TransientRemoteError("503", status_code=503),
            report("success"),
        )
        poller = make_poller(fetcher)
        emit = Collector()

        with capture_logs() as logs:
            await poller.run(emit)

        assert emit.sequences == [1]
        assert clock.sleeps == [1.0, 2.0]
        assert poller.budget.attempts == 2
        assert poller.budget.elapsed == 3.0
        scheduled = [e for e in logs if e["event"] == "retry_scheduled"]
        assert [e["delay"] for e in scheduled] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, make_poller, clock):
        """max_attempts=3: delays 1, 2, 4 then RetryExhaustedError on the 4th failure."""
        fetcher = ScriptedFetcher(TransientRemoteError("503", status_code=503))
        poller = make_poller(fetcher)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await poller.run(Collector())

        assert clock.sleeps == [1.0, 2.0, 4.0]
        assert fetcher.calls == 4
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, TransientRemoteError)
        assert exc_info.value.context.execution_id == "42"
        assert poller.phase == PollerPhase.FAILED

    @pytest.mark.asyncio
    async def test_fatal_error_stops_immediately(self, make_poller, clock):
        fetcher = ScriptedFetcher(FatalRemoteError("gone", status_code=404))
        poller = make_poller(fetcher)
        with pytest.raises(FatalRemoteError):
            await poller.run(Collector())
        assert fetcher.calls == 1
        assert clock.sleeps == []
        assert poller.stats.errors == 1

    @pytest.mark.asyncio
    async def test_http_404_is_fatal(self, make_poller):
        request = httpx.Request("GET", "https://n8n.test/api/v1/executions/42")
        error = httpx.HTTPStatusError(
            "404", request=request, response=httpx.Response(404, request=request)
        )
        with pytest.raises(FatalRemoteError) as exc_info:
            await make_poller(ScriptedFetcher(error)).run(Collector())
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_malformed_body_is_fatal(self, make_poller):
        with pytest.raises(MalformedResponseError):
            await make_poller(ScriptedFetcher(ValueError("no id"))).run(Collector())

    @pytest.mark.asyncio
    async def test_unknown_status_emitted_then_retried(self, make_poller, clock):
        """Unknown is emitted, then handled like a transient failure."""
        fetcher = ScriptedFetcher(report("paused"), report("success"))
        poller = make_poller(fetcher)
        emit = Collector()

        await poller.run(emit)

        assert [s.kind for s in emit.states] == [StatusKind.UNKNOWN, StatusKind.SUCCESS]
        assert clock.sleeps == [1.0]
        assert poller.budget.attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_status_resets_running_streak(self, make_poller, clock):
        """Running after an Unknown starts a fresh streak at min_interval."""
        fetcher = ScriptedFetcher(
            report("running"),
            report("running"),
            report("running", step=2),
            report("weird"),
            report("running", step=3),
            report("success"),
        )
        await make_poller(fetcher).run(Collector())
        assert clock.sleeps == [1.0, 2.0, 4.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_retry_after_applies_to_one_retry_only(self, make_poller, clock):
        """A Retry-After hint delays only its own retry."""
        fetcher = ScriptedFetcher(
            TransientRemoteError("429", status_code=429, retry_after=20.0),
            TransientRemoteError("503", status_code=503),
            report("success"),
        )
        poller = make_poller(fetcher)
        await poller.run(Collector())
        assert clock.sleeps == [20.0, 2.0]
        assert poller.budget.last_backoff == 2.0

    @pytest.mark.asyncio
    async def test_records_response_time(self, make_poller, clock):
        async def slow():
            clock.advance(0.5)
            return report("success")

        poller = make_poller(ScriptedFetcher(slow))
        await poller.run(Collector())
        assert poller.stats.average_response_time == pytest.approx(0.5)
        assert poller.stats.is_healthy

    @pytest.mark.asyncio
    async def test_late_verdict_from_closed_phase_ignored(self, make_poller, breaker, clock):
        """A fetch admitted while closed does not decide the later half-open trial."""
        release, step = gated(report("success"))
        fetcher = ScriptedFetcher(step)
        poller = make_poller(fetcher)

        task = asyncio.create_task(poller.run(Collector()))
        await wait_until(lambda: fetcher.calls == 1)
        breaker.force_open()
        clock.advance(30.0)
        breaker.acquire()
        assert breaker.phase == CircuitPhase.HALF_OPEN

        release.set()
        await asyncio.wait_for(task, timeout=1.0)
        await wait_until(lambda: poller.inflight == 0)

        assert breaker.phase == CircuitPhase.HALF_OPEN
        assert breaker.snapshot().trial_budget == 0

    @pytest.mark.asyncio
    async def test_internal_fault_escapes(self, make_poller, breaker):
        """Unclassified exceptions leave run() and do not count against the breaker."""
        poller = make_poller(ScriptedFetcher(RuntimeError("bug")))
        with pytest.raises(RuntimeError):
            await poller.run(Collector())
        await asyncio.sleep(0)
        assert breaker.stats.failed_requests == 0

    @pytest.mark.asyncio
    async def test_recover_fault_charges_budget(self, make_poller):
        """After a recovered fault, run() resumes with an immediate fetch."""
        fetcher = ScriptedFetcher(RuntimeError("bug"), report("success"))
        poller = make_poller(fetcher)
        with pytest.raises(RuntimeError):
            await poller.run(Collector())

        poller.recover_fault(RuntimeError("bug"))
        final = await poller.run(Collector())

        assert final.kind == StatusKind.SUCCESS
        assert poller.budget.attempts == 1

    @pytest.mark.asyncio
    async def test_recover_fault_exhausted(self, make_poller, retry_options):
        poller = make_poller(ScriptedFetcher(report("running")))
        for _ in range(retry_options.max_attempts):
            poller.recover_fault(RuntimeError("bug"))
        with pytest.raises(RetryExhaustedError):
            poller.recover_fault(RuntimeError("bug"))

    @pytest.mark.asyncio
    async def test_breaker_outcomes(self, make_poller, breaker):
        """Transient failures count against the breaker; fatal answers do not."""
        fetcher = ScriptedFetcher(
            TransientRemoteError("503", status_code=503),
            FatalRemoteError("gone", status_code=404),
        )
        with pytest.raises(FatalRemoteError):
            await make_poller(fetcher).run(Collector())
        assert breaker.stats.failed_requests == 1
        assert breaker.stats.successful_requests == 1
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_open_circuit_waits_without_calling(self, make_poller, breaker, clock):
        """An open circuit is a transient failure with no remote call."""
        breaker.force_open()
        fetcher = ScriptedFetcher(report("success"))
        poller = make_poller(fetcher)

        final = await poller.run(Collector())

        # Delay floor is the remaining open time (30s)
        assert clock.sleeps == [30.0]
        assert fetcher.calls == 1
        assert final.kind == StatusKind.SUCCESS
        assert breaker.phase == CircuitPhase.CLOSED
        assert isinstance(poller.last_error, CircuitOpenError)

    @pytest.mark.asyncio
    async def test_deadline_caps_pauses(self, make_poller, clock):
        """The overall deadline ends polling with DeadlineExceededError."""
        fetcher = ScriptedFetcher(TransientRemoteError("503"))
        poller = make_poller(fetcher, deadline=3.0)

        with pytest.raises(DeadlineExceededError) as exc_info:
            await poller.run(Collector())

        assert isinstance(exc_info.value, RetryExhaustedError)
        assert clock.sleeps == [1.0, 2.0]
        assert exc_info.value.deadline == 3.0

    @pytest.mark.asyncio
    async def test_deadline_while_circuit_open(self, make_poller, breaker, clock):
        """The deadline fires even while the breaker stays open."""
        breaker.force_open()
        fetcher = ScriptedFetcher(report("success"))
        poller = make_poller(fetcher, deadline=10.0)

        with pytest.raises(DeadlineExceededError):
            await poller.run(Collector())

        assert fetcher.calls == 0
        assert clock.sleeps == [10.0]

    @pytest.mark.asyncio
    async def test_call_timeout(self, make_poller):
        """A slow fetch times out and counts as transient."""

        async def slow():
            await asyncio.sleep(5)

        fetcher = ScriptedFetcher(slow, report("success"))
        poller = make_poller(fetcher, call_timeout=0.01)
        final = await poller.run(Collector())
        assert final.kind == StatusKind.SUCCESS
        assert poller.budget.attempts == 1

    @pytest.mark.asyncio
    async def test_wake_interrupts_pause(self, make_poller):
        """wake() cuts a pause short."""

        async def never(delay):
            await asyncio.Event().wait()

        fetcher = ScriptedFetcher(report("running"), report("success"))
        poller = make_poller(fetcher, sleep=never)
        first_seen = asyncio.Event()

        async def emit(state):
            first_seen.set()

        task = asyncio.create_task(poller.run(emit))
        await first_seen.wait()
        await wait_until(lambda: fetcher.calls == 1)
        poller.wake()

        final = await asyncio.wait_for(task, timeout=1.0)
        assert final.kind == StatusKind.SUCCESS

    @pytest.mark.asyncio
    async def test_cancel_during_fetch_reports_to_breaker(self, make_poller, breaker, clock):
        """A cancelled poll still reports its half-open trial to the breaker."""
        breaker.force_open()
        clock.advance(30.0)
        release, step = gated(report("success"))
        fetcher = ScriptedFetcher(step)
        poller = make_poller(fetcher)
        emit = Collector()

        task = asyncio.create_task(poller.run(emit))
        await wait_until(lambda: fetcher.calls == 1)
        assert breaker.phase == CircuitPhase.HALF_OPEN

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert poller.inflight == 1

        release.set()
        await wait_until(lambda: poller.inflight == 0)

        assert emit.states == []
        assert breaker.phase == CircuitPhase.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_failed_trial_reopens(self, make_poller, breaker, clock):
        breaker.force_open()
        clock.advance(30.0)
        release, step = gated(TransientRemoteError("503"))
        poller = make_poller(ScriptedFetcher(step))

        task = asyncio.create_task(poller.run(Collector()))
        await wait_until(lambda: poller.inflight == 1)
        task.cancel()
        release.set()
        await wait_until(lambda: poller.inflight == 0)

        assert breaker.phase == CircuitPhase.OPEN
        assert breaker.snapshot().reopen_count == 1

    @pytest.mark.asyncio
    async def test_abort(self, make_poller):
        poller = make_poller(ScriptedFetcher(report("running")))
        poller.abort()
        assert poller.phase == PollerPhase.ABORTED
