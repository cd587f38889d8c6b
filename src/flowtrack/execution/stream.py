"""Public tracking API: ``ExecutionTracker.track`` -> ``ExecutionStream``.

An ``ExecutionStream`` is a lazy, finite, cancellable async iterator of
``ExecutionState``. It owns one poll task, started on the first
``__anext__``, which runs the ExecutionPoller and hands states to the
consumer through StreamRecovery.

How a stream ends::

    terminal state      -> last item is Success/Failed, outcome COMPLETED
    terminal error      -> __anext__ raises it,          outcome FAILED
    cancel() / aclose() -> StopAsyncIteration,           outcome CANCELLED

Example:
    >>> tracker = ExecutionTracker(client, CircuitBreakerRegistry(CircuitBreakerOptions.default()))
    >>> async with tracker.track(handle, TrackOptions.balanced()) as stream:
    ...     async for state in stream:
    ...         print(state.sequence, state.kind)
"""

from __future__ import annotations

import asyncio
import random
import time
import weakref
from collections.abc import AsyncIterator, Callable, Iterable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, PositiveFloat

from flowtrack.core.errors import FlowtrackError, InvalidOptionsError, RetryExhaustedError
from flowtrack.core.logging import bind_execution_context, get_logger, unbind_execution_context
from flowtrack.execution.circuit_breaker import CircuitBreakerRegistry
from flowtrack.execution.models import ExecutionHandle, ExecutionState, TrackingOutcome
from flowtrack.execution.poller import ExecutionPoller, IntervalOptions, PollingStats, Sleep
from flowtrack.execution.recovery import StreamRecovery
from flowtrack.execution.retry import RetryOptions, RetryPolicy

if TYPE_CHECKING:
    from flowtrack.client.protocols import Resumer, StatusFetcher

logger = get_logger(__name__)


class TrackOptions(BaseModel):
    """Everything one tracked execution needs, stated explicitly.

    Attributes:
        retry: Retry budget and backoff
        interval: Adaptive polling interval
        call_timeout: Per-call timeout in seconds (None = unbounded)
        deadline: Overall tracking deadline in seconds (None = unbounded)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    retry: RetryOptions
    interval: IntervalOptions
    call_timeout: PositiveFloat | None
    deadline: PositiveFloat | None = None

    @classmethod
    def balanced(cls) -> TrackOptions:
        return cls(
            retry=RetryOptions.balanced(),
            interval=IntervalOptions.balanced(),
            call_timeout=30.0,
            deadline=None,
        )


async def _supervise(poller: ExecutionPoller, recovery: StreamRecovery) -> None:
    """Run the poller to its end, recovering internal faults.

    Holds no reference to the ExecutionStream, so an abandoned stream can be
    collected and its finalizer can stop this task.
    """
    handle = poller.handle
    bind_execution_context(handle.execution_id, endpoint=handle.endpoint)
    try:
        while True:
            try:
                await poller.run(recovery.publish)
            except asyncio.CancelledError:
                raise
            except FlowtrackError as error:
                recovery.finish(error)
                return
            except Exception as error:
                try:
                    poller.recover_fault(error)
                except RetryExhaustedError as exhausted:
                    recovery.finish(exhausted)
                    return
                recovery.mark_fault()
                logger.warning(
                    "internal_fault_recovered",
                    error=str(error),
                    error_type=type(error).__name__,
                    attempts=poller.budget.attempts,
                )
            else:
                recovery.finish()
                return
    finally:
        unbind_execution_context("endpoint")


def _abandon(
    task: asyncio.Task[None], poller: ExecutionPoller, recovery: StreamRecovery
) -> None:
    """Finalizer of a stream dropped without cancel() or aclose()."""
    if task.done() or task.get_loop().is_closed():
        return
    logger.warning("tracking_abandoned", execution_id=poller.handle.execution_id)
    recovery.cancel()
    poller.abort()
    task.cancel()


class ExecutionStream:
    """Lazy async iterator over the states of one execution.

    Not restartable: once it has ended, iterating again stops immediately.

    Leaving an ``async for`` early with ``break`` does not stop the poll
    task; it stays parked handing over the next state. Use ``async with``
    or call ``aclose()``. A stream that is dropped without either is
    cancelled when it is garbage collected, and ``tracking_abandoned`` is
    logged.
    """

    def __init__(self, poller: ExecutionPoller, recovery: StreamRecovery | None = None):
        self._poller = poller
        self._recovery = recovery or StreamRecovery(poller.handle.execution_id)
        self._task: asyncio.Task[None] | None = None
        self._outcome = TrackingOutcome.PENDING
        self._closed = False

    @property
    def handle(self) -> ExecutionHandle:
        return self._poller.handle

    @property
    def poller(self) -> ExecutionPoller:
        return self._poller

    @property
    def recovery(self) -> StreamRecovery:
        return self._recovery

    @property
    def outcome(self) -> TrackingOutcome:
        return self._outcome

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def stats(self) -> PollingStats:
        return self._poller.stats

    @property
    def is_healthy(self) -> bool:
        """Health of the underlying poller (success and error rates)."""
        return self._poller.stats.is_healthy

    def __aiter__(self) -> ExecutionStream:
        return self

    async def __anext__(self) -> ExecutionState:
        if self._closed:
            raise StopAsyncIteration
        if self._task is None:
            self._task = asyncio.create_task(
                _supervise(self._poller, self._recovery),
                name=f"flowtrack-poll-{self.handle.execution_id}",
            )
            finalizer = weakref.finalize(
                self, _abandon, self._task, self._poller, self._recovery
            )
            finalizer.atexit = False

        try:
            state = await self._recovery.next()
        except Exception:
            self._closed = True
            self._outcome = TrackingOutcome.FAILED
            raise

        if state is None:
            self._closed = True
            raise StopAsyncIteration
        if state.is_terminal:
            self._outcome = TrackingOutcome.COMPLETED
        return state

    async def __aenter__(self) -> ExecutionStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def detach(self) -> None:
        """Stop back-pressuring the poller; states coalesce to the latest."""
        self._recovery.detach()

    def reattach(self) -> None:
        """Resume delivery and ask the poller for an immediate catch-up fetch."""
        self._recovery.reattach()
        self._poller.wake()

    def cancel(self) -> None:
        """Stop tracking. The consumer sees a normal end of iteration."""
        if self._outcome == TrackingOutcome.PENDING:
            self._outcome = TrackingOutcome.CANCELLED
            logger.info(
                "tracking_cancelled",
                execution_id=self.handle.execution_id,
                last_sequence=self._recovery.cursor.last_sequence,
            )
        self._closed = True
        self._recovery.cancel()
        self._poller.abort()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        """Cancel (if still running) and wait for the poll task to stop."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)


class ExecutionTracker:
    """Creates execution streams that share breakers per endpoint.

    Args:
        fetcher: StatusFetcher collaborator
        registry: Breaker registry owned by the caller
        resumer: Optional Resumer collaborator for ``resume()``
        clock: Monotonic time source
        sleep: Async sleep function
        rng: Random source for retry jitter
    """

    def __init__(
        self,
        fetcher: StatusFetcher,
        registry: CircuitBreakerRegistry,
        *,
        resumer: Resumer | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.fetcher = fetcher
        self.registry = registry
        self.resumer = resumer
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

    def track(self, handle: ExecutionHandle, options: TrackOptions) -> ExecutionStream:
        """Return a lazy stream of states for ``handle``. No request is made yet."""
        poller = ExecutionPoller(
            handle,
            self.fetcher,
            self.registry.get_or_create(handle.endpoint),
            RetryPolicy(options.retry, rng=self._rng),
            options.interval,
            call_timeout=options.call_timeout,
            deadline=options.deadline,
            clock=self._clock,
            sleep=self._sleep,
        )
        return ExecutionStream(poller)

    async def wait_for_completion(
        self, handle: ExecutionHandle, options: TrackOptions
    ) -> ExecutionState | None:
        """Drain a stream and return its last state (terminal unless cancelled)."""
        last: ExecutionState | None = None
        async with self.track(handle, options) as stream:
            async for state in stream:
                last = state
        return last

    async def track_many(
        self, handles: Iterable[ExecutionHandle], options: TrackOptions
    ) -> AsyncIterator[ExecutionState]:
        """Merge the states of several executions in arrival order.

        Each execution gets its own stream and poll task; breakers are
        shared per endpoint through the registry. States of one execution
        keep their order. The first terminal error ends the merge and is
        raised; the remaining streams are closed.

        Example:
            >>> async for state in tracker.track_many([first, second], options):
            ...     print(state.execution_id, state.kind)
        """
        streams = [self.track(handle, options) for handle in handles]
        if not streams:
            return

        # (state, None) per state, (None, error) on failure, (None, None) at the end
        queue: asyncio.Queue[tuple[ExecutionState | None, BaseException | None]] = (
            asyncio.Queue(maxsize=len(streams))
        )

        async def pump(stream: ExecutionStream) -> None:
            try:
                async for state in stream:
                    await queue.put((state, None))
            except Exception as error:
                await queue.put((None, error))
            else:
                await queue.put((None, None))

        pumps = [
            asyncio.create_task(pump(stream), name=f"flowtrack-merge-{stream.handle.execution_id}")
            for stream in streams
        ]
        remaining = len(pumps)
        logger.info("tracking_many", executions=remaining)
        try:
            while remaining:
                state, error = await queue.get()
                if error is not None:
                    raise error
                if state is None:
                    remaining -= 1
                    continue
                yield state
        finally:
            for task in pumps:
                task.cancel()
            for stream in streams:
                await stream.aclose()
            await asyncio.gather(*pumps, return_exceptions=True)

    async def resume(self, handle: ExecutionHandle, payload: dict[str, Any]) -> bool:
        """Send resume input to a Waiting execution."""
        if self.resumer is None:
            raise InvalidOptionsError("No resumer configured for this tracker")
        return await self.resumer.resume(handle, payload)


__all__ = [
    "TrackOptions",
    "ExecutionStream",
    "ExecutionTracker",
]
