"""Cursor-based delivery between a poller and its consumer.

``StreamRecovery`` sits between ``ExecutionPoller.run`` (producer) and the
``ExecutionStream`` iterator (consumer). It holds one pending slot and a
``StreamCursor``:

- States whose sequence is not past the cursor (or the pending slot) are
  dropped, so a consumer never sees a state twice.
- While attached, ``publish`` waits until the consumer has taken the slot,
  so every distinct state is delivered in order.
- While detached, ``publish`` returns at once and a newer state overwrites
  the slot. On reattach the consumer gets the most recent truth only.

Single event loop only; no locks are needed because every mutation
happens between awaits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from flowtrack.core.logging import get_logger
from flowtrack.execution.models import ExecutionState, StreamCursor

logger = get_logger(__name__)


class StreamRecovery:
    """Single-slot, deduplicating hand-off for one execution stream."""

    def __init__(self, execution_id: str | None = None):
        self.execution_id = execution_id
        self._cursor = StreamCursor()
        self._pending: ExecutionState | None = None
        self._attached = True
        self._finished = False
        self._cancelled = False
        self._error: BaseException | None = None
        self._changed = asyncio.Event()

    @property
    def cursor(self) -> StreamCursor:
        return self._cursor

    @property
    def pending(self) -> ExecutionState | None:
        return self._pending

    @property
    def is_attached(self) -> bool:
        return self._attached

    @property
    def is_finished(self) -> bool:
        return self._finished or self._cancelled

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    async def _wait_until(self, predicate: Callable[[], bool]) -> None:
        while not predicate():
            await self._changed.wait()

    def _accepts(self, state: ExecutionState) -> bool:
        floor = self._cursor.last_sequence
        if self._pending is not None:
            floor = max(floor, self._pending.sequence)
        return state.sequence > floor

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def offer(self, state: ExecutionState) -> bool:
        """Place ``state`` in the slot without waiting. False if dropped."""
        if self._cancelled or self._finished:
            return False
        if not self._accepts(state):
            logger.debug(
                "duplicate_state_dropped",
                sequence=state.sequence,
                last_sequence=self._cursor.last_sequence,
            )
            return False
        self._pending = state
        self._notify()
        return True

    async def publish(self, state: ExecutionState) -> bool:
        """Offer ``state`` and, while attached, wait until it is consumed."""
        if not self.offer(state):
            return False
        await self._wait_until(
            lambda: self._pending is not state or not self._attached or self._cancelled
        )
        return True

    def finish(self, error: BaseException | None = None) -> None:
        """Mark the producer done; ``error`` is raised after the slot drains."""
        if self._finished:
            return
        self._finished = True
        self._error = error
        self._notify()

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    async def next(self) -> ExecutionState | None:
        """Next deliverable state, or None once the stream has ended.

        Raises:
            The producer's terminal error, after pending states are delivered
        """
        await self._wait_until(
            lambda: self._pending is not None or self._finished or self._cancelled
        )
        if self._cancelled:
            return None

        if self._pending is not None:
            state = self._pending
            self._pending = None
            self._cursor.advance(state)
            self._notify()
            return state

        if self._error is not None:
            error, self._error = self._error, None
            raise error
        return None

    def detach(self) -> None:
        """Consumer went away. Producer stops waiting; states coalesce."""
        if not self._attached:
            return
        self._attached = False
        self._cursor.pending_catch_up = True
        logger.info("stream_detached", last_sequence=self._cursor.last_sequence)
        self._notify()

    def reattach(self) -> None:
        """Consumer is back. The coalesced state, if any, is delivered next."""
        if self._attached:
            return
        self._attached = True
        logger.info(
            "stream_reattached",
            last_sequence=self._cursor.last_sequence,
            pending_sequence=self._pending.sequence if self._pending else None,
        )
        self._notify()

    def mark_fault(self) -> None:
        """Flag the cursor for a catch-up fetch after an internal fault."""
        self._cursor.pending_catch_up = True

    def cancel(self) -> None:
        """End delivery immediately; pending states are discarded."""
        self._cancelled = True
        self._pending = None
        self._notify()


__all__ = ["StreamRecovery"]
