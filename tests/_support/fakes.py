"""Fakes for driving the tracking engine deterministically.

- ``FakeClock``: a monotonic clock whose ``sleep`` advances time instantly
- ``ScriptedFetcher``: a StatusFetcher that plays back a script of
  reports, exceptions and gated steps
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from flowtrack.execution.models import ExecutionHandle, StatusKind, StatusReport


class FakeClock:
    """Monotonic clock for tests. ``sleep`` advances time and yields once."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


def report(raw_status: str | None, **payload: Any) -> StatusReport:
    """Build a StatusReport the way the HTTP client would."""
    body = {"id": "42", **payload}
    return StatusReport(
        kind=StatusKind.from_remote(raw_status),
        raw_status=raw_status,
        payload=body,
    )


Step = StatusReport | BaseException | Callable[[], Awaitable[StatusReport]]


class ScriptedFetcher:
    """StatusFetcher that plays back ``steps`` in order, repeating the last.

    A step is a StatusReport (returned), an exception (raised) or an async
    callable (awaited, e.g. to block on an event).
    """

    def __init__(self, *steps: Step):
        if not steps:
            raise ValueError("at least one step is required")
        self.steps = list(steps)
        self.calls = 0
        self.handles: list[ExecutionHandle] = []

    async def fetch_status(self, handle: ExecutionHandle) -> StatusReport:
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        self.handles.append(handle)
        await asyncio.sleep(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step()
        return step


def gated(
    result: StatusReport | BaseException,
) -> tuple[asyncio.Event, Callable[[], Awaitable[StatusReport]]]:
    """A fetch step that blocks until the returned event is set."""
    release = asyncio.Event()

    async def step() -> StatusReport:
        await release.wait()
        if isinstance(result, BaseException):
            raise result
        return result

    return release, step


async def wait_until(predicate: Callable[[], bool], *, limit: int = 200) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    for _ in range(limit):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
