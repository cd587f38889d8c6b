"""
Collaborator protocols for the tracking engine.

The engine never talks HTTP itself. It depends on narrow shapes: start a
job and get a handle, fetch a job's current status, send input to a job
that is waiting for it, and stop a job remotely. ``WebhookClient``
implements all of them; tests use small fakes.

Manifesto:
    Protocols define contracts without inheritance. Any object with the
    right async methods works, so the engine can be driven by a fake in
    tests or by a different remote in production.

Architecture:
    ::

        protocols.py
        ├── Trigger        : trigger(webhook_path, payload) -> ExecutionHandle
        ├── StatusFetcher  : fetch_status(handle) -> StatusReport
        ├── Resumer        : resume(handle, payload) -> bool
        └── Canceller      : cancel(handle) -> bool

Tags:
    protocol, collaborator, flowtrack
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from flowtrack.execution.models import ExecutionHandle, StatusReport


@runtime_checkable
class Trigger(Protocol):
    """Starts a remote execution."""

    async def trigger(
        self,
        webhook_path: str,
        payload: dict[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
    ) -> ExecutionHandle:
        """Start a job. May return an unconfirmed placeholder handle."""
        ...


@runtime_checkable
class StatusFetcher(Protocol):
    """
    Fetches the current status of one execution.

    Implementations raise transport errors, ``httpx.HTTPStatusError`` or
    ``ValueError`` (malformed body); the engine classifies them. Raising a
    ``FlowtrackError`` subclass directly is also fine.
    """

    async def fetch_status(self, handle: ExecutionHandle) -> StatusReport:
        ...


@runtime_checkable
class Resumer(Protocol):
    """Sends input to a Waiting execution."""

    async def resume(self, handle: ExecutionHandle, payload: dict[str, Any]) -> bool:
        ...


@runtime_checkable
class Canceller(Protocol):
    """Stops a remote execution."""

    async def cancel(self, handle: ExecutionHandle) -> bool:
        ...


__all__ = ["Trigger", "StatusFetcher", "Resumer", "Canceller"]
