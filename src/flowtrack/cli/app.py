"""
Root Typer application for the flowtrack CLI.

Usage::

    flowtrack trigger order-created --data '{"order": 42}' --workflow-id 7 --track
    flowtrack track 1234 --json
    flowtrack track 1234 1235
    flowtrack resume 1234 --data '{"approved": true}'
    flowtrack cancel 1234

Configuration comes from ``FLOWTRACK_*`` environment variables (see
``FlowtrackSettings``).
"""

from __future__ import annotations

import asyncio

import httpx
import typer
from typer import Typer

from flowtrack.cli.utils import console, err_console, parse_json_option, print_error, print_state
from flowtrack.client.http import WebhookClient
from flowtrack.core.errors import FlowtrackError
from flowtrack.core.logging import configure_logging
from flowtrack.core.settings import FlowtrackSettings
from flowtrack.execution.circuit_breaker import CircuitBreakerRegistry
from flowtrack.execution.models import ExecutionHandle, StatusKind
from flowtrack.execution.stream import ExecutionTracker

app = Typer(
    name="flowtrack",
    help="flowtrack: trigger and follow remote workflow executions.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from flowtrack import __version__

        typer.echo(f"flowtrack {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """flowtrack CLI: trigger webhooks, track and resume executions."""
    settings = FlowtrackSettings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)


# ── Helpers ──────────────────────────────────────────────────────────────


def make_client(settings: FlowtrackSettings) -> WebhookClient:
    """Build the HTTP client from settings."""
    return WebhookClient(
        settings.base_url,
        api_key=settings.api_key,
        timeout=settings.call_timeout,
    )


async def _follow(
    client: WebhookClient,
    handle: ExecutionHandle,
    settings: FlowtrackSettings,
    *,
    as_json: bool,
) -> int:
    """Print states until the execution ends; return the exit code."""
    tracker = ExecutionTracker(
        client,
        CircuitBreakerRegistry(settings.breaker_options()),
        resumer=client,
    )
    last = None
    async with tracker.track(handle, settings.track_options()) as stream:
        async for state in stream:
            print_state(state, as_json=as_json)
            last = state
    if last is not None and last.kind == StatusKind.SUCCESS:
        return 0
    return 1


async def _follow_many(
    client: WebhookClient,
    handles: list[ExecutionHandle],
    settings: FlowtrackSettings,
    *,
    as_json: bool,
) -> int:
    """Print merged states of several executions; 0 only if all succeeded."""
    tracker = ExecutionTracker(
        client,
        CircuitBreakerRegistry(settings.breaker_options()),
        resumer=client,
    )
    final: dict[str, StatusKind] = {}
    async for state in tracker.track_many(handles, settings.track_options()):
        print_state(state, as_json=as_json, show_id=True)
        final[state.execution_id] = state.kind
    if len(final) == len(handles) and all(
        kind == StatusKind.SUCCESS for kind in final.values()
    ):
        return 0
    return 1


def _run(coro) -> int:
    try:
        return asyncio.run(coro)
    except (FlowtrackError, httpx.HTTPError, ValueError) as e:
        print_error(e)
        return 1


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("trigger")
def trigger(
    webhook_path: str = typer.Argument(..., help="Webhook path, e.g. order-created"),
    data: str | None = typer.Option(None, "--data", "-d", help="JSON object to post"),
    workflow_id: str | None = typer.Option(
        None, "--workflow-id", "-w", help="Workflow id used to look up the execution id"
    ),
    track: bool = typer.Option(False, "--track", "-t", help="Follow the execution until it ends"),
    as_json: bool = typer.Option(False, "--json", help="Print states as JSON lines"),
) -> None:
    """Trigger a webhook and print the execution id."""
    settings = FlowtrackSettings()
    payload = parse_json_option(data)

    async def _trigger() -> int:
        async with make_client(settings) as client:
            handle = await client.trigger(webhook_path, payload, workflow_id=workflow_id)
            if handle.confirmed:
                console.print(f"Triggered execution [bold]{handle.execution_id}[/bold]")
            else:
                err_console.print(
                    f"[yellow]Triggered; remote returned no execution id "
                    f"(placeholder {handle.execution_id})[/yellow]"
                )
            if not track:
                return 0
            if not handle.confirmed:
                err_console.print("[red]Cannot track without a confirmed execution id[/red]")
                return 1
            return await _follow(client, handle, settings, as_json=as_json)

    raise typer.Exit(code=_run(_trigger()))


@app.command("track")
def track(
    execution_ids: list[str] = typer.Argument(..., help="Execution id(s) to follow"),
    as_json: bool = typer.Option(False, "--json", help="Print states as JSON lines"),
) -> None:
    """Follow executions until they end. Exit code 0 only if all succeed."""
    settings = FlowtrackSettings()

    async def _track() -> int:
        async with make_client(settings) as client:
            handles = [
                ExecutionHandle(execution_id=execution_id, endpoint=client.endpoint)
                for execution_id in execution_ids
            ]
            if len(handles) == 1:
                return await _follow(client, handles[0], settings, as_json=as_json)
            return await _follow_many(client, handles, settings, as_json=as_json)

    raise typer.Exit(code=_run(_track()))


@app.command("resume")
def resume(
    execution_id: str = typer.Argument(..., help="Waiting execution id"),
    data: str = typer.Option(..., "--data", "-d", help="JSON object to send"),
) -> None:
    """Send input to a Waiting execution."""
    settings = FlowtrackSettings()
    payload = parse_json_option(data)

    async def _resume() -> int:
        async with make_client(settings) as client:
            handle = ExecutionHandle(execution_id=execution_id, endpoint=client.endpoint)
            await client.resume(handle, payload)
            console.print(f"Resumed execution [bold]{execution_id}[/bold]")
            return 0

    raise typer.Exit(code=_run(_resume()))


@app.command("cancel")
def cancel(
    execution_id: str = typer.Argument(..., help="Execution id to stop"),
) -> None:
    """Ask the server to stop an execution."""
    settings = FlowtrackSettings()

    async def _cancel() -> int:
        async with make_client(settings) as client:
            handle = ExecutionHandle(execution_id=execution_id, endpoint=client.endpoint)
            await client.cancel(handle)
            console.print(f"Cancelled execution [bold]{execution_id}[/bold]")
            return 0

    raise typer.Exit(code=_run(_cancel()))
