"""
CLI utility helpers: output formatting and argument parsing.
"""

from __future__ import annotations

import json
from typing import Any

import typer
from rich.console import Console

from flowtrack.core.errors import FlowtrackError
from flowtrack.execution.models import ExecutionState, StatusKind

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    StatusKind.RUNNING: "cyan",
    StatusKind.WAITING: "yellow",
    StatusKind.SUCCESS: "bold green",
    StatusKind.FAILED: "bold red",
    StatusKind.UNKNOWN: "dim",
}


def parse_json_option(value: str | None, *, option: str = "--data") -> dict[str, Any]:
    """Parse a JSON object passed on the command line."""
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"not valid JSON: {e}", param_hint=option) from e
    if not isinstance(data, dict):
        raise typer.BadParameter("must be a JSON object", param_hint=option)
    return data


def print_state(
    state: ExecutionState, *, as_json: bool = False, show_id: bool = False
) -> None:
    """Render one execution state. ``show_id`` prefixes the execution id."""
    if as_json:
        typer.echo(json.dumps(state.to_dict(), default=str))
        return
    style = _STATUS_STYLE.get(state.kind, "")
    prefix = f"[bold]{state.execution_id}[/bold] " if show_id else ""
    console.print(
        f"{prefix}[dim]#{state.sequence}[/dim] {state.observed_at:%H:%M:%S} "
        f"[{style}]{state.kind.value}[/{style}]"
        + (f" [dim]({state.raw_status})[/dim]" if state.raw_status else "")
    )


def print_error(error: BaseException) -> None:
    """Render an error to stderr."""
    if isinstance(error, FlowtrackError):
        err_console.print(
            f"[bold red]Error[/bold red] ({error.category.value}): {error.message}"
        )
    else:
        err_console.print(f"[bold red]Error[/bold red]: {error}")
