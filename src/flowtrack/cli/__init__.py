"""
CLI layer for flowtrack.

Provides a Typer application that triggers webhooks, follows executions
and resumes waiting ones. All tracking logic lives in
``flowtrack.execution``; this package handles only terminal transport:
argument parsing, coloured output and exit codes.

Entry point::

    flowtrack --help
"""

from flowtrack.cli.app import app

__all__ = ["app"]
