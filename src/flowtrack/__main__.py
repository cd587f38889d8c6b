"""Allow ``python -m flowtrack``."""

from flowtrack.cli.app import app

app()
