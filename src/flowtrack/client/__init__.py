"""Collaborators for the tracking engine: protocols and the httpx client."""

from flowtrack.client.http import WebhookClient, parse_status_report, placeholder_execution_id
from flowtrack.client.protocols import Canceller, Resumer, StatusFetcher, Trigger

__all__ = [
    "WebhookClient",
    "parse_status_report",
    "placeholder_execution_id",
    "Trigger",
    "StatusFetcher",
    "Resumer",
    "Canceller",
]
