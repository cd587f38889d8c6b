"""
httpx client for an n8n-style automation server.

Implements the Trigger, StatusFetcher, Resumer and Canceller protocols:

- ``trigger``: ``POST {base_url}/webhook/{path}``
- ``fetch_status``: ``GET {base_url}/api/v1/executions/{id}``
- ``resume``: ``POST {resume_url}`` or ``{base_url}/api/resume-workflow/{id}``
- ``cancel``: ``DELETE {base_url}/api/cancel-workflow/{id}``
- ``list_executions``: ``GET {base_url}/api/v1/executions``

The client does not retry and does not classify errors: non-2xx responses
raise ``httpx.HTTPStatusError`` and malformed bodies raise ``ValueError``.
Retrying is the tracking engine's job.

Examples:
    >>> async with WebhookClient("https://n8n.example.com", api_key="...") as client:
    ...     handle = await client.trigger("order-created", {"order": 42})
    ...     report = await client.fetch_status(handle)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx

from flowtrack.core.errors import FatalRemoteError
from flowtrack.core.logging import get_logger
from flowtrack.execution.models import ExecutionHandle, StatusKind, StatusReport

logger = get_logger(__name__)

PLACEHOLDER_PREFIX = "webhook-"


def placeholder_execution_id(webhook_path: str, epoch_ms: int | None = None) -> str:
    """Synthesize an id for a trigger whose response carried none.

    Two triggers of the same path within one millisecond get the same id.
    Handles carrying such an id are marked ``confirmed=False``.
    """
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    return f"{PLACEHOLDER_PREFIX}{webhook_path}-{epoch_ms}"


def parse_status_report(body: Any) -> StatusReport:
    """Turn an execution JSON body into a StatusReport.

    Raises:
        ValueError: If the body is not an object or lacks ``id``
    """
    if not isinstance(body, dict):
        raise ValueError(f"Execution body must be a JSON object, got {type(body).__name__}")
    if not body.get("id"):
        raise ValueError("Execution body is missing required field 'id'")

    raw_status = body.get("status")
    if raw_status is not None and not isinstance(raw_status, str):
        raise ValueError(f"Execution status must be a string, got {type(raw_status).__name__}")

    payload = {key: value for key, value in body.items() if key != "status"}
    payload["id"] = str(body["id"])
    return StatusReport(
        kind=StatusKind.from_remote(raw_status),
        raw_status=raw_status,
        payload=payload,
    )


class WebhookClient:
    """
    Async HTTP client for webhooks and the executions REST API.

    Args:
        base_url: Server root, e.g. ``https://n8n.example.com``
        api_key: Sent as ``X-N8N-API-KEY`` when set
        timeout: Default httpx timeout in seconds
        headers: Extra headers for every request
        client: Pre-built ``httpx.AsyncClient`` (not closed by ``aclose``)
        transport: Transport for the internally built client (tests)
        lookup_delay: Pause before looking up the execution id after a trigger
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        lookup_delay: float = 0.5,
    ):
        if not base_url:
            raise ValueError("base_url cannot be empty")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.lookup_delay = lookup_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
        )
        self._headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if api_key:
            self._headers["X-N8N-API-KEY"] = api_key
        if headers:
            self._headers.update(headers)

    @property
    def endpoint(self) -> str:
        """Endpoint key for circuit breakers."""
        return self.base_url

    async def __aenter__(self) -> WebhookClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # Trigger
    # -------------------------------------------------------------------------

    async def trigger(
        self,
        webhook_path: str,
        payload: dict[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
    ) -> ExecutionHandle:
        """Call the webhook and return a handle for the started execution."""
        if not webhook_path:
            raise ValueError("webhook_path cannot be empty")
        path = webhook_path.strip("/")

        response = await self._client.post(
            f"{self.base_url}/webhook/{path}",
            json=payload or {},
            headers=self._headers,
        )
        response.raise_for_status()

        execution_id = _execution_id_from(response)
        if execution_id is None and workflow_id and self.api_key:
            execution_id = await self._lookup_latest(workflow_id)

        confirmed = execution_id is not None
        if execution_id is None:
            execution_id = placeholder_execution_id(path)

        logger.info(
            "execution_triggered",
            webhook_path=path,
            execution_id=execution_id,
            confirmed=confirmed,
        )
        return ExecutionHandle(
            execution_id=execution_id,
            endpoint=self.endpoint,
            webhook_path=path,
            workflow_id=workflow_id,
            confirmed=confirmed,
        )

    async def _lookup_latest(self, workflow_id: str) -> str | None:
        if self.lookup_delay > 0:
            await asyncio.sleep(self.lookup_delay)
        try:
            executions = await self.list_executions(workflow_id=workflow_id, limit=1)
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("execution_lookup_failed", workflow_id=workflow_id, error=str(e))
            return None
        if not executions:
            return None
        return str(executions[0]["id"])

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def fetch_status(self, handle: ExecutionHandle) -> StatusReport:
        """Fetch the current status of ``handle``."""
        self._require_real_id(handle, "polled")
        response = await self._client.get(
            f"{self.base_url}/api/v1/executions/{handle.execution_id}",
            headers=self._headers,
        )
        response.raise_for_status()
        return parse_status_report(response.json())

    async def list_executions(
        self,
        *,
        workflow_id: str | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Recent executions, newest first. Entries without an id are skipped."""
        params: dict[str, Any] = {"limit": limit}
        if workflow_id:
            params["workflowId"] = workflow_id

        response = await self._client.get(
            f"{self.base_url}/api/v1/executions",
            params=params,
            headers=self._headers,
        )
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError("Executions listing must be a JSON object")
        data = body.get("data") or []
        return [item for item in data if isinstance(item, dict) and item.get("id")]

    # -------------------------------------------------------------------------
    # Resume
    # -------------------------------------------------------------------------

    async def resume(self, handle: ExecutionHandle, payload: dict[str, Any]) -> bool:
        """Post resume input to a Waiting execution."""
        if not payload:
            raise ValueError("Resume payload cannot be empty")

        url = handle.resume_url or f"{self.base_url}/api/resume-workflow/{handle.execution_id}"
        response = await self._client.post(url, json={"body": payload}, headers=self._headers)
        response.raise_for_status()
        logger.info("execution_resumed", execution_id=handle.execution_id)
        return True

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    async def cancel(self, handle: ExecutionHandle) -> bool:
        """Ask the server to stop a running or waiting execution.

        This is a remote action. Local tracking of the execution is stopped
        with ``ExecutionStream.cancel()``; the stream then sees the remote
        ``canceled`` status only if it is still polling.
        """
        self._require_real_id(handle, "cancelled")
        response = await self._client.delete(
            f"{self.base_url}/api/cancel-workflow/{handle.execution_id}",
            headers=self._headers,
        )
        response.raise_for_status()
        logger.info("execution_cancelled", execution_id=handle.execution_id)
        return True

    def _require_real_id(self, handle: ExecutionHandle, action: str) -> None:
        if not handle.confirmed or handle.execution_id.startswith(PLACEHOLDER_PREFIX):
            raise FatalRemoteError(
                f"Execution id '{handle.execution_id}' is a placeholder and cannot be "
                f"{action}; trigger with a workflow id and an API key to obtain a real id"
            ).with_context(execution_id=handle.execution_id)


def _execution_id_from(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    value = body.get("executionId") or body.get("id")
    return str(value) if value else None


__all__ = [
    "WebhookClient",
    "parse_status_report",
    "placeholder_execution_id",
    "PLACEHOLDER_PREFIX",
]
