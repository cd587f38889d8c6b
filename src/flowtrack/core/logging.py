"""
Structured logging for flowtrack.

All modules log through structlog with snake_case event names and
key/value context (``logger.info("poll_succeeded", status="running")``).
The CLI calls ``configure_logging`` once at startup; library users may
call it themselves or configure structlog their own way.

Examples:
    >>> from flowtrack.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("retry_scheduled", attempt=1, delay=2.0)

Output (JSON format)::

    {"@timestamp": "2026-10-18T10:00:00Z", "log.level": "info",
     "service.name": "flowtrack", "event": "retry_scheduled",
     "attempt": 1, "delay": 2.0}

Tags:
    logging, structlog, observability, flowtrack
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Store service name for metadata
_SERVICE_NAME = "flowtrack"


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service.name", _SERVICE_NAME)
    return event_dict


def _elasticsearch_compatible(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Make field names Elasticsearch/ECS compatible."""
    if "timestamp" in event_dict:
        event_dict["@timestamp"] = event_dict.pop("timestamp")

    if "level" in event_dict:
        event_dict["log.level"] = event_dict.pop("level")

    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "flowtrack",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(_elasticsearch_compatible)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
        context_class=dict,
        # Logs go to stderr so `flowtrack track --json` keeps stdout clean.
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_execution_context(execution_id: str, **kwargs: Any) -> None:
    """Bind the execution id (and extras) to all subsequent logs in this task."""
    structlog.contextvars.bind_contextvars(execution_id=execution_id, **kwargs)


def unbind_execution_context(*keys: str) -> None:
    """Remove execution keys from the logging context."""
    structlog.contextvars.unbind_contextvars("execution_id", *keys)


__all__ = [
    "configure_logging",
    "get_logger",
    "bind_execution_context",
    "unbind_execution_context",
]
