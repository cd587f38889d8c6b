"""Core primitives shared by every flowtrack module: errors, logging, settings."""

from flowtrack.core.errors import (
    AuthenticationError,
    CircuitOpenError,
    DeadlineExceededError,
    ErrorCategory,
    ErrorContext,
    FatalRemoteError,
    FlowtrackError,
    InvalidOptionsError,
    MalformedResponseError,
    RetryExhaustedError,
    TransientRemoteError,
    UnknownStatusError,
    get_retry_after,
    is_retryable,
)
from flowtrack.core.logging import (
    bind_execution_context,
    configure_logging,
    get_logger,
    unbind_execution_context,
)
from flowtrack.core.settings import FlowtrackSettings

__all__ = [
    # Errors
    "ErrorCategory",
    "ErrorContext",
    "FlowtrackError",
    "TransientRemoteError",
    "CircuitOpenError",
    "UnknownStatusError",
    "FatalRemoteError",
    "AuthenticationError",
    "MalformedResponseError",
    "RetryExhaustedError",
    "DeadlineExceededError",
    "InvalidOptionsError",
    "is_retryable",
    "get_retry_after",
    # Logging
    "configure_logging",
    "get_logger",
    "bind_execution_context",
    "unbind_execution_context",
    # Settings
    "FlowtrackSettings",
]
