"""Environment-driven settings for flowtrack.

``FlowtrackSettings`` reads ``FLOWTRACK_*`` environment variables and an
optional ``.env`` file, and turns them into the explicit option values the
tracking engine takes. The engine itself never reads settings; only the
CLI (and applications that want env-driven config) do.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Profiles are referenced by name here and resolved once into fully
    specified option values; nothing downstream has a hidden default.

Features:
    - **env_prefix:** ``FLOWTRACK_BASE_URL``, ``FLOWTRACK_API_KEY``, ...
    - **.env file support:** Automatic loading via pydantic-settings
    - **Extra ignore:** Unknown env vars don't cause startup failures
    - **track_options() / breaker_options():** Settings -> option values

Examples:
    >>> settings = FlowtrackSettings(base_url="https://n8n.example.com")
    >>> settings.track_options().retry.max_attempts
    3
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from flowtrack.core.errors import InvalidOptionsError

if TYPE_CHECKING:
    from flowtrack.execution.circuit_breaker import CircuitBreakerOptions
    from flowtrack.execution.stream import TrackOptions


class FlowtrackSettings(BaseSettings):
    """Settings for the CLI and env-configured applications.

    Fields
    ──────
    base_url           : Automation server root URL
    api_key            : Sent as X-N8N-API-KEY
    call_timeout       : Per-call timeout in seconds
    retry_profile      : balanced | conservative | aggressive | minimal
    interval_profile   : high_frequency | balanced | battery_optimized | minimal
    failure_threshold  : Consecutive failures that open the breaker
    open_duration      : Seconds the breaker stays open
    deadline           : Overall tracking deadline in seconds (unset = none)
    log_level          : Structlog log level
    json_logs          : Force JSON (true) or console (false) logs
    """

    model_config = SettingsConfigDict(
        env_prefix="FLOWTRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Remote ───────────────────────────────────────────────────
    base_url: str = "http://localhost:5678"
    api_key: str | None = None
    call_timeout: float = Field(default=30.0, gt=0)

    # ── Tracking ─────────────────────────────────────────────────
    retry_profile: str = "balanced"
    interval_profile: str = "balanced"
    failure_threshold: int = Field(default=5, ge=1)
    open_duration: float = Field(default=60.0, gt=0)
    deadline: float | None = None

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    def track_options(self) -> TrackOptions:
        """Resolve profiles into a ``TrackOptions`` value.

        Raises:
            InvalidOptionsError: Unknown profile name or invalid values
        """
        from flowtrack.execution.poller import IntervalOptions
        from flowtrack.execution.retry import RetryOptions
        from flowtrack.execution.stream import TrackOptions

        try:
            return TrackOptions(
                retry=RetryOptions.profile(self.retry_profile),
                interval=IntervalOptions.profile(self.interval_profile),
                call_timeout=self.call_timeout,
                deadline=self.deadline,
            )
        except KeyError as e:
            raise InvalidOptionsError(str(e.args[0]), cause=e) from e
        except ValidationError as e:
            raise InvalidOptionsError(f"Invalid tracking options: {e}", cause=e) from e

    def breaker_options(self) -> CircuitBreakerOptions:
        """Circuit breaker options built on the default profile."""
        from flowtrack.execution.circuit_breaker import CircuitBreakerOptions

        base = CircuitBreakerOptions.default()
        try:
            return CircuitBreakerOptions(
                failure_threshold=self.failure_threshold,
                open_duration=self.open_duration,
                failure_window=base.failure_window,
                open_backoff_multiplier=base.open_backoff_multiplier,
                max_open_duration=max(base.max_open_duration, self.open_duration),
            )
        except ValidationError as e:
            raise InvalidOptionsError(f"Invalid breaker options: {e}", cause=e) from e


__all__ = ["FlowtrackSettings"]
