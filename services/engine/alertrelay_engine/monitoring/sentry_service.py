"""Sentry integration for the relay engine.

Failures are reported at the three places the relay can lose work:
signal processing (ledger or fan-out), delivery tasks that exhaust their
attempts, and scheduler loop iterations. Everything sent is scrubbed of
bot tokens, webhook secrets, signatures and recipient addresses.
"""

import os
from dataclasses import dataclass, field
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from alertrelay_engine import __version__

REDACTED = "[REDACTED]"

# Substrings of keys whose values never leave the process
SENSITIVE_KEYS = ("secret", "token", "password", "signature", "authorization", "address", "chat_id")


@dataclass
class SentryConfig:
    """Sentry settings, read from the ``SENTRY_*`` environment."""

    dsn: str
    environment: str = "development"
    release: str = ""
    traces_sample_rate: float = 0.0
    enabled: bool = True
    ignore_errors: list[str] = field(
        default_factory=lambda: ["CancelledError", "ConnectionResetError"]
    )

    @classmethod
    def from_env(cls) -> "SentryConfig | None":
        """Build from SENTRY_DSN and friends; None when no DSN is set."""
        dsn = os.environ.get("SENTRY_DSN", "")
        if not dsn:
            return None
        return cls(
            dsn=dsn,
            environment=os.environ.get("SENTRY_ENVIRONMENT", "development"),
            release=os.environ.get("SENTRY_RELEASE", ""),
            traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0") or 0),
        )


def scrub_sensitive_data(data: Any) -> Any:
    """Redact values under secret-looking keys, walking nested dicts and lists."""
    if isinstance(data, list):
        return [scrub_sensitive_data(item) for item in data]
    if not isinstance(data, dict):
        return data
    return {
        key: REDACTED
        if any(marker in str(key).lower() for marker in SENSITIVE_KEYS)
        else scrub_sensitive_data(value)
        for key, value in data.items()
    }


class SentryService:
    """Reports relay failures to Sentry once ``initialize`` succeeded.

    Every method is a no-op before initialization, so callers only need to
    check that ``get_sentry()`` returned a service.
    """

    def __init__(self, config: SentryConfig):
        self.config = config
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        """Initialize the SDK; False when disabled or no DSN is configured."""
        if not self.config.enabled or not self.config.dsn:
            return False

        sentry_sdk.init(
            dsn=self.config.dsn,
            environment=self.config.environment,
            release=self.config.release or f"alertrelay@{__version__}",
            traces_sample_rate=self.config.traces_sample_rate,
            integrations=[
                AsyncioIntegration(),
                HttpxIntegration(),
                # Errors are captured explicitly below, not from log records
                LoggingIntegration(level=None, event_level=None),
            ],
            before_send=self._before_send,
        )
        self._initialized = True
        return True

    def _before_send(self, event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
        exc_info = hint.get("exc_info")
        if exc_info and exc_info[0] is not None and exc_info[0].__name__ in self.config.ignore_errors:
            return None
        scrubbed: dict[str, Any] = scrub_sensitive_data(event)
        return scrubbed

    def capture_error(self, error: Exception, context: dict[str, Any] | None = None) -> str | None:
        """
        Capture an engine-level exception (startup, scheduler loops).

        Args:
            error: Exception to report
            context: Extra fields attached as the ``relay`` context

        Returns:
            Sentry event id, or None when not initialized
        """
        if not self._initialized:
            return None
        with sentry_sdk.new_scope() as scope:
            if context:
                scope.set_context("relay", scrub_sensitive_data(context))
            return sentry_sdk.capture_exception(error)

    def capture_signal_failure(
        self, error: Exception, signal_id: str, configuration: str, phase: str
    ) -> str | None:
        """
        Capture a signal that could not be processed.

        Args:
            error: Exception raised while processing
            signal_id: Tracking id of the stored signal
            configuration: Configuration key, e.g. ``BTCUSDT|1h|breakout``
            phase: ``ledger`` or ``fan_out``

        Returns:
            Sentry event id, or None when not initialized
        """
        if not self._initialized:
            return None
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("phase", phase)
            scope.set_tag("configuration", configuration)
            scope.set_context("signal", {"signal_id": signal_id})
            return sentry_sdk.capture_exception(error)

    def capture_delivery_failure(
        self, task_id: str, channel_id: str, attempts: int, error: str | None
    ) -> str | None:
        """Report a delivery task that exhausted its attempts (warning level)."""
        if not self._initialized:
            return None
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("channel", channel_id)
            scope.set_context("delivery", {"task_id": task_id, "attempts": attempts, "error": error})
            return sentry_sdk.capture_message(
                f"Delivery via {channel_id} failed after {attempts} attempts", level="warning"
            )

    def add_breadcrumb(self, category: str, message: str, data: dict[str, Any] | None = None) -> None:
        """Record a step of the signal -> ledger -> delivery flow."""
        if not self._initialized:
            return
        sentry_sdk.add_breadcrumb(
            category=category, message=message, data=scrub_sensitive_data(data or {}), level="info"
        )

    def flush(self, timeout: float = 2.0) -> None:
        if self._initialized:
            sentry_sdk.flush(timeout=timeout)


_service: SentryService | None = None


def init_sentry(config: SentryConfig) -> SentryService:
    """Initialize and install the process-wide Sentry service."""
    global _service
    _service = SentryService(config)
    _service.initialize()
    return _service


def get_sentry() -> SentryService | None:
    """The process-wide service, or None when Sentry was never configured."""
    return _service
