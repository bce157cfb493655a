"""Prometheus metrics for the relay engine.

Exposes ingestion, ledger, condition and delivery counters for scraping.

Example:
    >>> from alertrelay_engine.monitoring.metrics import MetricsService
    >>>
    >>> metrics = MetricsService(MetricsConfig(port=9090))
    >>> metrics.start_server()
    >>> metrics.record_signal("accepted")
    >>> metrics.record_delivery("sent")
"""

import logging
import threading
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

# Module-level singleton
_metrics: "MetricsService | None" = None


@dataclass(frozen=True)
class MetricsConfig:
    """Configuration for metrics service.

    Attributes:
        enabled: Whether metrics collection is enabled
        port: HTTP server port for Prometheus scraping
        prefix: Metric name prefix
    """

    enabled: bool = True
    port: int = 9090
    prefix: str = "alertrelay"


class MetricsService:
    """Prometheus metrics service for the signal-to-notification pipeline.

    Every instance owns its own CollectorRegistry so several services (one
    per test, for example) never clash on metric names.

    Tracks:
    - Signals by ingestion result
    - Trade lifecycle events
    - Condition triggers by condition type
    - Delivery outcomes and send latency
    """

    def __init__(self, config: MetricsConfig | None = None) -> None:
        """Initialize metrics service.

        Args:
            config: Metrics configuration (uses defaults if not provided)
        """
        self.config = config or MetricsConfig()
        self.registry = CollectorRegistry()
        self._server_started = False
        self._lock = threading.Lock()

        self._signals: Counter | None = None
        self._trade_events: Counter | None = None
        self._condition_triggers: Counter | None = None
        self._deliveries: Counter | None = None
        self._send_latency: Histogram | None = None
        self._open_trades: Gauge | None = None

        if self.config.enabled:
            self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        """Initialize Prometheus metrics objects."""
        prefix = self.config.prefix

        self._signals = Counter(
            f"{prefix}_signals_total",
            "Signals received by ingestion result",
            ["result"],
            registry=self.registry,
        )

        self._trade_events = Counter(
            f"{prefix}_trade_events_total",
            "Trade ledger events by type",
            ["event_type"],
            registry=self.registry,
        )

        self._condition_triggers = Counter(
            f"{prefix}_condition_triggers_total",
            "Alert condition triggers by condition type",
            ["condition_type"],
            registry=self.registry,
        )

        self._deliveries = Counter(
            f"{prefix}_deliveries_total",
            "Delivery attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self._send_latency = Histogram(
            f"{prefix}_send_latency_seconds",
            "Channel send latency",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        self._open_trades = Gauge(
            f"{prefix}_open_trades",
            "Open trades across all configurations",
            registry=self.registry,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self) -> bool:
        """Start the Prometheus HTTP server.

        Returns:
            True if server started successfully, False otherwise
        """
        if not self.config.enabled:
            logger.info("Metrics disabled, server not started")
            return False

        with self._lock:
            if self._server_started:
                logger.warning("Metrics server already started")
                return True

            try:
                start_http_server(self.config.port, registry=self.registry)
            except OSError as e:
                logger.error(f"Failed to start metrics server: {e}")
                return False
            self._server_started = True
            logger.info(f"Prometheus metrics server started on port {self.config.port}")
            return True

    @property
    def is_enabled(self) -> bool:
        """Check if metrics collection is enabled."""
        return self.config.enabled

    # --- Pipeline ---

    def record_signal(self, result: str) -> None:
        """Record an ingested signal.

        Args:
            result: "accepted", "duplicate", "rejected" or "failed"
        """
        if not self.config.enabled or self._signals is None:
            return
        self._signals.labels(result=result).inc()

    def record_trade(self, event_type: str) -> None:
        """Record a ledger event ("trade.opened", "trade.closed", ...)."""
        if not self.config.enabled or self._trade_events is None:
            return
        self._trade_events.labels(event_type=event_type).inc()

    def record_condition_trigger(self, condition_type: str) -> None:
        if not self.config.enabled or self._condition_triggers is None:
            return
        self._condition_triggers.labels(condition_type=condition_type).inc()

    def set_open_trades(self, count: int) -> None:
        if not self.config.enabled or self._open_trades is None:
            return
        self._open_trades.set(count)

    # --- Delivery ---

    def record_delivery(self, outcome: str) -> None:
        """Record a delivery outcome.

        Args:
            outcome: "sent", "delivered", "retry", "failed" or "lease_lost"
        """
        if not self.config.enabled or self._deliveries is None:
            return
        self._deliveries.labels(outcome=outcome).inc()

    def observe_send_latency(self, seconds: float) -> None:
        if not self.config.enabled or self._send_latency is None:
            return
        self._send_latency.observe(seconds)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Read a sample value from this service's registry (None when absent)."""
        return self.registry.get_sample_value(f"{self.config.prefix}_{name}", labels or {})


def init_metrics(config: MetricsConfig | None = None) -> MetricsService:
    """Initialize the global metrics service.

    Args:
        config: Metrics configuration

    Returns:
        Initialized MetricsService
    """
    global _metrics
    _metrics = MetricsService(config)
    return _metrics


def get_metrics() -> MetricsService | None:
    """Get the global metrics service instance.

    Returns:
        MetricsService if initialized, None otherwise
    """
    return _metrics
