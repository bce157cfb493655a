"""Monitoring services for the relay engine.

Provides observability capabilities:
- SentryService: Error tracking
- MetricsService: Prometheus metrics for ingestion, ledger and delivery
"""

from alertrelay_engine.monitoring.metrics import (
    MetricsConfig,
    MetricsService,
    get_metrics,
    init_metrics,
)
from alertrelay_engine.monitoring.sentry_service import (
    SentryConfig,
    SentryService,
    get_sentry,
    init_sentry,
    scrub_sensitive_data,
)

__all__ = [
    # Metrics
    "MetricsConfig",
    "MetricsService",
    "get_metrics",
    "init_metrics",
    # Sentry
    "SentryConfig",
    "SentryService",
    "get_sentry",
    "init_sentry",
    "scrub_sensitive_data",
]
