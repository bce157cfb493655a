"""Configuration package for the relay engine."""

from .loader import load_config
from .models import (
    ConditionsConfig,
    DispatchConfig,
    LedgerConfig,
    MarketDataConfig,
    PipelineConfig,
    RateLimitConfig,
    RelayConfig,
    SchedulerConfig,
    TelegramChannelConfig,
    ValidatorConfig,
)

__all__ = [
    "ConditionsConfig",
    "DispatchConfig",
    "LedgerConfig",
    "MarketDataConfig",
    "PipelineConfig",
    "RateLimitConfig",
    "RelayConfig",
    "SchedulerConfig",
    "TelegramChannelConfig",
    "ValidatorConfig",
    "load_config",
]
