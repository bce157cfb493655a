"""Market data providers."""

from alertrelay_engine.config.models import MarketDataConfig

from .http_provider import HttpMarketDataProvider
from .provider import MarketDataProvider
from .static_provider import StaticMarketDataProvider


def build_market_data_provider(config: MarketDataConfig) -> MarketDataProvider:
    """Return the configured provider implementation."""
    if config.provider == "http":
        return HttpMarketDataProvider(config)
    return StaticMarketDataProvider()


__all__ = [
    "HttpMarketDataProvider",
    "MarketDataProvider",
    "StaticMarketDataProvider",
    "build_market_data_provider",
]
