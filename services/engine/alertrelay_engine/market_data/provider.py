"""Abstract market data provider interface."""

from abc import ABC, abstractmethod

from alertrelay_engine.models.condition import MarketSample


class MarketDataProvider(ABC):
    """Abstract interface for market-data / sentiment collaborators."""

    @abstractmethod
    async def get_sample(self, symbol: str, timeframe: str) -> MarketSample | None:
        """
        Fetch the current market sample for a symbol.

        Args:
            symbol: Trading symbol (e.g., "BTCUSDT")
            timeframe: Chart timeframe (e.g., "1h")

        Returns:
            MarketSample, or None when no data is available right now
        """
        ...

    async def close(self) -> None:
        """Release transport resources (no-op by default)."""
        return None
