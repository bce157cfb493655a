"""In-memory market data provider for tests and dry runs."""

from alertrelay_engine.models.condition import MarketSample

from .provider import MarketDataProvider


class StaticMarketDataProvider(MarketDataProvider):
    """Serves samples that were explicitly put into it; nothing is invented."""

    def __init__(self, samples: list[MarketSample] | None = None):
        """
        Initialize provider.

        Args:
            samples: Initial samples, keyed internally by (symbol, timeframe)
        """
        self._samples: dict[tuple[str, str], MarketSample] = {}
        for sample in samples or []:
            self.set_sample(sample)

    def set_sample(self, sample: MarketSample) -> None:
        """Replace the sample served for the sample's symbol and timeframe."""
        self._samples[(sample.symbol.upper(), sample.timeframe)] = sample

    def clear(self) -> None:
        self._samples.clear()

    async def get_sample(self, symbol: str, timeframe: str) -> MarketSample | None:
        """Return the stored sample, or None."""
        return self._samples.get((symbol.upper(), timeframe))
