"""HTTP market data provider backed by a JSON market-data/sentiment service.

Expected response of ``GET {base_url}/samples/{symbol}?timeframe=...``::

    {
      "price": 101.5, "volume": 1200, "average_volume": 800,
      "change": 1.5, "change_percent": 1.5,
      "indicators": {"rsi": 28.4},
      "news": [{"title": "...", "source": "...", "sentiment": "negative",
                "score": 0.8, "keywords": ["etf"], "url": "...",
                "published_at": "2026-01-01T00:00:00Z"}],
      "timestamp": "2026-01-01T00:00:00Z"
    }
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from alertrelay_engine.config.models import MarketDataConfig
from alertrelay_engine.models.condition import MarketSample, NewsItem

from .provider import MarketDataProvider

logger = logging.getLogger(__name__)


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class HttpMarketDataProvider(MarketDataProvider):
    """Fetches market samples over HTTP.

    Example:
        >>> provider = HttpMarketDataProvider(MarketDataConfig(provider="http", base_url="http://md"))
        >>> sample = await provider.get_sample("BTCUSDT", "1h")
    """

    def __init__(self, config: MarketDataConfig, client: httpx.AsyncClient | None = None):
        """Initialize provider.

        Args:
            config: Market data configuration (base URL, timeout)
            client: Optional preconfigured client (tests inject a MockTransport)
        """
        if not config.base_url:
            raise ValueError("HttpMarketDataProvider requires market_data.base_url")
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"), timeout=config.timeout_seconds
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get_sample(self, symbol: str, timeframe: str) -> MarketSample | None:
        """Fetch one sample; transport errors and bad payloads yield None."""
        try:
            response = await self._client.get(
                f"/samples/{symbol}", params={"timeframe": timeframe}
            )
            if response.status_code == 404:
                return None
            if response.status_code != 200:
                logger.warning(
                    f"Market data request for {symbol} {timeframe} failed: HTTP {response.status_code}"
                )
                return None
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Market data request for {symbol} {timeframe} failed: {exc}")
            return None

        if not isinstance(data, dict):
            return None
        return self._parse_sample(symbol, timeframe, data)

    def _parse_sample(self, symbol: str, timeframe: str, data: dict[str, Any]) -> MarketSample:
        """Parse API response into a MarketSample."""
        indicators = {}
        for name, value in (data.get("indicators") or {}).items():
            number = _optional_float(value)
            if number is not None:
                indicators[str(name)] = number

        news = []
        for item in data.get("news") or []:
            try:
                news.append(
                    NewsItem(
                        title=str(item["title"]),
                        source=str(item.get("source") or "unknown"),
                        sentiment=str(item.get("sentiment") or "neutral").lower(),
                        score=float(item.get("score") or 0.0),
                        keywords=tuple(str(k) for k in item.get("keywords") or ()),
                        url=item.get("url"),
                        published_at=_parse_ts(item.get("published_at")),
                    )
                )
            except (KeyError, TypeError, ValueError):
                # Skip malformed items
                continue

        return MarketSample(
            symbol=symbol,
            timeframe=timeframe,
            price=_optional_float(data.get("price")),
            volume=_optional_float(data.get("volume")),
            average_volume=_optional_float(data.get("average_volume")),
            change=_optional_float(data.get("change")),
            change_percent=_optional_float(data.get("change_percent")),
            indicators=indicators,
            news=tuple(news),
            timestamp=_parse_ts(data.get("timestamp")),
        )
