"""Tests for market data providers."""

import httpx
import pytest

from alertrelay_engine.config.models import MarketDataConfig
from alertrelay_engine.market_data import (
    HttpMarketDataProvider,
    StaticMarketDataProvider,
    build_market_data_provider,
)
from alertrelay_engine.models.condition import MarketSample

CONFIG = MarketDataConfig(provider="http", base_url="http://md.local")


def http_provider(handler) -> HttpMarketDataProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://md.local")
    return HttpMarketDataProvider(CONFIG, client=client)


class TestStaticProvider:
    @pytest.mark.asyncio
    async def test_serves_stored_samples_only(self):
        provider = StaticMarketDataProvider([MarketSample("BTCUSDT", "1h", price=100.0)])

        assert (await provider.get_sample("btcusdt", "1h")).price == 100.0
        assert await provider.get_sample("BTCUSDT", "4h") is None

        provider.set_sample(MarketSample("BTCUSDT", "1h", price=101.0))
        assert (await provider.get_sample("BTCUSDT", "1h")).price == 101.0

        provider.clear()
        assert await provider.get_sample("BTCUSDT", "1h") is None


class TestHttpProvider:
    @pytest.mark.asyncio
    async def test_parses_sample(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "price": "101.5",
                    "volume": 1200,
                    "average_volume": 800,
                    "change_percent": 1.5,
                    "indicators": {"rsi": 28.4, "broken": "n/a"},
                    "news": [
                        {"title": "ETF approved", "source": "Reuters", "sentiment": "POSITIVE",
                         "score": 0.8, "keywords": ["etf"], "published_at": "2026-03-02T11:00:00Z"},
                        {"source": "no title"},
                    ],
                    "timestamp": "2026-03-02T12:00:00Z",
                },
            )

        provider = http_provider(handler)
        sample = await provider.get_sample("BTCUSDT", "1h")
        await provider.close()

        assert seen[0].url.path == "/samples/BTCUSDT"
        assert seen[0].url.params["timeframe"] == "1h"
        assert sample.price == 101.5
        assert sample.volume == 1200.0
        assert sample.change is None
        assert sample.indicators == {"rsi": 28.4}
        assert len(sample.news) == 1
        assert sample.news[0].sentiment == "positive"
        assert sample.news[0].keywords == ("etf",)
        assert sample.timestamp.isoformat() == "2026-03-02T12:00:00+00:00"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler",
        [
            lambda request: httpx.Response(404),
            lambda request: httpx.Response(503, text="down"),
            lambda request: httpx.Response(200, text="not json"),
            lambda request: httpx.Response(200, json=[1, 2]),
        ],
    )
    async def test_unavailable_data_is_none(self, handler):
        provider = http_provider(handler)
        assert await provider.get_sample("BTCUSDT", "1h") is None
        await provider.close()

    @pytest.mark.asyncio
    async def test_transport_error_is_none(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = http_provider(handler)
        assert await provider.get_sample("BTCUSDT", "1h") is None
        await provider.close()


def test_build_provider():
    assert isinstance(build_market_data_provider(MarketDataConfig()), StaticMarketDataProvider)
    assert isinstance(build_market_data_provider(CONFIG), HttpMarketDataProvider)


def test_http_provider_requires_url():
    with pytest.raises(ValueError):
        MarketDataConfig(provider="http")
