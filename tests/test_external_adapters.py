"""
Tests for the CoinGecko and OpenAI adapters (no network)
"""

from types import SimpleNamespace

import pytest

from src.core.enums import CoinUniverse
from src.core.exceptions import ValidationError
from src.services.review.coingecko_market_data import CoinGeckoMarketData
from src.services.review.openai_judge import OpenAIJudge
from tests.conftest import make_coin


def _market_item(symbol, price, high, low, change_24h, volume, rank):
    return {
        "id": symbol.lower() + "-id",
        "symbol": symbol.lower(),
        "name": symbol.title(),
        "market_cap_rank": rank,
        "market_cap": price * 1_000_000,
        "current_price": price,
        "total_volume": volume,
        "high_24h": high,
        "low_24h": low,
        "price_change_percentage_24h": change_24h,
        "price_change_percentage_24h_in_currency": change_24h,
        "price_change_percentage_7d_in_currency": 1.0,
    }


class ScriptedCoinGecko(CoinGeckoMarketData):
    """Adapter with _make_request answered from a table."""

    def __init__(self, responses):
        super().__init__(rate_limit=100)
        self.responses = responses
        self.requests = []

    async def _make_request(self, endpoint, params=None):
        self.requests.append((endpoint, params or {}))
        return self.responses[endpoint]


@pytest.mark.asyncio
async def test_coingecko_market_signals():
    items = [
        _market_item("BTC", 100.0, 104.0, 100.0, 2.0, 1000.0, 1),   # 4% range
        _market_item("ETH", 10.0, 11.0, 10.0, -7.0, 500.0, 2),      # 10% range, mover
        _market_item("SOL", 5.0, 5.5, 5.0, 9.0, 500.0, 3),          # 10% range, mover
        _market_item("ADA", 1.0, 1.0, 1.0, 0.0, 0.0, 4),            # no range
    ]
    adapter = ScriptedCoinGecko(
        {
            "/global": {
                "data": {
                    "market_cap_percentage": {"btc": 52.5},
                    "market_cap_change_percentage_24h_usd": -3.2,
                }
            },
            "/coins/markets": items,
        }
    )

    signals = await adapter.get_market_signals()

    assert signals.avg_daily_range_pct == pytest.approx(6.0)
    assert signals.price_movement_pct == pytest.approx(50.0)
    assert signals.top_movers == ["SOL", "ETH"]
    assert signals.btc_dominance_pct == 52.5
    assert signals.trend_pct == -3.2
    assert signals.volume_change_pct == 0.0

    # Second call compares volume with the first
    for item in items:
        item["total_volume"] *= 2
    assert (await adapter.get_market_signals()).volume_change_pct == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_coingecko_universe_and_quote():
    items = [_market_item("BTC", 60000.0, 61000.0, 59000.0, 1.5, 3e10, 1)]
    adapter = ScriptedCoinGecko({"/coins/markets": items})

    universe = await adapter.get_universe(CoinUniverse.TOP10)
    assert universe[0].symbol == "BTC"
    assert universe[0].price_change_24h == 1.5
    assert adapter.requests[-1][1]["per_page"] == 10

    quote = await adapter.get_quote("btc")
    assert quote.current_price == 60000.0
    # Known symbol resolved by id
    assert adapter.requests[-1][1]["ids"] == "btc-id"

    adapter.responses["/coins/markets"] = []
    with pytest.raises(ValidationError):
        await adapter.get_quote("NOPE")


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _judge(content):
    completions = FakeCompletions(content)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIJudge(client=client, model="test-model"), completions


@pytest.mark.asyncio
async def test_openai_judge_parses_json():
    from src.services.review.discovery_generator import DiscoveryRecommendationGenerator
    from src.core.enums import DiscoveryStrategy

    judge, completions = _judge('{"accept": true, "confidence": 0.72, "reasoning": " strong volume "}')
    candidate = DiscoveryRecommendationGenerator(None, None).score(
        make_coin("BTC"), DiscoveryStrategy.MODERATE, CoinUniverse.TOP50
    )

    judgment = await judge.judge(candidate)

    assert judgment.accept is True
    assert judgment.confidence == 0.72
    assert judgment.reasoning == "strong volume"
    assert completions.kwargs["model"] == "test-model"
    assert completions.kwargs["response_format"] == {"type": "json_object"}


def test_openai_judge_parse_errors():
    with pytest.raises(ValidationError):
        OpenAIJudge.parse("not json", "BTC")
    with pytest.raises(ValidationError):
        OpenAIJudge.parse('{"confidence": 0.9}', "BTC")
    with pytest.raises(ValidationError):
        OpenAIJudge.parse('{"accept": true, "confidence": "high"}', "BTC")

    # Confidence is clamped
    assert OpenAIJudge.parse('{"accept": false, "confidence": 4}', "BTC").confidence == 1.0
