"""
Tests for portfolio (SELL) recommendation generation
"""

from datetime import datetime, timedelta, UTC

import pytest

from src.core.enums import RiskLevel, SellReason, UserTier
from src.services.review.config import PortfolioRulesConfig
from src.services.review.entities import AIJudgment, SellCandidate
from src.services.review.portfolio_generator import (
    PortfolioRecommendationGenerator,
    match_sell_rule,
)
from src.services.review.tier_gate import TierGate
from tests.conftest import (
    FakeAI,
    FakeMarket,
    FakePortfolios,
    FakeTiers,
    make_coin,
    make_position,
)


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
RULES = PortfolioRulesConfig()


def _generator(session_maker, review_config, market, ai, portfolios, tiers):
    return PortfolioRecommendationGenerator(
        market,
        ai,
        portfolios,
        tiers,
        TierGate(session_maker),
        rules=review_config.portfolio,
        concurrency=review_config.concurrency,
    )


def test_stop_loss_beats_profit_target():
    """Test rule priority when several rules match"""
    position = make_position(
        1, "SOL", entry_price=100.0, current_price=96.0, stop_loss=95.0, take_profit=96.0
    )
    assert match_sell_rule(position, RULES) == SellReason.RISK_MANAGEMENT


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        # deep loss without a stop
        (dict(entry_price=100.0, current_price=85.0), SellReason.RISK_MANAGEMENT),
        # take profit hit
        (dict(entry_price=100.0, current_price=121.0, take_profit=120.0), SellReason.PROFIT_TARGET),
        # big gain without a take profit
        (dict(entry_price=100.0, current_price=130.0), SellReason.PROFIT_TARGET),
        # in profit but momentum fading
        (dict(entry_price=100.0, current_price=108.0, momentum_pct=-4.0), SellReason.MOMENTUM_LOSS),
        # pressing into resistance
        (dict(entry_price=100.0, current_price=104.0, resistance_price=105.0), SellReason.RESISTANCE),
        # gain above 10% without resistance level
        (dict(entry_price=100.0, current_price=112.0, momentum_pct=1.0), SellReason.RESISTANCE),
        # nothing to do
        (dict(entry_price=100.0, current_price=103.0, momentum_pct=1.0), None),
    ],
)
def test_sell_rules(kwargs, expected):
    assert match_sell_rule(make_position(1, "X", **kwargs), RULES) == expected


def test_build_recommendation_pnl_is_consistent(session_maker, review_config):
    """Test pnl and percent gain agree with entry/current/quantity"""
    generator = _generator(
        session_maker, review_config, FakeMarket(), FakeAI(), FakePortfolios(), FakeTiers()
    )
    position = make_position(7, "ETH", entry_price=2000.0, current_price=2600.0, quantity=1.5)
    candidate = SellCandidate(position=position, sell_reason=SellReason.PROFIT_TARGET)

    rec = generator.build_recommendation(
        candidate, AIJudgment(accept=True, confidence=1.3, reasoning="take profit"), NOW
    )

    assert rec.unrealized_pnl == pytest.approx((2600.0 - 2000.0) * 1.5)
    assert rec.percent_gain == pytest.approx(rec.unrealized_pnl / (2000.0 * 1.5) * 100)
    assert rec.percent_gain == pytest.approx(30.0)
    assert rec.confidence == 1.0
    assert rec.risk_level == RiskLevel.LOW
    assert rec.expires_at == NOW + timedelta(hours=12)


@pytest.mark.asyncio
async def test_generate_scans_only_monitored_tiers(session_maker, review_config):
    """Test that scheduled scans skip users without portfolio monitoring"""
    market = FakeMarket(quotes={"SOL": make_coin("SOL", price=96.0, change_24h=-2.0)})
    portfolios = FakePortfolios(
        {
            1: [make_position(1, "SOL", entry_price=100.0, stop_loss=95.0)],
            2: [make_position(2, "SOL", entry_price=100.0, stop_loss=95.0)],
        }
    )
    tiers = FakeTiers({1: UserTier.FREE, 2: UserTier.PREMIUM})
    generator = _generator(session_maker, review_config, market, FakeAI(), portfolios, tiers)

    result = await generator.generate([1, 2], now=NOW)

    assert result.tier_denied == 1
    assert [r.user_id for r in result.accepted] == [2]
    rec = result.accepted[0]
    assert rec.sell_reason == SellReason.RISK_MANAGEMENT
    assert rec.risk_level == RiskLevel.HIGH
    assert rec.current_price == 96.0


@pytest.mark.asyncio
async def test_unpriced_and_unmatched_positions_are_skipped(session_maker, review_config):
    market = FakeMarket(
        quotes={
            "BTC": make_coin("BTC", price=61000.0, change_24h=0.5),
            "ETH": make_coin("ETH", price=4000.0, change_24h=0.0),
        }
    )
    portfolios = FakePortfolios(
        {
            2: [
                make_position(2, "BTC", entry_price=60000.0),           # +1.7%, no rule
                make_position(2, "ETH", entry_price=3000.0),            # +33%, profit target
                make_position(2, "NOPE", entry_price=1.0),              # no quote
            ]
        }
    )
    ai = FakeAI({"ETH": AIJudgment(accept=False, confidence=0.4, reasoning="let it run")})
    generator = _generator(
        session_maker, review_config, market, ai, portfolios, FakeTiers({2: UserTier.PREMIUM})
    )

    result = await generator.generate([2], now=NOW)

    assert result.accepted == []
    assert result.ai_rejected == 1
    assert result.skipped == 2
    assert result.candidate_errors == 1
    assert result.scanned == 3
    assert sorted(market.quote_calls) == ["BTC", "ETH", "NOPE"]


@pytest.mark.asyncio
async def test_on_demand_generate_bypasses_monitoring_check(session_maker, review_config):
    market = FakeMarket(quotes={"ADA": make_coin("ADA", price=0.5)})
    portfolios = FakePortfolios({1: [make_position(1, "ADA", entry_price=0.35, quantity=1000)]})
    generator = _generator(
        session_maker, review_config, market, FakeAI(), portfolios, FakeTiers({1: UserTier.FREE})
    )

    result = await generator.generate([1], now=NOW, gated=False)

    assert result.tier_denied == 0
    assert len(result.accepted) == 1
    assert result.accepted[0].sell_reason == SellReason.PROFIT_TARGET
