"""
Unit tests for the market condition assessor
"""

import pytest

from src.core.enums import MarketRegime, VolatilityLevel
from src.services.review.config import IntervalConfig
from src.services.review.constants import BASE_INTERVAL_MINUTES
from src.services.review.entities import MarketSignals
from src.services.review.market_conditions import MarketConditionAssessor


@pytest.fixture
def assessor():
    return MarketConditionAssessor(IntervalConfig(min_minutes=5, max_minutes=240))


@pytest.mark.parametrize(
    "avg_range,expected",
    [
        (0.5, VolatilityLevel.LOW),
        (2.99, VolatilityLevel.LOW),
        (3.0, VolatilityLevel.MEDIUM),
        (5.5, VolatilityLevel.MEDIUM),
        (6.0, VolatilityLevel.HIGH),
        (9.9, VolatilityLevel.HIGH),
        (10.0, VolatilityLevel.EXTREME),
        (25.0, VolatilityLevel.EXTREME),
    ],
)
def test_classify_volatility_thresholds(assessor, avg_range, expected):
    """Test volatility buckets by average daily range"""
    assert assessor.classify_volatility(MarketSignals(avg_daily_range_pct=avg_range)) == expected


def test_upstream_classification_wins(assessor):
    """Test that provider-supplied classifications override the tables"""
    signals = MarketSignals(
        avg_daily_range_pct=1.0,
        trend_pct=20.0,
        volatility=VolatilityLevel.EXTREME,
        regime=MarketRegime.BEAR,
    )
    conditions = assessor.assess(signals)

    assert conditions.volatility_level == VolatilityLevel.EXTREME
    assert conditions.market_regime == MarketRegime.BEAR


def test_classify_regime(assessor):
    """Test regime rules: volatile first, then trend, then sideways"""
    volatile = MarketSignals(avg_daily_range_pct=8.0, price_movement_pct=55.0, trend_pct=9.0)
    assert assessor.classify_regime(volatile, VolatilityLevel.HIGH) == MarketRegime.VOLATILE

    # Same movement in a calm market is not "volatile"
    assert assessor.classify_regime(volatile, VolatilityLevel.MEDIUM) == MarketRegime.BULL

    bear = MarketSignals(trend_pct=-7.0)
    assert assessor.classify_regime(bear, VolatilityLevel.LOW) == MarketRegime.BEAR

    flat = MarketSignals(trend_pct=1.5)
    assert assessor.classify_regime(flat, VolatilityLevel.LOW) == MarketRegime.SIDEWAYS


def test_base_intervals_shrink_with_volatility():
    """Test that higher volatility never means a longer base interval"""
    levels = list(VolatilityLevel)
    intervals = [BASE_INTERVAL_MINUTES[level] for level in levels]
    assert intervals == sorted(intervals, reverse=True)


def test_compute_interval_values(assessor):
    """Test interval = base x regime factor, rounded"""
    assert assessor.compute_interval(VolatilityLevel.LOW, MarketRegime.BULL) == 240
    assert assessor.compute_interval(VolatilityLevel.MEDIUM, MarketRegime.BEAR) == 105
    assert assessor.compute_interval(VolatilityLevel.HIGH, MarketRegime.SIDEWAYS) == 75
    assert assessor.compute_interval(VolatilityLevel.EXTREME, MarketRegime.BULL) == 15


def test_compute_interval_is_clamped(assessor):
    """Test both interval bounds"""
    # 240 * 1.25 = 300 -> max
    assert assessor.compute_interval(VolatilityLevel.LOW, MarketRegime.SIDEWAYS) == 240
    # 15 * 0.25 = 3.75 -> min
    assert assessor.compute_interval(VolatilityLevel.EXTREME, MarketRegime.VOLATILE) == 5


def test_activity_burst_shortens_interval(assessor):
    """Test that a news or price burst applies the activity factor"""
    calm = MarketSignals(avg_daily_range_pct=4.0, trend_pct=6.0)
    busy = MarketSignals(avg_daily_range_pct=4.0, trend_pct=6.0, news_rate_per_hour=12.0)

    calm_conditions = assessor.assess(calm)
    busy_conditions = assessor.assess(busy)

    assert calm_conditions.review_interval_minutes == 120
    assert busy_conditions.review_interval_minutes == 90
    assert "activity burst" in busy_conditions.reasoning


def test_assess_is_deterministic(assessor):
    """Test same signals -> same conditions"""
    signals = MarketSignals(
        avg_daily_range_pct=7.2,
        price_movement_pct=30.0,
        trend_pct=-6.0,
        btc_dominance_pct=54.1,
        top_movers=["SOL", "AVAX"],
    )
    first = assessor.assess(signals)
    second = assessor.assess(signals)

    assert first == second
    assert first.volatility_level == VolatilityLevel.HIGH
    assert first.market_regime == MarketRegime.BEAR
    assert first.top_movers == ("SOL", "AVAX")
    assert first.btc_dominance_pct == 54.1
