"""
Market Condition Assessor

Turns raw market signals into a MarketConditions snapshot and the review
interval for the next run. Pure and deterministic: same signals, same result.
"""
from src.core.enums import VolatilityLevel, MarketRegime
from src.services.review.config import IntervalConfig, get_config
from src.services.review.constants import (
    VOLATILITY_THRESHOLDS,
    REGIME_RULES,
    DEFAULT_REGIME,
    BASE_INTERVAL_MINUTES,
    REGIME_INTERVAL_FACTORS,
    NEWS_BURST_RATE_PER_HOUR,
    PRICE_BURST_PCT,
    ACTIVITY_BURST_FACTOR,
)
from src.services.review.entities import MarketSignals, MarketConditions


class MarketConditionAssessor:
    """
    Table-driven market classifier.

    Interval = base(volatility) x factor(regime) x activity factor,
    rounded and clamped to [min_minutes, max_minutes].
    """

    def __init__(self, interval_config: IntervalConfig | None = None):
        self.interval_config = interval_config or get_config().interval

    def classify_volatility(self, signals: MarketSignals) -> VolatilityLevel:
        if signals.volatility is not None:
            return signals.volatility

        for upper_bound, level in VOLATILITY_THRESHOLDS:
            if signals.avg_daily_range_pct < upper_bound:
                return level
        return VolatilityLevel.EXTREME

    def classify_regime(self, signals: MarketSignals, volatility: VolatilityLevel) -> MarketRegime:
        if signals.regime is not None:
            return signals.regime

        for predicate, regime in REGIME_RULES:
            if predicate(signals, volatility):
                return regime
        return DEFAULT_REGIME

    def activity_factor(self, signals: MarketSignals) -> float:
        burst = (
            signals.news_rate_per_hour >= NEWS_BURST_RATE_PER_HOUR
            or signals.price_movement_pct >= PRICE_BURST_PCT
        )
        return ACTIVITY_BURST_FACTOR if burst else 1.0

    def compute_interval(
        self,
        volatility: VolatilityLevel,
        regime: MarketRegime,
        activity_factor: float = 1.0,
    ) -> int:
        raw = BASE_INTERVAL_MINUTES[volatility] * REGIME_INTERVAL_FACTORS[regime] * activity_factor
        cfg = self.interval_config
        return max(cfg.min_minutes, min(cfg.max_minutes, round(raw)))

    def assess(self, signals: MarketSignals) -> MarketConditions:
        volatility = self.classify_volatility(signals)
        regime = self.classify_regime(signals, volatility)
        factor = self.activity_factor(signals)
        interval = self.compute_interval(volatility, regime, factor)

        reasoning = (
            f"{volatility.value} volatility (avg range {signals.avg_daily_range_pct:.1f}%), "
            f"{regime.value} regime (trend {signals.trend_pct:+.1f}%)"
        )
        if factor != 1.0:
            reasoning += f", activity burst ({signals.news_rate_per_hour:.0f} news/h)"
        reasoning += f": next review in {interval} min"

        return MarketConditions(
            volatility_level=volatility,
            market_regime=regime,
            review_interval_minutes=interval,
            volume_change_pct=signals.volume_change_pct,
            price_movement_pct=signals.price_movement_pct,
            news_rate_per_hour=signals.news_rate_per_hour,
            btc_dominance_pct=signals.btc_dominance_pct,
            top_movers=tuple(signals.top_movers),
            significant_news=tuple(signals.significant_news),
            reasoning=reasoning,
        )
