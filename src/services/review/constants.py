"""
Review Pipeline Constants

Tables driving market assessment and SELL rule matching. Tune here,
not in the call sites.
"""
from typing import Callable, List, Tuple

from src.core.enums import VolatilityLevel, MarketRegime, SellReason
from src.services.review.config import PortfolioRulesConfig
from src.services.review.entities import MarketSignals, Position


# =============================================================================
# MARKET ASSESSMENT
# =============================================================================

# (upper bound of average daily range %, level); anything above the last bound is EXTREME
VOLATILITY_THRESHOLDS: List[Tuple[float, VolatilityLevel]] = [
    (3.0, VolatilityLevel.LOW),
    (6.0, VolatilityLevel.MEDIUM),
    (10.0, VolatilityLevel.HIGH),
]

# Share of top coins (%) moving >5% that turns a high-volatility market into VOLATILE
VOLATILE_PRICE_MOVEMENT_PCT = 40.0
# Trend (%) separating bull/bear from sideways
TREND_THRESHOLD_PCT = 5.0

RegimePredicate = Callable[[MarketSignals, VolatilityLevel], bool]

# Evaluated top-down, first match wins; SIDEWAYS is the fallback
REGIME_RULES: List[Tuple[RegimePredicate, MarketRegime]] = [
    (
        lambda s, v: v.rank >= VolatilityLevel.HIGH.rank
        and s.price_movement_pct >= VOLATILE_PRICE_MOVEMENT_PCT,
        MarketRegime.VOLATILE,
    ),
    (lambda s, v: s.trend_pct >= TREND_THRESHOLD_PCT, MarketRegime.BULL),
    (lambda s, v: s.trend_pct <= -TREND_THRESHOLD_PCT, MarketRegime.BEAR),
]
DEFAULT_REGIME = MarketRegime.SIDEWAYS

# Base review interval per volatility level (minutes), non-increasing
BASE_INTERVAL_MINUTES = {
    VolatilityLevel.LOW: 240,
    VolatilityLevel.MEDIUM: 120,
    VolatilityLevel.HIGH: 60,
    VolatilityLevel.EXTREME: 15,
}

# Regime multiplier applied to the base interval
REGIME_INTERVAL_FACTORS = {
    MarketRegime.SIDEWAYS: 1.25,
    MarketRegime.BULL: 1.0,
    MarketRegime.BEAR: 0.875,
    MarketRegime.VOLATILE: 0.25,
}

# Activity burst: lots of news or many coins moving shortens the interval further
NEWS_BURST_RATE_PER_HOUR = 10.0
PRICE_BURST_PCT = 25.0
ACTIVITY_BURST_FACTOR = 0.75


# =============================================================================
# DISCOVERY SCORING
# =============================================================================

SCORE_WEIGHTS = {
    "volume": 0.40,
    "momentum": 0.35,
    "sentiment": 0.25,
}

# volume / market cap ratio that maps to a full volume score
VOLUME_RATIO_FULL_SCORE = 0.3


# =============================================================================
# SELL RULES
# =============================================================================

SellPredicate = Callable[[Position, PortfolioRulesConfig], bool]


def _near_stop_loss(p: Position, cfg: PortfolioRulesConfig) -> bool:
    if p.stop_loss is not None and p.stop_loss > 0:
        return p.current_price <= p.stop_loss * (1 + cfg.stop_loss_proximity_pct / 100)
    return p.percent_gain < cfg.max_loss_pct


def _profit_target_hit(p: Position, cfg: PortfolioRulesConfig) -> bool:
    if p.take_profit is not None and p.take_profit > 0:
        return p.current_price >= p.take_profit
    return p.percent_gain > cfg.profit_target_pct


def _momentum_fading(p: Position, cfg: PortfolioRulesConfig) -> bool:
    if p.momentum_pct is None:
        return False
    return p.percent_gain > cfg.momentum_min_gain_pct and p.momentum_pct < cfg.momentum_drop_pct


def _at_resistance(p: Position, cfg: PortfolioRulesConfig) -> bool:
    if p.resistance_price is not None and p.resistance_price > 0:
        return p.current_price >= p.resistance_price * (1 - cfg.resistance_proximity_pct / 100)
    return p.percent_gain > cfg.resistance_min_gain_pct


# Priority order matters: first match wins
SELL_RULES: List[Tuple[SellPredicate, SellReason]] = [
    (_near_stop_loss, SellReason.RISK_MANAGEMENT),
    (_profit_target_hit, SellReason.PROFIT_TARGET),
    (_momentum_fading, SellReason.MOMENTUM_LOSS),
    (_at_resistance, SellReason.RESISTANCE),
]
