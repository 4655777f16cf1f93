"""
Review Pipeline Configuration

Defaults for the adaptive review pipeline. Environment-level knobs come
from config/config.py; everything else is tuned here.
"""
from dataclasses import dataclass, field
from typing import Dict, List

from config.config import (
    REVIEW_MIN_INTERVAL_MINUTES,
    REVIEW_MAX_INTERVAL_MINUTES,
    REVIEW_TICK_SECONDS,
    REVIEW_MAX_RUN_SECONDS,
    REVIEW_MAX_CONCURRENCY,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
    EXTERNAL_CALL_MAX_ATTEMPTS,
    AUDIT_LOG_KEEP_LAST,
)
from src.core.enums import DiscoveryStrategy, CoinUniverse, RiskLevel


@dataclass
class IntervalConfig:
    """Review interval bounds and run watchdog."""
    min_minutes: int = REVIEW_MIN_INTERVAL_MINUTES
    max_minutes: int = REVIEW_MAX_INTERVAL_MINUTES
    tick_seconds: int = REVIEW_TICK_SECONDS
    max_run_seconds: int = REVIEW_MAX_RUN_SECONDS
    # Used before the first assessment and after a run failed pre-assessment
    default_minutes: int = 60


@dataclass
class ConcurrencyConfig:
    """Fan-out ceiling and external call policy."""
    max_concurrency: int = REVIEW_MAX_CONCURRENCY
    call_timeout_seconds: float = EXTERNAL_CALL_TIMEOUT_SECONDS
    max_attempts: int = EXTERNAL_CALL_MAX_ATTEMPTS
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 10.0


@dataclass
class StrategyProfile:
    """Risk appetite of one discovery strategy."""
    strategy: DiscoveryStrategy
    min_confidence: float          # floor for both pre-AI and AI confidence
    stop_loss_pct: float           # below entry
    take_profit_low_pct: float     # above entry
    take_profit_high_pct: float
    position_size: float           # fraction of portfolio
    risk_level: RiskLevel
    max_picks: int                 # accepted per (strategy, universe)


def _default_profiles() -> Dict[DiscoveryStrategy, StrategyProfile]:
    return {
        DiscoveryStrategy.CONSERVATIVE: StrategyProfile(
            strategy=DiscoveryStrategy.CONSERVATIVE,
            min_confidence=0.65,
            stop_loss_pct=5.0,
            take_profit_low_pct=8.0,
            take_profit_high_pct=15.0,
            position_size=0.03,
            risk_level=RiskLevel.LOW,
            max_picks=3,
        ),
        DiscoveryStrategy.MODERATE: StrategyProfile(
            strategy=DiscoveryStrategy.MODERATE,
            min_confidence=0.55,
            stop_loss_pct=8.0,
            take_profit_low_pct=12.0,
            take_profit_high_pct=25.0,
            position_size=0.05,
            risk_level=RiskLevel.MEDIUM,
            max_picks=5,
        ),
        DiscoveryStrategy.AGGRESSIVE: StrategyProfile(
            strategy=DiscoveryStrategy.AGGRESSIVE,
            min_confidence=0.45,
            stop_loss_pct=12.0,
            take_profit_low_pct=20.0,
            take_profit_high_pct=50.0,
            position_size=0.08,
            risk_level=RiskLevel.HIGH,
            max_picks=8,
        ),
    }


@dataclass
class DiscoveryConfig:
    """Discovery (BUY) generation."""
    strategies: List[DiscoveryStrategy] = field(
        default_factory=lambda: [
            DiscoveryStrategy.CONSERVATIVE,
            DiscoveryStrategy.MODERATE,
            DiscoveryStrategy.AGGRESSIVE,
        ]
    )
    universes: List[CoinUniverse] = field(
        default_factory=lambda: [CoinUniverse.TOP50]
    )
    profiles: Dict[DiscoveryStrategy, StrategyProfile] = field(
        default_factory=_default_profiles
    )

    # Liquidity filters
    min_market_cap: float = 10_000_000      # $10M
    min_volume_24h: float = 1_000_000       # $1M

    recommendation_ttl_hours: int = 24


@dataclass
class PortfolioRulesConfig:
    """Thresholds of the SELL rules (percent values)."""
    stop_loss_proximity_pct: float = 2.0    # price within 2% above stop loss
    max_loss_pct: float = -10.0             # loss deeper than this
    profit_target_pct: float = 25.0         # gain above this (no take profit set)
    momentum_min_gain_pct: float = 5.0      # in profit...
    momentum_drop_pct: float = -3.0         # ...but 24h momentum below this
    resistance_proximity_pct: float = 2.0   # price within 2% of resistance
    resistance_min_gain_pct: float = 10.0   # gain above this (no resistance level)

    recommendation_ttl_hours: int = 12


@dataclass
class ReviewConfig:
    """Main review pipeline configuration."""
    interval: IntervalConfig = field(default_factory=IntervalConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    portfolio: PortfolioRulesConfig = field(default_factory=PortfolioRulesConfig)

    audit_keep_last: int = AUDIT_LOG_KEEP_LAST


# Singleton instance
REVIEW_CONFIG = ReviewConfig()


def get_config() -> ReviewConfig:
    """Get review pipeline configuration."""
    return REVIEW_CONFIG
