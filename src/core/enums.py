"""
Core Enums - shared types for the whole review pipeline stack.

Defines:
- VolatilityLevel / MarketRegime: market condition classification
- ReviewType / ReviewStatus / ReviewPhase: audit row lifecycle
- SellReason: why a position should be exited
- DiscoveryStrategy / CoinUniverse / RiskLevel: discovery parameters
- UserTier / RequestedWork: tier gating
"""

from enum import Enum


class VolatilityLevel(str, Enum):
    """Market volatility bucket, ordered from calm to extreme."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"

    @property
    def rank(self) -> int:
        """0 for LOW ... 3 for EXTREME."""
        return list(VolatilityLevel).index(self)


class MarketRegime(str, Enum):
    """Coarse market-behavior classification."""

    BULL = "bull"
    BEAR = "bear"
    SIDEWAYS = "sideways"
    VOLATILE = "volatile"


class ReviewType(str, Enum):
    """What started a review run."""

    SCHEDULED = "scheduled"  # Interval controller tick
    MANUAL = "manual"  # Operator / API trigger
    TRIGGERED = "triggered"  # Market event trigger


class ReviewStatus(str, Enum):
    """Audit row status.

    STARTED is the only non-terminal status.
    """

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class ReviewPhase(str, Enum):
    """Phases of one review run, in execution order."""

    DISCOVERY = "discovery"
    FILTERING = "filtering"
    AI_ANALYSIS = "ai_analysis"
    STORING = "storing"
    COMPLETED = "completed"


class SellReason(str, Enum):
    """Exit reason attached to a portfolio (SELL) recommendation."""

    RISK_MANAGEMENT = "risk_management"  # Stop-loss proximity / deep loss
    PROFIT_TARGET = "profit_target"  # Take-profit reached / large gain
    MOMENTUM_LOSS = "momentum_loss"  # Trend fading while in profit
    RESISTANCE = "resistance"  # Price pressing into resistance


class DiscoveryStrategy(str, Enum):
    """Discovery risk appetite."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class CoinUniverse(str, Enum):
    """Market-cap universe scanned by discovery."""

    TOP10 = "top10"
    TOP50 = "top50"
    TOP100 = "top100"

    @property
    def size(self) -> int:
        return int(self.value.removeprefix("top"))


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class UserTier(str, Enum):
    """Subscription tier levels."""

    FREE = "free"
    PREMIUM = "premium"


class RequestedWork(str, Enum):
    """Kind of work the tier gate is asked to authorize."""

    SCHEDULED_MONITORING = "scheduled_monitoring"  # Portfolio scan inside a scheduled run
    ON_DEMAND_REVIEW = "on_demand_review"  # User-initiated portfolio review
