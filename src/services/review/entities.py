"""
Review pipeline value types.

Plain dataclasses passed between the assessor, generators, orchestrator
and stores. ORM rows live in models.py.
"""
from dataclasses import dataclass, field, asdict, fields
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from src.core.enums import (
    VolatilityLevel,
    MarketRegime,
    ReviewType,
    ReviewStatus,
    ReviewPhase,
    SellReason,
    DiscoveryStrategy,
    CoinUniverse,
    RiskLevel,
    UserTier,
)


# =============================================================================
# MARKET
# =============================================================================

@dataclass
class MarketSignals:
    """Raw market numbers supplied by the market data provider."""
    avg_daily_range_pct: float = 0.0
    volume_change_pct: float = 0.0
    price_movement_pct: float = 0.0  # share of top coins with a >5% 24h move
    news_rate_per_hour: float = 0.0
    btc_dominance_pct: float = 0.0
    trend_pct: float = 0.0
    top_movers: List[str] = field(default_factory=list)
    significant_news: List[str] = field(default_factory=list)
    # Upstream classifications win over the tables when present
    volatility: Optional[VolatilityLevel] = None
    regime: Optional[MarketRegime] = None


@dataclass(frozen=True)
class MarketConditions:
    volatility_level: VolatilityLevel
    market_regime: MarketRegime
    review_interval_minutes: int
    volume_change_pct: float = 0.0
    price_movement_pct: float = 0.0
    news_rate_per_hour: float = 0.0
    btc_dominance_pct: float = 0.0
    top_movers: Tuple[str, ...] = ()
    significant_news: Tuple[str, ...] = ()
    reasoning: str = ""


@dataclass
class CoinSnapshot:
    """One coin of a market-cap universe."""
    symbol: str
    name: str
    market_cap_rank: int
    market_cap: float
    current_price: float
    volume_24h: float
    price_change_24h: float = 0.0
    price_change_7d: float = 0.0
    sentiment: float = 0.5  # 0 (bearish) .. 1 (bullish)


@dataclass
class Position:
    """Open position of a user, priced at review time."""
    user_id: int
    symbol: str
    quantity: float
    entry_price: float
    current_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    momentum_pct: Optional[float] = None
    resistance_price: Optional[float] = None

    @property
    def cost_basis(self) -> float:
        return self.entry_price * self.quantity

    @property
    def unrealized_pnl(self) -> float:
        return (self.current_price - self.entry_price) * self.quantity

    @property
    def percent_gain(self) -> float:
        if self.cost_basis == 0:
            return 0.0
        return self.unrealized_pnl / self.cost_basis * 100


# =============================================================================
# CANDIDATES & AI
# =============================================================================

@dataclass
class DiscoveryCandidate:
    """A coin scored locally, waiting for AI judgment."""
    coin: CoinSnapshot
    strategy: DiscoveryStrategy
    coin_universe: CoinUniverse
    volume_score: float
    momentum_score: float
    sentiment_score: float
    discovery_score: float

    kind = "buy"

    @property
    def symbol(self) -> str:
        return self.coin.symbol

    @property
    def pre_confidence(self) -> float:
        return self.discovery_score / 100

    def to_prompt_dict(self) -> Dict[str, Any]:
        return {
            "action": "BUY",
            "symbol": self.coin.symbol,
            "name": self.coin.name,
            "strategy": self.strategy.value,
            "market_cap_rank": self.coin.market_cap_rank,
            "price": self.coin.current_price,
            "price_change_24h": self.coin.price_change_24h,
            "price_change_7d": self.coin.price_change_7d,
            "volume_score": round(self.volume_score, 1),
            "momentum_score": round(self.momentum_score, 1),
            "sentiment_score": round(self.sentiment_score, 1),
            "discovery_score": round(self.discovery_score, 1),
        }


@dataclass
class SellCandidate:
    """A position that matched a SELL rule."""
    position: Position
    sell_reason: SellReason

    kind = "sell"

    @property
    def symbol(self) -> str:
        return self.position.symbol

    def to_prompt_dict(self) -> Dict[str, Any]:
        p = self.position
        return {
            "action": "SELL",
            "symbol": p.symbol,
            "reason": self.sell_reason.value,
            "entry_price": p.entry_price,
            "current_price": p.current_price,
            "percent_gain": round(p.percent_gain, 2),
            "stop_loss": p.stop_loss,
            "take_profit": p.take_profit,
            "momentum_pct": p.momentum_pct,
        }


@dataclass
class AIJudgment:
    accept: bool
    confidence: float
    reasoning: str = ""


# =============================================================================
# RECOMMENDATIONS
# =============================================================================

@dataclass
class DiscoveryRecommendation:
    """Global BUY recommendation."""
    symbol: str
    strategy: DiscoveryStrategy
    coin_universe: CoinUniverse
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit_levels: Tuple[float, float]
    position_size: float
    risk_level: RiskLevel
    reasoning: str
    discovery_score: float
    created_at: datetime
    expires_at: datetime
    sources: List[str] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class PortfolioRecommendation:
    """User-scoped SELL recommendation."""
    user_id: int
    symbol: str
    confidence: float
    current_price: float
    entry_price: float
    quantity: float
    unrealized_pnl: float
    percent_gain: float
    sell_reason: SellReason
    risk_level: RiskLevel
    reasoning: str
    created_at: datetime
    expires_at: datetime
    id: Optional[int] = None


@dataclass
class GenerationResult:
    """Outcome of one generator pass.

    Every scanned candidate ends up in exactly one of accepted / skipped / ai_rejected.
    """
    accepted: list = field(default_factory=list)
    skipped: int = 0
    ai_rejected: int = 0
    candidate_errors: int = 0  # subset of skipped
    tier_denied: int = 0       # users, not candidates

    @property
    def scanned(self) -> int:
        return len(self.accepted) + self.skipped + self.ai_rejected

    def merge(self, other: "GenerationResult") -> "GenerationResult":
        return GenerationResult(
            accepted=self.accepted + other.accepted,
            skipped=self.skipped + other.skipped,
            ai_rejected=self.ai_rejected + other.ai_rejected,
            candidate_errors=self.candidate_errors + other.candidate_errors,
            tier_denied=self.tier_denied + other.tier_denied,
        )


# =============================================================================
# AUDIT
# =============================================================================

@dataclass
class ReviewMetadata:
    """Closed set of run metadata fields plus an explicit string extension map."""
    strategies: Optional[List[str]] = None
    coin_universes: Optional[List[str]] = None
    buy_candidates: Optional[int] = None
    sell_candidates: Optional[int] = None
    skipped_buy: Optional[int] = None
    skipped_sell: Optional[int] = None
    ai_rejected_buy: Optional[int] = None
    ai_rejected_sell: Optional[int] = None
    tier_denied: Optional[int] = None
    candidate_errors: Optional[int] = None
    market_regime: Optional[str] = None
    volatility_level: Optional[str] = None
    review_interval_minutes: Optional[int] = None
    error_type: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, dropping unset fields."""
        data = {k: v for k, v in asdict(self).items() if v is not None and k != "extra"}
        if self.extra:
            data["extra"] = {str(k): str(v) for k, v in self.extra.items()}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReviewMetadata":
        """Parse stored metadata; unknown keys go to extra."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)} - {"extra"}
        extra = {str(k): str(v) for k, v in (data.get("extra") or {}).items()}
        kwargs = {}
        for key, value in data.items():
            if key == "extra":
                continue
            if key in known:
                kwargs[key] = value
            else:
                extra[str(key)] = str(value)
        return cls(extra=extra, **kwargs)


@dataclass
class AuditLogEntry:
    review_type: ReviewType
    status: ReviewStatus = ReviewStatus.STARTED
    phase: ReviewPhase = ReviewPhase.DISCOVERY
    coins_analyzed: int = 0
    buy_count: int = 0
    sell_count: int = 0
    skipped_count: int = 0
    error_message: Optional[str] = None
    metadata: ReviewMetadata = field(default_factory=ReviewMetadata)
    duration_ms: Optional[int] = None
    timestamp: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class AuditFilters:
    limit: int = 50
    status: Optional[ReviewStatus] = None
    review_type: Optional[ReviewType] = None
    since: Optional[datetime] = None


@dataclass
class AuditStats:
    total_runs: int = 0
    completed_runs: int = 0
    failed_runs: int = 0
    running_runs: int = 0
    total_buy: int = 0
    total_sell: int = 0
    total_skipped: int = 0
    avg_duration_ms: Optional[float] = None
    last_run_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        finished = self.completed_runs + self.failed_runs
        return self.completed_runs / finished * 100 if finished else 0.0


@dataclass
class RecommendationFilters:
    strategy: Optional[DiscoveryStrategy] = None
    universe: Optional[CoinUniverse] = None
    user_id: Optional[int] = None
    include_expired: bool = False
    limit: int = 100


# =============================================================================
# TIERS & RUNS
# =============================================================================

@dataclass(frozen=True)
class UserTierInfo:
    tier: UserTier
    portfolio_monitoring: bool
    on_demand_limit: int  # -1 = unlimited
    custom_alerts: bool = False


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    # Usage window an allowed on-demand review was counted in
    window: Optional[date] = None


@dataclass
class ReviewRun:
    """Handle of a run owned by the interval controller."""
    review_type: ReviewType
    started_at: datetime
    trigger_reason: Optional[str] = None
    audit_id: Optional[int] = None
    conditions: Optional[MarketConditions] = None
    phase: ReviewPhase = ReviewPhase.DISCOVERY
