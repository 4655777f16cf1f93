"""
Discovery Recommendation Generator

Global BUY recommendations from a market-cap universe:

1. collect   - fetch the universe snapshot
2. prefilter - liquidity, duplicates and the local confidence floor (no AI calls)
3. evaluate  - AI judgment under the concurrency ceiling, then post-checks

Every scanned coin ends up accepted, skipped or ai_rejected.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from typing import Iterable, List, Optional, Set

from loguru import logger

from src.core.enums import CoinUniverse, DiscoveryStrategy
from src.core.exceptions import ValidationError
from src.services.review.config import (
    ConcurrencyConfig,
    DiscoveryConfig,
    StrategyProfile,
    get_config,
)
from src.services.review.constants import SCORE_WEIGHTS, VOLUME_RATIO_FULL_SCORE
from src.services.review.entities import (
    AIJudgment,
    CoinSnapshot,
    DiscoveryCandidate,
    DiscoveryRecommendation,
    GenerationResult,
)
from src.services.review.providers import AIProvider, MarketDataProvider
from src.services.review.resilience import bounded_gather, call_external


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def volume_score(coin: CoinSnapshot) -> float:
    """Turnover vs market cap; a 30% daily turnover scores 100."""
    if coin.market_cap <= 0:
        return 0.0
    ratio = coin.volume_24h / coin.market_cap
    return _clamp(ratio / VOLUME_RATIO_FULL_SCORE * 100)


def momentum_score(coin: CoinSnapshot) -> float:
    """Blend of 24h (60%) and 7d (40%) change; -10%..+10% maps to 0..100."""
    blended = 0.6 * coin.price_change_24h + 0.4 * coin.price_change_7d
    return _clamp((blended + 10) / 20 * 100)


def sentiment_score(coin: CoinSnapshot) -> float:
    return _clamp(coin.sentiment * 100)


def composite_score(volume: float, momentum: float, sentiment: float) -> float:
    return (
        volume * SCORE_WEIGHTS["volume"]
        + momentum * SCORE_WEIGHTS["momentum"]
        + sentiment * SCORE_WEIGHTS["sentiment"]
    )


@dataclass
class PrefilterResult:
    candidates: List[DiscoveryCandidate] = field(default_factory=list)
    skipped: int = 0
    candidate_errors: int = 0

    @property
    def scanned(self) -> int:
        return len(self.candidates) + self.skipped


class DiscoveryRecommendationGenerator:
    """BUY side of the review pipeline."""

    def __init__(
        self,
        market: MarketDataProvider,
        ai: AIProvider,
        config: Optional[DiscoveryConfig] = None,
        concurrency: Optional[ConcurrencyConfig] = None,
    ):
        self.market = market
        self.ai = ai
        self.config = config or get_config().discovery
        self.concurrency = concurrency or get_config().concurrency

    def profile(self, strategy: DiscoveryStrategy) -> StrategyProfile:
        return self.config.profiles[strategy]

    # =========================================================================
    # PHASES
    # =========================================================================

    async def collect(self, universe: CoinUniverse) -> List[CoinSnapshot]:
        """Fetch the universe (retried on transient errors)."""
        coins = await call_external(
            self.market.get_universe, universe, provider="market_data", config=self.concurrency
        )
        return list(coins)[: universe.size]

    def score(
        self, coin: CoinSnapshot, strategy: DiscoveryStrategy, universe: CoinUniverse
    ) -> DiscoveryCandidate:
        if not coin.symbol or coin.current_price <= 0 or coin.market_cap <= 0:
            raise ValidationError(f"Malformed coin snapshot: {coin!r}", symbol=coin.symbol)

        vol = volume_score(coin)
        mom = momentum_score(coin)
        sent = sentiment_score(coin)
        return DiscoveryCandidate(
            coin=coin,
            strategy=strategy,
            coin_universe=universe,
            volume_score=vol,
            momentum_score=mom,
            sentiment_score=sent,
            discovery_score=composite_score(vol, mom, sent),
        )

    def prefilter(
        self,
        coins: Iterable[CoinSnapshot],
        strategy: DiscoveryStrategy,
        universe: CoinUniverse,
        active_symbols: Optional[Set[str]] = None,
    ) -> PrefilterResult:
        """Local rules only. Trimmed coins are skipped, not errors."""
        profile = self.profile(strategy)
        active_symbols = active_symbols or set()
        result = PrefilterResult()

        for coin in coins:
            try:
                candidate = self.score(coin, strategy, universe)
            except ValidationError as e:
                logger.debug(f"Skipping {e.symbol}: {e}")
                result.skipped += 1
                result.candidate_errors += 1
                continue

            if coin.market_cap < self.config.min_market_cap or coin.volume_24h < self.config.min_volume_24h:
                result.skipped += 1
                continue

            if coin.symbol in active_symbols:
                result.skipped += 1
                continue

            if candidate.pre_confidence < profile.min_confidence:
                result.skipped += 1
                continue

            result.candidates.append(candidate)

        logger.debug(
            f"Discovery prefilter {strategy.value}/{universe.value}: "
            f"{len(result.candidates)} candidates, {result.skipped} skipped"
        )
        return result

    async def evaluate(
        self,
        candidates: List[DiscoveryCandidate],
        strategy: DiscoveryStrategy,
        now: Optional[datetime] = None,
    ) -> GenerationResult:
        """AI judgment + post-checks for pre-filtered candidates."""
        now = now or datetime.now(UTC)
        profile = self.profile(strategy)
        result = GenerationResult()

        async def judge(candidate: DiscoveryCandidate) -> AIJudgment:
            return await call_external(self.ai.judge, candidate, provider="ai", config=self.concurrency)

        judgments = await bounded_gather(candidates, judge, self.concurrency.max_concurrency)

        accepted: List[DiscoveryRecommendation] = []
        for candidate, judgment in zip(candidates, judgments):
            if isinstance(judgment, Exception):
                logger.warning(f"AI judgment failed for {candidate.symbol}: {judgment}")
                result.skipped += 1
                result.candidate_errors += 1
                continue

            if not judgment.accept:
                result.ai_rejected += 1
                continue

            rec = self.build_recommendation(candidate, judgment, profile, now)
            if rec is None:
                result.ai_rejected += 1
                continue

            accepted.append(rec)

        accepted.sort(key=lambda r: (r.confidence, r.discovery_score), reverse=True)
        overflow = accepted[profile.max_picks:]
        result.accepted = accepted[: profile.max_picks]
        result.skipped += len(overflow)
        return result

    async def generate(
        self,
        universe: CoinUniverse,
        strategy: DiscoveryStrategy,
        active_symbols: Optional[Set[str]] = None,
        now: Optional[datetime] = None,
    ) -> GenerationResult:
        """collect -> prefilter -> evaluate in one call."""
        coins = await self.collect(universe)
        pre = self.prefilter(coins, strategy, universe, active_symbols)
        result = await self.evaluate(pre.candidates, strategy, now)
        result.skipped += pre.skipped
        result.candidate_errors += pre.candidate_errors
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def build_recommendation(
        self,
        candidate: DiscoveryCandidate,
        judgment: AIJudgment,
        profile: StrategyProfile,
        now: datetime,
    ) -> Optional[DiscoveryRecommendation]:
        """Apply strategy levels; None when post-AI checks fail."""
        confidence = _clamp(judgment.confidence, 0.0, 1.0)
        if confidence < profile.min_confidence:
            return None

        entry = candidate.coin.current_price
        stop_loss = entry * (1 - profile.stop_loss_pct / 100)
        tp_low = entry * (1 + profile.take_profit_low_pct / 100)
        tp_high = entry * (1 + profile.take_profit_high_pct / 100)
        if not (0 < stop_loss < entry < tp_low <= tp_high):
            return None

        return DiscoveryRecommendation(
            symbol=candidate.symbol,
            strategy=profile.strategy,
            coin_universe=candidate.coin_universe,
            confidence=round(confidence, 4),
            entry_price=entry,
            stop_loss=stop_loss,
            take_profit_levels=(tp_low, tp_high),
            position_size=profile.position_size,
            risk_level=profile.risk_level,
            reasoning=judgment.reasoning,
            sources=["market_data", "ai_judgment"],
            discovery_score=round(candidate.discovery_score, 2),
            created_at=now,
            expires_at=now + timedelta(hours=self.config.recommendation_ttl_hours),
        )
