"""
Portfolio Recommendation Generator

User-scoped SELL advice on open positions.

- Only users whose tier allows scheduled monitoring are scanned
  (on-demand reviews bypass that check, the caller gates them)
- SELL_RULES are evaluated in priority order, first match wins
- Positions matching no rule are skipped
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, UTC
from typing import Dict, Iterable, List, Optional

from loguru import logger

from src.core.enums import RequestedWork, RiskLevel, SellReason
from src.core.exceptions import ValidationError
from src.services.review.config import ConcurrencyConfig, PortfolioRulesConfig, get_config
from src.services.review.constants import SELL_RULES
from src.services.review.entities import (
    AIJudgment,
    CoinSnapshot,
    GenerationResult,
    PortfolioRecommendation,
    Position,
    SellCandidate,
)
from src.services.review.providers import (
    AIProvider,
    MarketDataProvider,
    PortfolioProvider,
    UserTierProvider,
)
from src.services.review.resilience import bounded_gather, call_external
from src.services.review.tier_gate import TierGate


RISK_BY_REASON = {
    SellReason.RISK_MANAGEMENT: RiskLevel.HIGH,
    SellReason.MOMENTUM_LOSS: RiskLevel.MEDIUM,
    SellReason.PROFIT_TARGET: RiskLevel.LOW,
    SellReason.RESISTANCE: RiskLevel.LOW,
}


def match_sell_rule(position: Position, rules: PortfolioRulesConfig) -> Optional[SellReason]:
    """First matching SELL rule, or None."""
    for predicate, reason in SELL_RULES:
        if predicate(position, rules):
            return reason
    return None


def validate_position(position: Position) -> None:
    if position.quantity <= 0 or position.entry_price <= 0 or position.current_price <= 0:
        raise ValidationError(
            f"Malformed position {position.symbol} for user {position.user_id}",
            symbol=position.symbol,
        )


@dataclass
class CollectResult:
    positions: List[Position] = field(default_factory=list)
    users_scanned: int = 0
    tier_denied: int = 0
    skipped: int = 0           # positions that could not be priced
    candidate_errors: int = 0


@dataclass
class SellPrefilterResult:
    candidates: List[SellCandidate] = field(default_factory=list)
    skipped: int = 0
    candidate_errors: int = 0


class PortfolioRecommendationGenerator:
    """SELL side of the review pipeline."""

    def __init__(
        self,
        market: MarketDataProvider,
        ai: AIProvider,
        portfolios: PortfolioProvider,
        tiers: UserTierProvider,
        gate: TierGate,
        rules: Optional[PortfolioRulesConfig] = None,
        concurrency: Optional[ConcurrencyConfig] = None,
    ):
        self.market = market
        self.ai = ai
        self.portfolios = portfolios
        self.tiers = tiers
        self.gate = gate
        self.rules = rules or get_config().portfolio
        self.concurrency = concurrency or get_config().concurrency

    # =========================================================================
    # PHASES
    # =========================================================================

    async def eligible_users(self, user_ids: Iterable[int]) -> tuple[List[int], int]:
        """Users allowed scheduled monitoring, plus the number denied."""
        allowed: List[int] = []
        denied = 0
        for user_id in user_ids:
            tier_info = await self.tiers.get_tier_info(user_id)
            decision = await self.gate.authorize(user_id, tier_info, RequestedWork.SCHEDULED_MONITORING)
            if decision.allowed:
                allowed.append(user_id)
            else:
                denied += 1
        return allowed, denied

    async def collect(self, user_ids: Iterable[int], gated: bool = True) -> CollectResult:
        """Open positions of the (eligible) users, priced at current market."""
        user_ids = list(user_ids)
        result = CollectResult()

        if gated:
            user_ids, result.tier_denied = await self.eligible_users(user_ids)
        result.users_scanned = len(user_ids)

        fetched = await bounded_gather(
            user_ids, self.portfolios.get_open_positions, self.concurrency.max_concurrency
        )
        raw: List[Position] = []
        for user_id, positions in zip(user_ids, fetched):
            if isinstance(positions, Exception):
                logger.warning(f"Could not load positions for user {user_id}: {positions}")
                result.candidate_errors += 1
                continue
            raw.extend(positions)

        quotes = await self._quote_symbols({p.symbol for p in raw})

        for position in raw:
            quote = quotes.get(position.symbol)
            if quote is None:
                result.skipped += 1
                result.candidate_errors += 1
                continue
            result.positions.append(
                replace(
                    position,
                    current_price=quote.current_price,
                    momentum_pct=quote.price_change_24h,
                )
            )
        return result

    def prefilter(self, positions: Iterable[Position]) -> SellPrefilterResult:
        """Apply SELL_RULES locally; no AI calls."""
        result = SellPrefilterResult()
        for position in positions:
            try:
                validate_position(position)
            except ValidationError as e:
                logger.debug(f"Skipping position: {e}")
                result.skipped += 1
                result.candidate_errors += 1
                continue

            reason = match_sell_rule(position, self.rules)
            if reason is None:
                result.skipped += 1
                continue
            result.candidates.append(SellCandidate(position=position, sell_reason=reason))
        return result

    async def evaluate(
        self, candidates: List[SellCandidate], now: Optional[datetime] = None
    ) -> GenerationResult:
        now = now or datetime.now(UTC)
        result = GenerationResult()

        async def judge(candidate: SellCandidate) -> AIJudgment:
            return await call_external(self.ai.judge, candidate, provider="ai", config=self.concurrency)

        judgments = await bounded_gather(candidates, judge, self.concurrency.max_concurrency)

        for candidate, judgment in zip(candidates, judgments):
            if isinstance(judgment, Exception):
                logger.warning(f"AI judgment failed for {candidate.symbol} (user {candidate.position.user_id}): {judgment}")
                result.skipped += 1
                result.candidate_errors += 1
                continue
            if not judgment.accept:
                result.ai_rejected += 1
                continue
            result.accepted.append(self.build_recommendation(candidate, judgment, now))

        return result

    async def generate(
        self,
        user_ids: Iterable[int],
        now: Optional[datetime] = None,
        gated: bool = True,
    ) -> GenerationResult:
        """collect -> prefilter -> evaluate in one call."""
        collected = await self.collect(user_ids, gated=gated)
        pre = self.prefilter(collected.positions)
        result = await self.evaluate(pre.candidates, now)
        result.skipped += collected.skipped + pre.skipped
        result.candidate_errors += collected.candidate_errors + pre.candidate_errors
        result.tier_denied = collected.tier_denied
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _quote_symbols(self, symbols: Iterable[str]) -> Dict[str, CoinSnapshot]:
        symbols = sorted(symbols)

        async def quote(symbol: str) -> CoinSnapshot:
            return await call_external(
                self.market.get_quote, symbol, provider="market_data", config=self.concurrency
            )

        results = await bounded_gather(symbols, quote, self.concurrency.max_concurrency)
        quotes: Dict[str, CoinSnapshot] = {}
        for symbol, snapshot in zip(symbols, results):
            if isinstance(snapshot, Exception):
                logger.warning(f"Could not price {symbol}: {snapshot}")
                continue
            quotes[symbol] = snapshot
        return quotes

    def build_recommendation(
        self, candidate: SellCandidate, judgment: AIJudgment, now: datetime
    ) -> PortfolioRecommendation:
        p = candidate.position
        pnl = p.unrealized_pnl
        return PortfolioRecommendation(
            user_id=p.user_id,
            symbol=p.symbol,
            confidence=round(max(0.0, min(1.0, judgment.confidence)), 4),
            current_price=p.current_price,
            entry_price=p.entry_price,
            quantity=p.quantity,
            unrealized_pnl=pnl,
            percent_gain=pnl / (p.entry_price * p.quantity) * 100,
            sell_reason=candidate.sell_reason,
            risk_level=RISK_BY_REASON[candidate.sell_reason],
            reasoning=judgment.reasoning,
            created_at=now,
            expires_at=now + timedelta(hours=self.rules.recommendation_ttl_hours),
        )
