"""
Recommendation Store

Persists discovery (BUY) and portfolio (SELL) recommendations plus the
market conditions history.

save_batch() writes everything accepted by a run in one transaction,
together with the optional patch that closes the run's audit row.
A new portfolio recommendation expires the previous active one for the
same (user_id, symbol).
"""
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import (
    CoinUniverse,
    DiscoveryStrategy,
    MarketRegime,
    RiskLevel,
    SellReason,
    VolatilityLevel,
)
from src.core.exceptions import FatalPipelineError
from src.services.review.audit_log import apply_patch, as_utc
from src.services.review.entities import (
    DiscoveryRecommendation,
    MarketConditions,
    PortfolioRecommendation,
    RecommendationFilters,
)
from src.services.review.models import (
    DiscoveryRecommendationRecord,
    MarketConditionsLog,
    PortfolioRecommendationRecord,
)


def _discovery_from_row(row: DiscoveryRecommendationRecord) -> DiscoveryRecommendation:
    return DiscoveryRecommendation(
        id=row.id,
        symbol=row.symbol,
        strategy=DiscoveryStrategy(row.strategy),
        coin_universe=CoinUniverse(row.coin_universe),
        confidence=row.confidence,
        entry_price=row.entry_price,
        stop_loss=row.stop_loss,
        take_profit_levels=(row.take_profit_low, row.take_profit_high),
        position_size=row.position_size,
        risk_level=RiskLevel(row.risk_level),
        reasoning=row.reasoning,
        sources=list(row.sources or []),
        discovery_score=row.discovery_score,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


def _portfolio_from_row(row: PortfolioRecommendationRecord) -> PortfolioRecommendation:
    return PortfolioRecommendation(
        id=row.id,
        user_id=row.user_id,
        symbol=row.symbol,
        confidence=row.confidence,
        current_price=row.current_price,
        entry_price=row.entry_price,
        quantity=row.quantity,
        unrealized_pnl=row.unrealized_pnl,
        percent_gain=row.percent_gain,
        sell_reason=SellReason(row.sell_reason),
        risk_level=RiskLevel(row.risk_level),
        reasoning=row.reasoning,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
    )


class RecommendationStore:
    """Storage for both recommendation classes."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    # =========================================================================
    # WRITES
    # =========================================================================

    async def _add_discovery(
        self,
        session: AsyncSession,
        rec: DiscoveryRecommendation,
        review_log_id: Optional[int] = None,
    ) -> DiscoveryRecommendationRecord:
        row = DiscoveryRecommendationRecord(
            symbol=rec.symbol,
            strategy=rec.strategy.value,
            coin_universe=rec.coin_universe.value,
            confidence=rec.confidence,
            entry_price=rec.entry_price,
            stop_loss=rec.stop_loss,
            take_profit_low=rec.take_profit_levels[0],
            take_profit_high=rec.take_profit_levels[1],
            position_size=rec.position_size,
            risk_level=rec.risk_level.value,
            reasoning=rec.reasoning,
            sources=list(rec.sources),
            discovery_score=rec.discovery_score,
            review_log_id=review_log_id,
            created_at=rec.created_at,
            expires_at=rec.expires_at,
        )
        session.add(row)
        return row

    async def _add_portfolio(
        self,
        session: AsyncSession,
        rec: PortfolioRecommendation,
        review_log_id: Optional[int] = None,
    ) -> PortfolioRecommendationRecord:
        # Supersede the previous active recommendation for this position
        await session.execute(
            update(PortfolioRecommendationRecord)
            .where(PortfolioRecommendationRecord.user_id == rec.user_id)
            .where(PortfolioRecommendationRecord.symbol == rec.symbol)
            .where(PortfolioRecommendationRecord.expires_at > rec.created_at)
            .values(expires_at=rec.created_at)
        )
        row = PortfolioRecommendationRecord(
            user_id=rec.user_id,
            symbol=rec.symbol,
            confidence=rec.confidence,
            current_price=rec.current_price,
            entry_price=rec.entry_price,
            quantity=rec.quantity,
            unrealized_pnl=rec.unrealized_pnl,
            percent_gain=rec.percent_gain,
            sell_reason=rec.sell_reason.value,
            risk_level=rec.risk_level.value,
            reasoning=rec.reasoning,
            review_log_id=review_log_id,
            created_at=rec.created_at,
            expires_at=rec.expires_at,
        )
        session.add(row)
        await session.flush()
        return row

    async def insert_discovery(self, rec: DiscoveryRecommendation) -> int:
        async with self.session_maker() as session:
            row = await self._add_discovery(session, rec)
            await session.commit()
            return row.id

    async def insert_portfolio(self, rec: PortfolioRecommendation) -> int:
        async with self.session_maker() as session:
            row = await self._add_portfolio(session, rec)
            await session.commit()
            return row.id

    async def save_batch(
        self,
        discovery: Sequence[DiscoveryRecommendation],
        portfolio: Sequence[PortfolioRecommendation],
        review_log_id: Optional[int] = None,
        audit_patch: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, int]:
        """
        Persist a run's output in a single transaction.

        Args:
            review_log_id: Audit row of the run that produced the batch
            audit_patch: Fields written to that audit row in the same transaction

        Raises:
            FatalPipelineError: nothing from the batch was persisted
        """
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    for rec in discovery:
                        await self._add_discovery(session, rec, review_log_id)
                    for rec in portfolio:
                        await self._add_portfolio(session, rec, review_log_id)
                    if audit_patch:
                        if review_log_id is None:
                            raise ValueError("audit_patch requires review_log_id")
                        if await apply_patch(session, review_log_id, **audit_patch) == 0:
                            raise LookupError(f"audit log row {review_log_id} not found")
        except Exception as e:
            logger.error(f"Recommendation batch rolled back: {e}")
            raise FatalPipelineError(f"Failed to store recommendations: {e}") from e

        logger.info(f"Stored {len(discovery)} discovery / {len(portfolio)} portfolio recommendations")
        return len(discovery), len(portfolio)

    # =========================================================================
    # READS
    # =========================================================================

    async def query_discovery(self, filters: RecommendationFilters) -> List[DiscoveryRecommendation]:
        stmt = select(DiscoveryRecommendationRecord)
        if filters.strategy is not None:
            stmt = stmt.where(DiscoveryRecommendationRecord.strategy == filters.strategy.value)
        if filters.universe is not None:
            stmt = stmt.where(DiscoveryRecommendationRecord.coin_universe == filters.universe.value)
        if not filters.include_expired:
            stmt = stmt.where(DiscoveryRecommendationRecord.expires_at > datetime.now(UTC))
        stmt = stmt.order_by(
            DiscoveryRecommendationRecord.created_at.desc(),
            DiscoveryRecommendationRecord.confidence.desc(),
        ).limit(filters.limit)

        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_discovery_from_row(r) for r in rows]

    async def query_portfolio(self, filters: RecommendationFilters) -> List[PortfolioRecommendation]:
        stmt = select(PortfolioRecommendationRecord)
        if filters.user_id is not None:
            stmt = stmt.where(PortfolioRecommendationRecord.user_id == filters.user_id)
        if not filters.include_expired:
            stmt = stmt.where(PortfolioRecommendationRecord.expires_at > datetime.now(UTC))
        stmt = stmt.order_by(
            PortfolioRecommendationRecord.created_at.desc(),
            PortfolioRecommendationRecord.id.desc(),
        ).limit(filters.limit)

        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_portfolio_from_row(r) for r in rows]

    async def query(
        self, filters: RecommendationFilters
    ) -> List[DiscoveryRecommendation] | List[PortfolioRecommendation]:
        """User-scoped filters return portfolio recommendations, others discovery"""
        if filters.user_id is not None:
            return await self.query_portfolio(filters)
        return await self.query_discovery(filters)

    async def active_discovery_symbols(
        self, strategy: DiscoveryStrategy, universe: CoinUniverse
    ) -> Set[str]:
        """Symbols with an unexpired recommendation for this strategy/universe"""
        stmt = (
            select(DiscoveryRecommendationRecord.symbol)
            .where(DiscoveryRecommendationRecord.strategy == strategy.value)
            .where(DiscoveryRecommendationRecord.coin_universe == universe.value)
            .where(DiscoveryRecommendationRecord.expires_at > datetime.now(UTC))
        )
        async with self.session_maker() as session:
            return set((await session.execute(stmt)).scalars().all())

    # =========================================================================
    # MARKET CONDITIONS
    # =========================================================================

    async def log_market_conditions(self, conditions: MarketConditions) -> int:
        row = MarketConditionsLog(
            volatility_level=conditions.volatility_level.value,
            market_regime=conditions.market_regime.value,
            volume_change_pct=conditions.volume_change_pct,
            price_movement_pct=conditions.price_movement_pct,
            news_rate_per_hour=conditions.news_rate_per_hour,
            btc_dominance_pct=conditions.btc_dominance_pct,
            review_interval_minutes=conditions.review_interval_minutes,
            top_movers=list(conditions.top_movers),
            significant_news=list(conditions.significant_news),
            reasoning=conditions.reasoning,
        )
        async with self.session_maker() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def latest_market_conditions(self) -> Optional[Tuple[MarketConditions, datetime]]:
        """Most recently logged conditions and when they were logged"""
        stmt = select(MarketConditionsLog).order_by(
            MarketConditionsLog.timestamp.desc(), MarketConditionsLog.id.desc()
        ).limit(1)
        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()

        if row is None:
            return None

        conditions = MarketConditions(
            volatility_level=VolatilityLevel(row.volatility_level),
            market_regime=MarketRegime(row.market_regime),
            review_interval_minutes=row.review_interval_minutes,
            volume_change_pct=row.volume_change_pct,
            price_movement_pct=row.price_movement_pct,
            news_rate_per_hour=row.news_rate_per_hour,
            btc_dominance_pct=row.btc_dominance_pct,
            top_movers=tuple(row.top_movers or []),
            significant_news=tuple(row.significant_news or []),
            reasoning=row.reasoning,
        )
        return conditions, as_utc(row.timestamp)
