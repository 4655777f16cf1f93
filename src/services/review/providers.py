"""
Collaborator contracts of the review pipeline and their database adapters.

Market data and AI adapters live in coingecko_market_data.py / openai_judge.py.
"""
from typing import List, Protocol, Union

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.limits import get_tier_limits
from src.core.enums import CoinUniverse, UserTier
from src.database import crud
from src.services.review.entities import (
    AIJudgment,
    CoinSnapshot,
    DiscoveryCandidate,
    MarketSignals,
    Position,
    SellCandidate,
    UserTierInfo,
)


class MarketDataProvider(Protocol):
    """Rate-limited market data source. Failures raise TransientExternalError."""

    async def get_market_signals(self) -> MarketSignals: ...

    async def get_universe(self, universe: CoinUniverse) -> List[CoinSnapshot]: ...

    async def get_quote(self, symbol: str) -> CoinSnapshot: ...


class AIProvider(Protocol):
    """Black-box accept/reject judgment."""

    async def judge(self, candidate: Union[DiscoveryCandidate, SellCandidate]) -> AIJudgment: ...


class UserTierProvider(Protocol):
    async def list_user_ids(self) -> List[int]: ...

    async def get_tier_info(self, user_id: int) -> UserTierInfo: ...


class PortfolioProvider(Protocol):
    """Open positions per user. current_price is 0.0 until priced by the generator."""

    async def get_open_positions(self, user_id: int) -> List[Position]: ...


def tier_info_for(tier: UserTier) -> UserTierInfo:
    """Build UserTierInfo from the tier limit table"""
    limits = get_tier_limits(tier)
    return UserTierInfo(
        tier=tier,
        portfolio_monitoring=limits["portfolio_monitoring"],
        on_demand_limit=limits["on_demand_per_day"],
        custom_alerts=limits["custom_alerts"],
    )


class DatabaseUserTierProvider:
    """Resolves tiers from the users table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def list_user_ids(self) -> List[int]:
        async with self.session_maker() as session:
            return await crud.list_active_user_ids(session)

    async def get_tier_info(self, user_id: int) -> UserTierInfo:
        async with self.session_maker() as session:
            user = await crud.get_user_by_id(session, user_id)

        if user is None:
            logger.warning(f"User {user_id} not found, treating as free tier")
            return tier_info_for(UserTier.FREE)

        try:
            tier = UserTier(user.tier)
        except ValueError:
            logger.warning(f"User {user_id} has unknown tier {user.tier!r}, treating as free")
            tier = UserTier.FREE
        return tier_info_for(tier)


class DatabasePortfolioProvider:
    """Reads open holdings."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_open_positions(self, user_id: int) -> List[Position]:
        async with self.session_maker() as session:
            holdings = await crud.get_open_holdings(session, user_id)

        return [
            Position(
                user_id=h.user_id,
                symbol=h.symbol,
                quantity=h.quantity,
                entry_price=h.average_price,
                current_price=0.0,
                stop_loss=h.stop_loss,
                take_profit=h.take_profit,
                resistance_price=h.resistance_price,
            )
            for h in holdings
        ]
