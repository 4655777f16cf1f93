"""
Tier Gate

Decides whether a user may receive a piece of portfolio work:
- scheduled monitoring depends only on the tier's portfolio_monitoring flag
- on-demand reviews are capped per UTC day (premium: unlimited)

The on-demand check and its increment are one conditional UPDATE, so
concurrent requests cannot exceed the daily limit. A review that fails
after being counted is given back through refund_on_demand().

Denials are ordinary decisions, never errors.
"""
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import RequestedWork, UserTier
from src.database.limit_manager import (
    get_or_create_usage_record,
    release_on_demand,
    try_consume_on_demand,
    utc_today,
)
from src.services.review.entities import GateDecision, UserTierInfo


class TierGate:
    """Authorizes scheduled monitoring and on-demand reviews per user."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def authorize(
        self,
        user_id: int,
        tier_info: UserTierInfo,
        work: RequestedWork,
    ) -> GateDecision:
        """
        Authorize work for a user.

        Allowed on-demand requests are counted against today's window.
        """
        if work == RequestedWork.SCHEDULED_MONITORING:
            if tier_info.portfolio_monitoring:
                return GateDecision(allowed=True)
            return GateDecision(
                allowed=False,
                reason=f"portfolio monitoring not included in {tier_info.tier.value} tier",
            )

        if work == RequestedWork.ON_DEMAND_REVIEW:
            return await self._authorize_on_demand(user_id, tier_info)

        raise ValueError(f"Unknown requested work: {work}")

    async def _authorize_on_demand(self, user_id: int, tier_info: UserTierInfo) -> GateDecision:
        unlimited = tier_info.tier == UserTier.PREMIUM or tier_info.on_demand_limit < 0
        limit = -1 if unlimited else tier_info.on_demand_limit
        window = utc_today()

        async with self.session_maker() as session:
            counted, used = await try_consume_on_demand(session, user_id, limit, window)
        if counted:
            return GateDecision(allowed=True, window=window)

        logger.info(
            f"On-demand review denied for user {user_id}: "
            f"{used}/{tier_info.on_demand_limit} used today"
        )
        return GateDecision(
            allowed=False,
            reason=f"daily on-demand limit reached ({used}/{tier_info.on_demand_limit})",
        )

    async def refund_on_demand(self, user_id: int, decision: GateDecision) -> bool:
        """Give back an allowed on-demand review whose work failed"""
        if not decision.allowed or decision.window is None:
            return False
        async with self.session_maker() as session:
            return await release_on_demand(session, user_id, decision.window)

    async def remaining_on_demand(self, user_id: int, tier_info: UserTierInfo) -> Optional[int]:
        """Reviews left today, None when unlimited"""
        if tier_info.tier == UserTier.PREMIUM or tier_info.on_demand_limit < 0:
            return None
        async with self.session_maker() as session:
            usage = await get_or_create_usage_record(session, user_id)
            return max(0, tier_info.on_demand_limit - usage.review_count)
