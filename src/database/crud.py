"""
CRUD operations for the Coin Advisor backend

Async database operations using SQLAlchemy 2.0
"""

import logging
from datetime import datetime, UTC
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.enums import UserTier
from src.database.models import User, Holding

logger = logging.getLogger(__name__)


# ===========================
# USER OPERATIONS
# ===========================


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    """
    Get user by database ID

    Args:
        session: Database session
        user_id: User ID

    Returns:
        User model or None
    """
    return await session.get(User, user_id)


async def create_user(
    session: AsyncSession,
    email: Optional[str] = None,
    username: Optional[str] = None,
    tier: UserTier = UserTier.FREE,
) -> User:
    """
    Create new user

    Args:
        session: Database session
        email: Account email
        username: Display name
        tier: Initial subscription tier

    Returns:
        Created User model
    """
    user = User(email=email, username=username, tier=tier.value)
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"Created user {user.id} (tier={tier.value})")
    return user


async def update_user_tier(
    session: AsyncSession, user_id: int, tier: UserTier
) -> Optional[User]:
    """
    Change user subscription tier

    Returns:
        Updated User or None if user does not exist
    """
    user = await session.get(User, user_id)
    if user is None:
        return None

    user.tier = tier.value
    user.tier_updated_at = datetime.now(UTC)
    await session.commit()
    await session.refresh(user)

    logger.info(f"User {user_id} tier changed to {tier.value}")
    return user


async def list_active_user_ids(session: AsyncSession) -> List[int]:
    """
    IDs of all active users, ascending

    Returns:
        List of user IDs
    """
    stmt = select(User.id).where(User.is_active.is_(True)).order_by(User.id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ===========================
# HOLDING OPERATIONS
# ===========================


async def get_open_holdings(session: AsyncSession, user_id: int) -> List[Holding]:
    """
    Open holdings of a user

    Args:
        session: Database session
        user_id: User ID

    Returns:
        List of Holding models (symbol order)
    """
    stmt = (
        select(Holding)
        .where(Holding.user_id == user_id)
        .where(Holding.is_open.is_(True))
        .order_by(Holding.symbol)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def upsert_holding(
    session: AsyncSession,
    user_id: int,
    symbol: str,
    quantity: float,
    average_price: float,
    stop_loss: Optional[float] = None,
    take_profit: Optional[float] = None,
    resistance_price: Optional[float] = None,
) -> Holding:
    """
    Create or replace a user's holding for a symbol

    Returns:
        Holding model
    """
    symbol = symbol.upper()
    stmt = select(Holding).where(Holding.user_id == user_id, Holding.symbol == symbol)
    holding = (await session.execute(stmt)).scalar_one_or_none()

    if holding is None:
        holding = Holding(user_id=user_id, symbol=symbol)
        session.add(holding)

    holding.quantity = quantity
    holding.average_price = average_price
    holding.stop_loss = stop_loss
    holding.take_profit = take_profit
    holding.resistance_price = resistance_price
    holding.is_open = quantity > 0

    await session.commit()
    await session.refresh(holding)
    return holding


async def close_holding(session: AsyncSession, user_id: int, symbol: str) -> bool:
    """
    Mark a holding closed

    Returns:
        True if a holding was closed
    """
    stmt = select(Holding).where(
        Holding.user_id == user_id,
        Holding.symbol == symbol.upper(),
        Holding.is_open.is_(True),
    )
    holding = (await session.execute(stmt)).scalar_one_or_none()
    if holding is None:
        return False

    holding.is_open = False
    await session.commit()
    logger.info(f"Closed holding {symbol} for user {user_id}")
    return True
