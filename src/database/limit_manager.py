"""
On-demand Limit Manager - per-user daily counters for on-demand reviews

Provides the usage counter behind TierGate's on-demand decisions.
Windows are UTC days (a new row per user per day).

The limit check and the increment are a single conditional UPDATE, so
concurrent requests can never push a counter past its limit.
"""

from datetime import date, datetime, UTC
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from src.core.enums import UserTier
from src.database.models import OnDemandUsage
from config.limits import get_on_demand_limit


_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def utc_today() -> date:
    """Current UTC date (the usage window key)"""
    return datetime.now(UTC).date()


async def ensure_usage_record(
    session: AsyncSession, user_id: int, today: Optional[date] = None
) -> date:
    """
    Insert today's usage row unless it already exists

    Concurrent first requests of the day race on uix_on_demand_user_date;
    the losing insert is ignored.

    Returns:
        The window date
    """
    today = today or utc_today()
    values = dict(user_id=user_id, date=today, review_count=0)

    insert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)
    if insert is not None:
        await session.execute(
            insert(OnDemandUsage)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["user_id", "date"])
        )
        return today

    try:
        async with session.begin_nested():
            session.add(OnDemandUsage(**values))
    except IntegrityError:
        logger.debug(f"On-demand usage record for user {user_id}, date {today} already exists")
    return today


async def get_or_create_usage_record(
    session: AsyncSession, user_id: int, today: Optional[date] = None
) -> OnDemandUsage:
    """
    Get or create on-demand usage record for user today

    Args:
        session: Database session
        user_id: User ID (database ID)
        today: Window date (defaults to current UTC date)

    Returns:
        OnDemandUsage model for the window, as currently stored
    """
    today = today or utc_today()

    stmt = (
        select(OnDemandUsage)
        .where(OnDemandUsage.user_id == user_id)
        .where(OnDemandUsage.date == today)
        .execution_options(populate_existing=True)
    )
    usage = (await session.execute(stmt)).scalar_one_or_none()
    if usage:
        return usage

    await ensure_usage_record(session, user_id, today)
    usage = (await session.execute(stmt)).scalar_one()

    logger.debug(f"Created on-demand usage record for user {user_id}, date {today}")
    return usage


async def try_consume_on_demand(
    session: AsyncSession,
    user_id: int,
    limit: int,
    today: Optional[date] = None,
) -> Tuple[bool, int]:
    """
    Count one on-demand review if the user is under the limit

    Args:
        session: Database session
        user_id: User ID
        limit: Daily limit (-1 = unlimited, the counter still increments)
        today: Window date (defaults to current UTC date)

    Returns:
        (counted, review count for the window after this call)
    """
    today = await ensure_usage_record(session, user_id, today)

    stmt = (
        update(OnDemandUsage)
        .where(OnDemandUsage.user_id == user_id)
        .where(OnDemandUsage.date == today)
        .values(review_count=OnDemandUsage.review_count + 1)
        .execution_options(synchronize_session=False)
    )
    if limit >= 0:
        stmt = stmt.where(OnDemandUsage.review_count < limit)

    result = await session.execute(stmt)
    count = (
        await session.execute(
            select(OnDemandUsage.review_count)
            .where(OnDemandUsage.user_id == user_id)
            .where(OnDemandUsage.date == today)
        )
    ).scalar_one()
    await session.commit()

    consumed = result.rowcount == 1
    if consumed:
        logger.info(f"User {user_id} on-demand review counted ({today}): {count}")
    return consumed, count


async def release_on_demand(
    session: AsyncSession,
    user_id: int,
    today: Optional[date] = None,
) -> bool:
    """
    Give back one counted on-demand review (the review itself failed)

    Returns:
        True if a review was given back
    """
    today = today or utc_today()

    result = await session.execute(
        update(OnDemandUsage)
        .where(OnDemandUsage.user_id == user_id)
        .where(OnDemandUsage.date == today)
        .where(OnDemandUsage.review_count > 0)
        .values(review_count=OnDemandUsage.review_count - 1)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    released = result.rowcount == 1
    if released:
        logger.info(f"User {user_id} on-demand review given back ({today})")
    return released


async def increment_on_demand(
    session: AsyncSession,
    user_id: int,
    today: Optional[date] = None,
) -> OnDemandUsage:
    """
    Increment on-demand review count without a limit

    Returns:
        Updated OnDemandUsage model
    """
    today = today or utc_today()
    await try_consume_on_demand(session, user_id, -1, today)
    return await get_or_create_usage_record(session, user_id, today)


async def get_usage_stats(
    session: AsyncSession,
    user_id: int,
    tier: UserTier,
) -> dict:
    """
    Current on-demand usage for a user

    Returns:
        Dict with count / limit / remaining for today
    """
    limit = get_on_demand_limit(tier)
    usage = await get_or_create_usage_record(session, user_id)

    return {
        "count": usage.review_count,
        "limit": limit,
        "remaining": -1 if limit < 0 else max(0, limit - usage.review_count),
        "tier": tier.value,
        "date": usage.date.isoformat(),
    }


async def reset_on_demand(
    session: AsyncSession,
    user_id: int,
) -> OnDemandUsage:
    """
    Reset today's on-demand count (admin function)

    Returns:
        Updated OnDemandUsage model
    """
    usage = await get_or_create_usage_record(session, user_id)
    usage.review_count = 0

    await session.commit()
    await session.refresh(usage)

    logger.info(f"Admin: Reset on-demand limit for user {user_id}")
    return usage
