"""
Review Audit Log

One row per review run in ai_review_logs: inserted at start, patched in
place afterwards. update() is a true partial patch; fields not passed
are left untouched.
"""
from datetime import datetime, timedelta, UTC
from typing import Any, List, Optional

from loguru import logger
from sqlalchemy import select, update, delete, func, case
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import ReviewType, ReviewStatus, ReviewPhase
from src.core.exceptions import FatalPipelineError
from src.services.review.entities import (
    AuditLogEntry,
    AuditFilters,
    AuditStats,
    ReviewMetadata,
)
from src.services.review.models import AIReviewLog


_PATCHABLE = {
    "status",
    "phase",
    "coins_analyzed",
    "buy_count",
    "sell_count",
    "skipped_count",
    "error_message",
    "metadata",
    "duration_ms",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_entry(row: AIReviewLog) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        review_type=ReviewType(row.review_type),
        status=ReviewStatus(row.status),
        phase=ReviewPhase(row.phase),
        coins_analyzed=row.coins_analyzed,
        buy_count=row.buy_count,
        sell_count=row.sell_count,
        skipped_count=row.skipped_count,
        error_message=row.error_message,
        metadata=ReviewMetadata.from_dict(row.review_metadata),
        duration_ms=row.duration_ms,
        timestamp=as_utc(row.timestamp),
    )


def patch_values(fields: dict) -> dict:
    """Column values for a partial patch of an ai_review_logs row"""
    unknown = set(fields) - _PATCHABLE
    if unknown:
        raise ValueError(f"Unknown audit log fields: {sorted(unknown)}")

    values = {}
    for key, value in fields.items():
        if key == "metadata":
            values["review_metadata"] = value.to_dict() if isinstance(value, ReviewMetadata) else value
        elif key in ("status", "phase"):
            values[key] = value.value if hasattr(value, "value") else value
        else:
            values[key] = value
    return values


async def apply_patch(session: AsyncSession, log_id: int, **fields: Any) -> int:
    """
    Patch a run's row inside the caller's transaction.

    Returns:
        Number of rows matched (0 when the row does not exist)
    """
    result = await session.execute(
        update(AIReviewLog).where(AIReviewLog.id == log_id).values(**patch_values(fields))
    )
    return result.rowcount


class ReviewAuditLog:
    """Audit trail of review runs."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def insert(self, entry: AuditLogEntry) -> int:
        """Insert the row for a new run, returns its id"""
        row = AIReviewLog(
            review_type=entry.review_type.value,
            status=entry.status.value,
            phase=entry.phase.value,
            coins_analyzed=entry.coins_analyzed,
            buy_count=entry.buy_count,
            sell_count=entry.sell_count,
            skipped_count=entry.skipped_count,
            error_message=entry.error_message,
            review_metadata=entry.metadata.to_dict(),
            duration_ms=entry.duration_ms,
            timestamp=entry.timestamp or datetime.now(UTC),
        )
        try:
            async with self.session_maker() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except Exception as e:
            raise FatalPipelineError(f"Failed to insert audit log row: {e}") from e

        logger.debug(f"Audit row {row.id} created ({entry.review_type.value})")
        return row.id

    async def update(self, log_id: int, **fields: Any) -> None:
        """
        Patch a run's row.

        Args:
            log_id: Row id returned by insert()
            **fields: Any of status, phase, coins_analyzed, buy_count, sell_count,
                skipped_count, error_message, metadata, duration_ms.
                metadata (ReviewMetadata) replaces the stored value.
        """
        if not fields:
            return
        values = patch_values(fields)

        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(AIReviewLog).where(AIReviewLog.id == log_id).values(**values)
                )
                await session.commit()
        except Exception as e:
            raise FatalPipelineError(f"Failed to update audit log row {log_id}: {e}") from e

        if result.rowcount == 0:
            raise FatalPipelineError(f"Audit log row {log_id} not found")

    async def get(self, log_id: int) -> Optional[AuditLogEntry]:
        async with self.session_maker() as session:
            row = await session.get(AIReviewLog, log_id)
            return _to_entry(row) if row else None

    async def query(self, filters: Optional[AuditFilters] = None) -> List[AuditLogEntry]:
        """Recent rows, newest first"""
        filters = filters or AuditFilters()
        stmt = select(AIReviewLog)

        if filters.status is not None:
            stmt = stmt.where(AIReviewLog.status == filters.status.value)
        if filters.review_type is not None:
            stmt = stmt.where(AIReviewLog.review_type == filters.review_type.value)
        if filters.since is not None:
            stmt = stmt.where(AIReviewLog.timestamp >= filters.since)

        stmt = stmt.order_by(AIReviewLog.timestamp.desc(), AIReviewLog.id.desc()).limit(filters.limit)

        async with self.session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_entry(r) for r in rows]

    async def aggregate(self, days: int = 30) -> AuditStats:
        """Run statistics over the last `days` days"""
        since = datetime.now(UTC) - timedelta(days=days)

        stmt = select(
            func.count(AIReviewLog.id),
            func.sum(case((AIReviewLog.status == ReviewStatus.COMPLETED.value, 1), else_=0)),
            func.sum(case((AIReviewLog.status == ReviewStatus.FAILED.value, 1), else_=0)),
            func.sum(case((AIReviewLog.status == ReviewStatus.STARTED.value, 1), else_=0)),
            func.sum(AIReviewLog.buy_count),
            func.sum(AIReviewLog.sell_count),
            func.sum(AIReviewLog.skipped_count),
            func.avg(
                case(
                    (AIReviewLog.status == ReviewStatus.COMPLETED.value, AIReviewLog.duration_ms),
                    else_=None,
                )
            ),
            func.max(AIReviewLog.timestamp),
        ).where(AIReviewLog.timestamp >= since)

        async with self.session_maker() as session:
            row = (await session.execute(stmt)).one()

        total, completed, failed, running, buys, sells, skipped, avg_ms, last_ts = row
        return AuditStats(
            total_runs=total or 0,
            completed_runs=completed or 0,
            failed_runs=failed or 0,
            running_runs=running or 0,
            total_buy=buys or 0,
            total_sell=sells or 0,
            total_skipped=skipped or 0,
            avg_duration_ms=float(avg_ms) if avg_ms is not None else None,
            last_run_at=as_utc(last_ts),
        )

    async def prune(self, keep_last: int) -> int:
        """Delete all but the newest `keep_last` rows, returns deleted count"""
        keep_ids = (
            select(AIReviewLog.id)
            .order_by(AIReviewLog.timestamp.desc(), AIReviewLog.id.desc())
            .limit(keep_last)
            .scalar_subquery()
        )
        async with self.session_maker() as session:
            result = await session.execute(
                delete(AIReviewLog).where(AIReviewLog.id.not_in(keep_ids))
            )
            await session.commit()

        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Pruned {deleted} audit log rows (kept last {keep_last})")
        return deleted

    async def last_completed(self, review_type: Optional[ReviewType] = None) -> Optional[AuditLogEntry]:
        """Most recent completed run, optionally of one type"""
        stmt = select(AIReviewLog).where(AIReviewLog.status == ReviewStatus.COMPLETED.value)
        if review_type is not None:
            stmt = stmt.where(AIReviewLog.review_type == review_type.value)
        stmt = stmt.order_by(AIReviewLog.timestamp.desc(), AIReviewLog.id.desc()).limit(1)

        async with self.session_maker() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return _to_entry(row) if row else None

    async def fail_stale(self, message: str = "interrupted by restart") -> int:
        """Mark rows still in 'started' as failed (used at startup)"""
        async with self.session_maker() as session:
            result = await session.execute(
                update(AIReviewLog)
                .where(AIReviewLog.status == ReviewStatus.STARTED.value)
                .values(status=ReviewStatus.FAILED.value, error_message=message)
            )
            await session.commit()

        count = result.rowcount or 0
        if count:
            logger.warning(f"Marked {count} interrupted review run(s) as failed")
        return count
