"""
Review Scheduler

APScheduler jobs driving the review pipeline:
- Tick: every REVIEW_TICK_SECONDS (the controller decides whether a run is due)
- Audit prune: once a day at 04:00 UTC
"""
from typing import Optional

from loguru import logger
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.services.review.audit_log import ReviewAuditLog
from src.services.review.config import ReviewConfig, get_config
from src.services.review.interval_controller import ReviewIntervalController


class ReviewScheduler:
    """
    APScheduler for review jobs.

    Jobs:
    - review_tick: controller heartbeat
    - review_audit_prune: keep the newest audit rows only
    """

    def __init__(
        self,
        controller: ReviewIntervalController,
        audit_log: ReviewAuditLog,
        config: Optional[ReviewConfig] = None,
    ):
        self.controller = controller
        self.audit_log = audit_log
        self.config = config or get_config()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start scheduler (requires a running event loop)."""
        if self._running:
            logger.warning("Review scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone="UTC")

        # 1. Tick
        self.scheduler.add_job(
            self._job_tick,
            IntervalTrigger(seconds=self.config.interval.tick_seconds),
            id="review_tick",
            name="Review Interval Tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # 2. Audit prune: 04:00 UTC
        self.scheduler.add_job(
            self._job_prune,
            CronTrigger(hour=4, minute=0),
            id="review_audit_prune",
            name="Review Audit Log Prune",
            replace_existing=True,
        )

        self.scheduler.start()
        self._running = True

        logger.info(
            f"Review scheduler started: tick every {self.config.interval.tick_seconds}s, "
            f"audit prune daily at 04:00 UTC (keep {self.config.audit_keep_last})"
        )

    def stop(self):
        """Stop scheduler."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Review scheduler stopped")

    async def _job_tick(self) -> None:
        """Job: controller heartbeat."""
        try:
            result = await self.controller.tick()
            if result.started:
                logger.debug("Scheduled review started")
        except Exception as e:
            logger.error(f"Review tick failed: {e}")

    async def _job_prune(self) -> int:
        """Job: audit log retention."""
        try:
            return await self.audit_log.prune(self.config.audit_keep_last)
        except Exception as e:
            logger.error(f"Audit prune failed: {e}")
            return 0
