"""
Review Interval Controller

Decides when a review runs and guarantees at most one run in flight.

- tick(now): starts a scheduled run when due and idle, otherwise returns
- trigger_manual() / trigger_event(reason): skip the due check, respect the lock
- after any run: release lock, next_due_at = completion + interval of that run
- runs longer than max_run_seconds are cancelled (marked failed by the
  orchestrator) and the lock is released

The controller never awaits a run from tick or the triggers; runs are
asyncio tasks.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional

from loguru import logger

from src.core.enums import ReviewStatus, ReviewType
from src.core.exceptions import LockBusyError
from src.services.review.audit_log import ReviewAuditLog
from src.services.review.config import IntervalConfig, get_config
from src.services.review.entities import ReviewRun
from src.services.review.orchestrator import ReviewOrchestrator, RunReport
from src.services.review.recommendation_store import RecommendationStore


@dataclass
class SchedulerState:
    """Mutable schedule of one controller."""
    last_run_at: Optional[datetime] = None
    next_due_at: Optional[datetime] = None
    lock_held: bool = False
    active_review_type: Optional[ReviewType] = None
    run_started_at: Optional[datetime] = None
    last_interval_minutes: Optional[int] = None
    last_status: Optional[ReviewStatus] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_due_at is None or now >= self.next_due_at

    def to_dict(self) -> dict:
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_due_at": self.next_due_at.isoformat() if self.next_due_at else None,
            "lock_held": self.lock_held,
            "active_review_type": self.active_review_type.value if self.active_review_type else None,
            "run_started_at": self.run_started_at.isoformat() if self.run_started_at else None,
            "last_interval_minutes": self.last_interval_minutes,
            "last_status": self.last_status.value if self.last_status else None,
        }


@dataclass
class TriggerResult:
    started: bool
    reason: Optional[str] = None
    task: Optional[asyncio.Task] = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReviewIntervalController:
    """Owns the run lock and the review schedule."""

    def __init__(
        self,
        orchestrator: ReviewOrchestrator,
        audit_log: Optional[ReviewAuditLog] = None,
        store: Optional[RecommendationStore] = None,
        config: Optional[IntervalConfig] = None,
        state: Optional[SchedulerState] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.orchestrator = orchestrator
        self.audit_log = audit_log
        self.store = store
        self.config = config or get_config().interval
        self.state = state or SchedulerState()
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running_task(self) -> Optional[asyncio.Task]:
        return self._task

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def tick(self, now: Optional[datetime] = None) -> TriggerResult:
        """Timer heartbeat: start a scheduled run if due and idle."""
        now = now or self.clock()

        if self.state.lock_held:
            self._check_stuck(now)
            return TriggerResult(started=False, reason="busy")

        if not self.state.is_due(now):
            return TriggerResult(started=False, reason="not_due")

        return self._start(ReviewType.SCHEDULED)

    async def trigger_manual(self) -> TriggerResult:
        """Operator-requested run. Returns busy instead of queueing."""
        return self._start(ReviewType.MANUAL)

    async def trigger_event(self, reason: str) -> TriggerResult:
        """Market-event run (e.g. sudden move). Returns busy instead of queueing."""
        return self._start(ReviewType.TRIGGERED, trigger_reason=reason)

    async def wait_idle(self) -> None:
        """Wait for the in-flight run (if any) to finish."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # =========================================================================
    # RESTORE
    # =========================================================================

    async def restore(self) -> SchedulerState:
        """
        Seed the schedule from history so a restart does not start a
        duplicate run right away.
        """
        if self.audit_log is None:
            return self.state

        await self.audit_log.fail_stale()
        last = await self.audit_log.last_completed()
        if last is None or last.timestamp is None:
            logger.info("No completed review in history, first tick will run")
            return self.state

        interval = self.config.default_minutes
        if self.store is not None:
            latest = await self.store.latest_market_conditions()
            if latest is not None:
                interval = latest[0].review_interval_minutes

        completed_at = last.timestamp + timedelta(milliseconds=last.duration_ms or 0)
        self.state.last_run_at = completed_at
        self.state.last_interval_minutes = interval
        self.state.last_status = ReviewStatus.COMPLETED
        self.state.next_due_at = completed_at + timedelta(minutes=interval)

        logger.info(
            f"Schedule restored: last run {completed_at.isoformat()}, "
            f"next due {self.state.next_due_at.isoformat()} ({interval} min)"
        )
        return self.state

    # =========================================================================
    # RUN LIFECYCLE
    # =========================================================================

    def _acquire(self, review_type: ReviewType) -> None:
        if self.state.lock_held:
            raise LockBusyError(
                f"{self.state.active_review_type.value if self.state.active_review_type else 'a'} "
                f"review is already running"
            )
        self.state.lock_held = True
        self.state.active_review_type = review_type
        self.state.run_started_at = self.clock()

    def _release(self, report: Optional[RunReport], run: ReviewRun) -> None:
        completed_at = self.clock()

        if report is not None and report.conditions is not None:
            interval = report.conditions.review_interval_minutes
        elif run.conditions is not None:
            interval = run.conditions.review_interval_minutes
        else:
            interval = self.state.last_interval_minutes or self.config.default_minutes

        self.state.last_run_at = completed_at
        self.state.last_interval_minutes = interval
        self.state.next_due_at = completed_at + timedelta(minutes=interval)
        self.state.last_status = report.status if report is not None else ReviewStatus.FAILED
        self.state.lock_held = False
        self.state.active_review_type = None
        self.state.run_started_at = None

        logger.info(f"Next review due at {self.state.next_due_at.isoformat()} (in {interval} min)")

    def _start(self, review_type: ReviewType, trigger_reason: Optional[str] = None) -> TriggerResult:
        try:
            self._acquire(review_type)
        except LockBusyError as e:
            logger.debug(f"{review_type.value} review ignored: {e}")
            return TriggerResult(started=False, reason="busy")

        run = ReviewRun(
            review_type=review_type,
            started_at=self.state.run_started_at,
            trigger_reason=trigger_reason,
        )
        self._task = asyncio.create_task(self._run(run), name=f"review-{review_type.value}")
        return TriggerResult(started=True, task=self._task)

    async def _run(self, run: ReviewRun) -> Optional[RunReport]:
        report: Optional[RunReport] = None
        try:
            report = await asyncio.wait_for(
                self.orchestrator.execute(run), timeout=self.config.max_run_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Review #{run.audit_id} exceeded {self.config.max_run_seconds}s and was cancelled"
            )
        except asyncio.CancelledError:
            logger.warning(f"Review #{run.audit_id} cancelled")
            raise
        except Exception:
            logger.exception(f"Review #{run.audit_id} crashed")
        finally:
            self._release(report, run)
        return report

    def _check_stuck(self, now: datetime) -> None:
        """Backstop for a run that outlived its watchdog."""
        started = self.state.run_started_at
        if started is None or self._task is None or self._task.done():
            return
        limit = timedelta(seconds=self.config.max_run_seconds * 2)
        if now - started > limit:
            logger.error(f"Review stuck since {started.isoformat()}, cancelling")
            self._task.cancel()
