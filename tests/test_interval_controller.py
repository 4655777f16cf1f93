"""
Tests for the review interval controller (run lock and schedule)
"""

import asyncio
from datetime import datetime, timedelta, UTC

import pytest

from src.core.enums import MarketRegime, ReviewPhase, ReviewStatus, ReviewType, VolatilityLevel
from src.services.review.audit_log import ReviewAuditLog
from src.services.review.config import IntervalConfig
from src.services.review.entities import AuditLogEntry, MarketConditions
from src.services.review.interval_controller import ReviewIntervalController, SchedulerState
from src.services.review.orchestrator import RunReport
from src.services.review.recommendation_store import RecommendationStore
from tests.conftest import make_coin


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _conditions(interval: int) -> MarketConditions:
    return MarketConditions(
        volatility_level=VolatilityLevel.HIGH,
        market_regime=MarketRegime.BULL,
        review_interval_minutes=interval,
    )


class StubOrchestrator:
    """Runs until released; reports the given interval."""

    def __init__(self, interval: int = 30, block: bool = False):
        self.interval = interval
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.runs = []
        self.concurrent = 0
        self.max_concurrent = 0

    async def execute(self, run):
        self.runs.append(run)
        self.concurrent += 1
        self.max_concurrent = max(self.max_concurrent, self.concurrent)
        try:
            run.conditions = _conditions(self.interval)
            await self.release.wait()
            return RunReport(
                review_type=run.review_type.value,
                status=ReviewStatus.COMPLETED,
                phase=ReviewPhase.COMPLETED,
                conditions=run.conditions,
            )
        finally:
            self.concurrent -= 1


def _controller(orchestrator, max_run_seconds=5, **kwargs):
    return ReviewIntervalController(
        orchestrator,
        config=IntervalConfig(min_minutes=5, max_minutes=240, max_run_seconds=max_run_seconds, default_minutes=60),
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_first_tick_runs_and_schedules_next():
    """Test next_due_at = completion + the run's interval"""
    orchestrator = StubOrchestrator(interval=15)
    controller = _controller(orchestrator)

    result = await controller.tick()
    assert result.started
    await controller.wait_idle()

    state = controller.state
    assert not state.lock_held
    assert state.last_status == ReviewStatus.COMPLETED
    assert state.last_interval_minutes == 15
    assert state.next_due_at == NOW + timedelta(minutes=15)
    assert orchestrator.runs[0].review_type == ReviewType.SCHEDULED


@pytest.mark.asyncio
async def test_tick_before_due_does_nothing():
    orchestrator = StubOrchestrator()
    controller = _controller(orchestrator, state=SchedulerState(next_due_at=NOW + timedelta(minutes=1)))

    result = await controller.tick()

    assert not result.started
    assert result.reason == "not_due"
    assert orchestrator.runs == []

    due = await controller.tick(now=NOW + timedelta(minutes=1))
    assert due.started
    await controller.wait_idle()


@pytest.mark.asyncio
async def test_at_most_one_run_in_flight():
    """Test that ticks and triggers during a run are ignored, not queued"""
    orchestrator = StubOrchestrator(block=True)
    controller = _controller(orchestrator)

    first = await controller.trigger_manual()
    await asyncio.sleep(0)

    busy_manual = await controller.trigger_manual()
    busy_event = await controller.trigger_event("btc_flash_crash")
    busy_tick = await controller.tick()

    assert first.started
    assert controller.state.lock_held
    assert controller.state.active_review_type == ReviewType.MANUAL
    for result in (busy_manual, busy_event, busy_tick):
        assert not result.started
        assert result.reason == "busy"

    orchestrator.release.set()
    await controller.wait_idle()

    assert len(orchestrator.runs) == 1
    assert orchestrator.max_concurrent == 1
    assert not controller.state.lock_held

    # Lock is free again
    again = await controller.trigger_event("btc_flash_crash")
    assert again.started
    await controller.wait_idle()
    assert orchestrator.runs[-1].trigger_reason == "btc_flash_crash"


@pytest.mark.asyncio
async def test_timed_out_run_releases_lock():
    """Test the run watchdog: cancel, release, fall back to the known interval"""
    orchestrator = StubOrchestrator(interval=20, block=True)
    controller = _controller(orchestrator, max_run_seconds=0.05)

    await controller.trigger_manual()
    await controller.wait_idle()

    state = controller.state
    assert not state.lock_held
    assert state.last_status == ReviewStatus.FAILED
    # The run assessed the market before hanging; its interval still applies
    assert state.next_due_at == NOW + timedelta(minutes=20)

    assert (await controller.trigger_manual()).started
    orchestrator.release.set()
    await controller.wait_idle()


@pytest.mark.asyncio
async def test_failure_before_assessment_uses_default_interval():
    class CrashingOrchestrator:
        async def execute(self, run):
            raise RuntimeError("boom")

    controller = _controller(CrashingOrchestrator())

    await controller.trigger_manual()
    await controller.wait_idle()

    assert not controller.state.lock_held
    assert controller.state.last_status == ReviewStatus.FAILED
    assert controller.state.next_due_at == NOW + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_stuck_run_is_cancelled_by_tick():
    orchestrator = StubOrchestrator(block=True)
    controller = _controller(orchestrator, max_run_seconds=600)

    await controller.trigger_manual()
    await asyncio.sleep(0)

    result = await controller.tick(now=NOW + timedelta(seconds=1201))
    assert result.reason == "busy"
    await controller.wait_idle()

    assert controller.running_task.cancelled()
    assert not controller.state.lock_held


@pytest.mark.asyncio
async def test_restore_from_history(session_maker):
    """Test that a restart picks up the schedule instead of running immediately"""
    audit_log = ReviewAuditLog(session_maker)
    store = RecommendationStore(session_maker)

    finished_at = NOW - timedelta(minutes=10)
    done = await audit_log.insert(AuditLogEntry(review_type=ReviewType.SCHEDULED, timestamp=finished_at))
    await audit_log.update(done, status=ReviewStatus.COMPLETED, duration_ms=0)
    stale = await audit_log.insert(AuditLogEntry(review_type=ReviewType.MANUAL, timestamp=NOW))
    await store.log_market_conditions(_conditions(30))

    controller = _controller(StubOrchestrator(), audit_log=audit_log, store=store)
    state = await controller.restore()

    assert state.next_due_at == finished_at + timedelta(minutes=30)
    assert state.last_interval_minutes == 30
    assert (await audit_log.get(stale)).status == ReviewStatus.FAILED

    result = await controller.tick()
    assert result.reason == "not_due"


@pytest.mark.asyncio
async def test_restore_without_history_runs_on_first_tick(session_maker):
    controller = _controller(StubOrchestrator(), audit_log=ReviewAuditLog(session_maker))
    state = await controller.restore()

    assert state.next_due_at is None
    assert state.is_due(NOW)


@pytest.mark.asyncio
async def test_full_pipeline_through_controller(pipeline, fake_market):
    """Test a manual trigger end-to-end with the real orchestrator"""
    fake_market.coins = [make_coin("BTC")]

    result = await pipeline.controller.trigger_manual()
    assert result.started
    report = await result.task

    assert report.status == ReviewStatus.COMPLETED
    assert pipeline.controller.state.last_interval_minutes == report.conditions.review_interval_minutes
    [entry] = await pipeline.audit_log.query()
    assert entry.review_type == ReviewType.MANUAL
    assert entry.buy_count == 3
