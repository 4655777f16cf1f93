"""
Tests for the review run state machine
"""

import asyncio
from datetime import datetime, UTC

import pytest

from src.core.enums import ReviewPhase, ReviewStatus, ReviewType, UserTier
from src.services.review.entities import AIJudgment, RecommendationFilters, ReviewRun
from tests.conftest import make_coin, make_position, make_weak_coin


@pytest.fixture
def market_setup(fake_market, fake_ai, fake_tiers, fake_portfolios):
    """
    Discovery: BTC accepted, ETH rejected by AI, DOGE below floor, BAD malformed.
    Portfolio: premium user 1 (SOL near stop, ADA no rule), free user 2 not scanned.
    """
    fake_market.coins = [
        make_coin("BTC", rank=1),
        make_coin("ETH", rank=2),
        make_weak_coin("DOGE"),
        make_coin("BAD", price=0.0),
    ]
    fake_market.quotes = {
        "SOL": make_coin("SOL", price=96.0),
        "ADA": make_coin("ADA", price=1.02),
    }
    fake_ai.judgments["ETH"] = AIJudgment(accept=False, confidence=0.9, reasoning="overextended")
    fake_tiers.tiers.update({1: UserTier.PREMIUM, 2: UserTier.FREE})
    fake_portfolios.positions.update(
        {
            1: [
                make_position(1, "SOL", entry_price=100.0, stop_loss=95.0),
                make_position(1, "ADA", entry_price=1.0, quantity=500),
            ],
            2: [make_position(2, "XRP", entry_price=0.5, quantity=1000)],
        }
    )


def _run(review_type=ReviewType.MANUAL, reason=None) -> ReviewRun:
    return ReviewRun(review_type=review_type, started_at=datetime.now(UTC), trigger_reason=reason)


@pytest.mark.asyncio
async def test_completed_run_counts(pipeline, market_setup):
    """Test the audit row of a completed run and its count identities"""
    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.COMPLETED
    assert report.phase == ReviewPhase.COMPLETED
    assert report.buy_count == 3           # BTC x 3 strategies
    assert report.sell_count == 1          # SOL
    assert report.coins_analyzed == 6
    assert report.skipped_count == 7       # (DOGE + BAD) x 3 + ADA

    meta = report.metadata
    assert meta.buy_candidates == report.buy_count + meta.skipped_buy + meta.ai_rejected_buy
    assert meta.sell_candidates == report.sell_count + meta.skipped_sell + meta.ai_rejected_sell
    assert meta.ai_rejected_buy == 3
    assert meta.tier_denied == 1
    assert meta.candidate_errors == 3
    assert meta.strategies == ["conservative", "moderate", "aggressive"]

    entry = await pipeline.audit_log.get(report.audit_id)
    assert entry.status == ReviewStatus.COMPLETED
    assert entry.phase == ReviewPhase.COMPLETED
    assert entry.buy_count == 3
    assert entry.sell_count == 1
    assert entry.skipped_count == 7
    assert entry.duration_ms is not None
    assert entry.metadata.market_regime == report.conditions.market_regime.value

    buys = await pipeline.store.query_discovery(RecommendationFilters())
    assert sorted(r.strategy.value for r in buys) == ["aggressive", "conservative", "moderate"]
    assert {r.symbol for r in buys} == {"BTC"}
    sells = await pipeline.store.query_portfolio(RecommendationFilters(user_id=1))
    assert [r.symbol for r in sells] == ["SOL"]
    assert await pipeline.store.query_portfolio(RecommendationFilters(user_id=2)) == []

    logged = await pipeline.store.latest_market_conditions()
    assert logged is not None
    assert logged[0].review_interval_minutes == report.conditions.review_interval_minutes


@pytest.mark.asyncio
async def test_second_run_skips_active_duplicates(pipeline, market_setup):
    await pipeline.orchestrator.execute(_run())
    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.COMPLETED
    assert report.buy_count == 0
    # SELL advice is refreshed, superseding the previous one
    assert report.sell_count == 1
    sells = await pipeline.store.query_portfolio(RecommendationFilters(user_id=1))
    assert len(sells) == 1


@pytest.mark.asyncio
async def test_trigger_reason_is_recorded(pipeline, market_setup):
    report = await pipeline.orchestrator.execute(_run(ReviewType.TRIGGERED, reason="btc_-8pct_1h"))

    entry = await pipeline.audit_log.get(report.audit_id)
    assert entry.review_type == ReviewType.TRIGGERED
    assert entry.metadata.extra["trigger_reason"] == "btc_-8pct_1h"


@pytest.mark.asyncio
async def test_market_data_outage_fails_in_discovery(pipeline, market_setup, fake_market, review_config):
    """Test that retries are exhausted and the row records the failing phase"""
    fake_market.signals_always_fail = True

    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.FAILED
    assert report.phase == ReviewPhase.DISCOVERY
    assert fake_market.signal_calls == review_config.concurrency.max_attempts

    entry = await pipeline.audit_log.get(report.audit_id)
    assert entry.status == ReviewStatus.FAILED
    assert entry.phase == ReviewPhase.DISCOVERY
    assert entry.error_message == "market data unavailable"
    assert entry.metadata.error_type == "TransientExternalError"
    assert await pipeline.store.query_discovery(RecommendationFilters(include_expired=True)) == []


@pytest.mark.asyncio
async def test_transient_market_error_recovers(pipeline, market_setup, fake_market):
    fake_market.signal_failures = 2

    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.COMPLETED
    assert fake_market.signal_calls == 3


@pytest.mark.asyncio
async def test_storing_failure_persists_nothing(pipeline, market_setup, monkeypatch):
    """Test that a failed batch leaves no recommendations and a failed row"""

    async def broken(session, rec, review_log_id=None):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(pipeline.store, "_add_portfolio", broken)

    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.FAILED
    assert report.phase == ReviewPhase.STORING
    assert "connection reset" in report.error_message

    entry = await pipeline.audit_log.get(report.audit_id)
    assert entry.status == ReviewStatus.FAILED
    assert entry.phase == ReviewPhase.STORING
    assert entry.buy_count == 0
    assert entry.sell_count == 0
    assert entry.skipped_count == 7
    assert entry.metadata.error_type == "FatalPipelineError"

    assert await pipeline.store.query_discovery(RecommendationFilters(include_expired=True)) == []
    assert await pipeline.store.query_portfolio(RecommendationFilters(include_expired=True)) == []


@pytest.mark.asyncio
async def test_cancelled_run_is_marked_failed(pipeline, market_setup, fake_ai):
    """Test that a run cut off by the watchdog leaves a failed row, not a started one"""
    fake_ai.delay = 10

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(pipeline.orchestrator.execute(_run()), timeout=0.3)

    [entry] = await pipeline.audit_log.query()
    assert entry.status == ReviewStatus.FAILED
    assert entry.phase == ReviewPhase.AI_ANALYSIS
    assert "maximum duration" in entry.error_message


@pytest.mark.asyncio
async def test_on_demand_review_is_rate_limited(pipeline, market_setup, fake_portfolios, fake_market):
    """Test free user: on-demand review bypasses monitoring, capped at 3/day"""
    fake_portfolios.positions[2] = [make_position(2, "XRP", entry_price=0.5, quantity=1000)]
    fake_market.quotes["XRP"] = make_coin("XRP", price=0.7)  # +40%

    for _ in range(3):
        outcome = await pipeline.orchestrator.review_portfolio_on_demand(2)
        assert not outcome.denied
        assert [r.symbol for r in outcome.recommendations] == ["XRP"]
        assert outcome.positions_scanned == 1

    denied = await pipeline.orchestrator.review_portfolio_on_demand(2)
    assert denied.denied
    assert denied.recommendations == []

    # On-demand reviews do not open audit rows
    assert await pipeline.audit_log.query() == []
    assert len(await pipeline.store.query_portfolio(RecommendationFilters(user_id=2))) == 1


@pytest.mark.asyncio
async def test_completion_is_committed_with_the_batch(pipeline, market_setup, monkeypatch):
    """Test that closing the audit row does not depend on a later, separate update"""
    original_update = pipeline.audit_log.update
    phases = []

    async def update(log_id, **fields):
        phases.append(fields.get("phase"))
        if fields.get("phase") == ReviewPhase.COMPLETED:
            raise RuntimeError("audit row write failed")
        await original_update(log_id, **fields)

    monkeypatch.setattr(pipeline.audit_log, "update", update)

    report = await pipeline.orchestrator.execute(_run())

    assert report.status == ReviewStatus.COMPLETED
    assert ReviewPhase.COMPLETED not in phases

    entry = await pipeline.audit_log.get(report.audit_id)
    assert entry.status == ReviewStatus.COMPLETED
    assert entry.phase == ReviewPhase.COMPLETED
    assert entry.buy_count == 3
    assert entry.sell_count == 1
    assert len(await pipeline.store.query_discovery(RecommendationFilters())) == 3


@pytest.mark.asyncio
async def test_interrupt_after_commit_keeps_run_completed(pipeline, market_setup, monkeypatch):
    """Test that a run cancelled once its batch is committed is not marked failed at storing"""
    original_save = pipeline.store.save_batch

    async def save_then_cancel(*args, **kwargs):
        await original_save(*args, **kwargs)
        raise asyncio.CancelledError()

    monkeypatch.setattr(pipeline.store, "save_batch", save_then_cancel)

    with pytest.raises(asyncio.CancelledError):
        await pipeline.orchestrator.execute(_run())

    [entry] = await pipeline.audit_log.query()
    assert entry.status == ReviewStatus.COMPLETED
    assert entry.phase == ReviewPhase.COMPLETED
    assert entry.buy_count == 3
    assert entry.error_message is None
    assert len(await pipeline.store.query_discovery(RecommendationFilters())) == 3


@pytest.mark.asyncio
async def test_failed_on_demand_review_is_not_counted(pipeline, market_setup, fake_portfolios, monkeypatch):
    """Test that an on-demand review which errors gives the allowance back"""
    fake_portfolios.positions[2] = [make_position(2, "XRP", entry_price=0.5, quantity=1000)]

    async def broken(user_ids, gated=True):
        raise RuntimeError("quote service down")

    monkeypatch.setattr(pipeline.orchestrator.portfolio, "generate", broken)

    for _ in range(5):
        with pytest.raises(RuntimeError):
            await pipeline.orchestrator.review_portfolio_on_demand(2)

    tier_info = await pipeline.tiers.get_tier_info(2)
    assert await pipeline.gate.remaining_on_demand(2, tier_info) == 3
