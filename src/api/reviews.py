"""
Review Pipeline API Endpoints

- /reviews: trigger runs, audit log, statistics, schedule state
- /recommendations: discovery feed and per-user portfolio advice
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from loguru import logger
from pydantic import BaseModel

from src.api.api_key_auth import verify_api_key
from src.core.enums import CoinUniverse, DiscoveryStrategy, ReviewStatus, ReviewType
from src.services.review.entities import AuditFilters, RecommendationFilters
from src.services.review.factory import ReviewPipeline


router = APIRouter(prefix="/reviews", tags=["Reviews"], dependencies=[Depends(verify_api_key)])
recommendations_router = APIRouter(
    prefix="/recommendations", tags=["Recommendations"], dependencies=[Depends(verify_api_key)]
)


def get_pipeline(request: Request) -> ReviewPipeline:
    """Pipeline assembled at startup (see api_server lifespan)."""
    pipeline = getattr(request.app.state, "review_pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Review pipeline not initialized")
    return pipeline


# =============================================================================
# Pydantic Models (Response Schemas)
# =============================================================================

class TriggerResponse(BaseModel):
    started: bool
    review_type: str
    reason: Optional[str] = None


class AuditLogItem(BaseModel):
    id: int
    review_type: str
    status: str
    phase: str
    coins_analyzed: int
    buy_count: int
    sell_count: int
    skipped_count: int
    error_message: Optional[str]
    metadata: Dict[str, Any]
    duration_ms: Optional[int]
    timestamp: Optional[datetime]


class AuditStatsResponse(BaseModel):
    days: int
    total_runs: int
    completed_runs: int
    failed_runs: int
    running_runs: int
    success_rate: float
    total_buy: int
    total_sell: int
    total_skipped: int
    avg_duration_ms: Optional[float]
    last_run_at: Optional[datetime]


class ScheduleResponse(BaseModel):
    last_run_at: Optional[str]
    next_due_at: Optional[str]
    lock_held: bool
    active_review_type: Optional[str]
    run_started_at: Optional[str]
    last_interval_minutes: Optional[int]
    last_status: Optional[str]
    scheduler_running: bool


class DiscoveryItem(BaseModel):
    id: Optional[int]
    symbol: str
    strategy: str
    coin_universe: str
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit_levels: Tuple[float, float]
    position_size: float
    risk_level: str
    reasoning: str
    sources: List[str]
    discovery_score: float
    created_at: datetime
    expires_at: datetime


class PortfolioItem(BaseModel):
    id: Optional[int]
    user_id: int
    symbol: str
    confidence: float
    current_price: float
    entry_price: float
    quantity: float
    unrealized_pnl: float
    percent_gain: float
    sell_reason: str
    risk_level: str
    reasoning: str
    created_at: datetime
    expires_at: datetime


class OnDemandResponse(BaseModel):
    user_id: int
    positions_scanned: int
    skipped: int
    ai_rejected: int
    recommendations: List[PortfolioItem]


def _portfolio_item(rec) -> PortfolioItem:
    return PortfolioItem(
        id=rec.id,
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
        created_at=rec.created_at,
        expires_at=rec.expires_at,
    )


# =============================================================================
# /reviews
# =============================================================================

@router.post("/trigger", response_model=TriggerResponse, status_code=202)
async def trigger_review(
    reason: Optional[str] = Query(None, description="Market event; omitted means manual run"),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """Start a review now. 409 when a run is already in flight."""
    controller = pipeline.controller
    if reason:
        result = await controller.trigger_event(reason)
        review_type = ReviewType.TRIGGERED
    else:
        result = await controller.trigger_manual()
        review_type = ReviewType.MANUAL

    if not result.started:
        raise HTTPException(status_code=409, detail="A review is already running")

    logger.info(f"{review_type.value} review triggered via API")
    return TriggerResponse(started=True, review_type=review_type.value, reason=reason)


@router.get("/logs", response_model=List[AuditLogItem])
async def get_review_logs(
    limit: int = Query(50, ge=1, le=500),
    status: Optional[ReviewStatus] = Query(None),
    review_type: Optional[ReviewType] = Query(None),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """Recent review runs, newest first."""
    entries = await pipeline.audit_log.query(
        AuditFilters(limit=limit, status=status, review_type=review_type)
    )
    return [
        AuditLogItem(
            id=e.id,
            review_type=e.review_type.value,
            status=e.status.value,
            phase=e.phase.value,
            coins_analyzed=e.coins_analyzed,
            buy_count=e.buy_count,
            sell_count=e.sell_count,
            skipped_count=e.skipped_count,
            error_message=e.error_message,
            metadata=e.metadata.to_dict(),
            duration_ms=e.duration_ms,
            timestamp=e.timestamp,
        )
        for e in entries
    ]


@router.get("/stats", response_model=AuditStatsResponse)
async def get_review_stats(
    days: int = Query(30, ge=1, le=365),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """Aggregate run statistics."""
    stats = await pipeline.audit_log.aggregate(days=days)
    return AuditStatsResponse(
        days=days,
        total_runs=stats.total_runs,
        completed_runs=stats.completed_runs,
        failed_runs=stats.failed_runs,
        running_runs=stats.running_runs,
        success_rate=round(stats.success_rate, 2),
        total_buy=stats.total_buy,
        total_sell=stats.total_sell,
        total_skipped=stats.total_skipped,
        avg_duration_ms=stats.avg_duration_ms,
        last_run_at=stats.last_run_at,
    )


@router.get("/schedule", response_model=ScheduleResponse)
async def get_schedule(pipeline: ReviewPipeline = Depends(get_pipeline)):
    """Interval controller state."""
    return ScheduleResponse(
        **pipeline.controller.state.to_dict(),
        scheduler_running=pipeline.scheduler.running,
    )


# =============================================================================
# /recommendations
# =============================================================================

@recommendations_router.get("/discovery", response_model=List[DiscoveryItem])
async def get_discovery_recommendations(
    strategy: Optional[DiscoveryStrategy] = Query(None),
    universe: Optional[CoinUniverse] = Query(None),
    include_expired: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """Global BUY recommendations."""
    recs = await pipeline.store.query_discovery(
        RecommendationFilters(
            strategy=strategy, universe=universe, include_expired=include_expired, limit=limit
        )
    )
    return [
        DiscoveryItem(
            id=r.id,
            symbol=r.symbol,
            strategy=r.strategy.value,
            coin_universe=r.coin_universe.value,
            confidence=r.confidence,
            entry_price=r.entry_price,
            stop_loss=r.stop_loss,
            take_profit_levels=r.take_profit_levels,
            position_size=r.position_size,
            risk_level=r.risk_level.value,
            reasoning=r.reasoning,
            sources=r.sources,
            discovery_score=r.discovery_score,
            created_at=r.created_at,
            expires_at=r.expires_at,
        )
        for r in recs
    ]


@recommendations_router.get("/portfolio/{user_id}", response_model=List[PortfolioItem])
async def get_portfolio_recommendations(
    user_id: int,
    include_expired: bool = Query(False),
    limit: int = Query(100, ge=1, le=500),
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """SELL recommendations for one user's positions."""
    recs = await pipeline.store.query_portfolio(
        RecommendationFilters(user_id=user_id, include_expired=include_expired, limit=limit)
    )
    return [_portfolio_item(r) for r in recs]


@recommendations_router.post("/portfolio/{user_id}/review", response_model=OnDemandResponse)
async def review_portfolio_now(
    user_id: int,
    pipeline: ReviewPipeline = Depends(get_pipeline),
):
    """On-demand portfolio review. 429 when the tier's daily allowance is used up."""
    outcome = await pipeline.orchestrator.review_portfolio_on_demand(user_id)
    if outcome.denied:
        raise HTTPException(status_code=429, detail=outcome.decision.reason or "On-demand limit reached")

    return OnDemandResponse(
        user_id=user_id,
        positions_scanned=outcome.positions_scanned,
        skipped=outcome.skipped,
        ai_rejected=outcome.ai_rejected,
        recommendations=[_portfolio_item(r) for r in outcome.recommendations],
    )
