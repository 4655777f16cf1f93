"""
Review Orchestrator

Runs one review as a phase state machine:

    started -> discovery -> filtering -> ai_analysis -> storing -> completed
    (any phase) -> failed

A single audit row is inserted at start and patched at every transition
with cumulative counts. An unrecovered error aborts the remaining phases,
marks the row failed with the phase it happened in, and is not retried;
the next scheduled tick is the retry.

buy_count / sell_count on the audit row count persisted recommendations,
so they are only set once the storing phase commits.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import List, Optional

from loguru import logger

from config.sentry import capture_review_failure
from src.core.enums import (
    CoinUniverse,
    DiscoveryStrategy,
    RequestedWork,
    ReviewPhase,
    ReviewStatus,
)
from src.services.review.audit_log import ReviewAuditLog
from src.services.review.config import ReviewConfig, get_config
from src.services.review.discovery_generator import DiscoveryRecommendationGenerator
from src.services.review.entities import (
    AuditLogEntry,
    DiscoveryRecommendation,
    GateDecision,
    MarketConditions,
    PortfolioRecommendation,
    ReviewMetadata,
    ReviewRun,
)
from src.services.review.market_conditions import MarketConditionAssessor
from src.services.review.portfolio_generator import PortfolioRecommendationGenerator
from src.services.review.providers import MarketDataProvider, UserTierProvider
from src.services.review.recommendation_store import RecommendationStore
from src.services.review.resilience import call_external
from src.services.review.tier_gate import TierGate


@dataclass
class RunReport:
    """What a finished run looked like."""
    review_type: str
    status: ReviewStatus
    phase: ReviewPhase
    audit_id: Optional[int] = None
    conditions: Optional[MarketConditions] = None
    coins_analyzed: int = 0
    buy_count: int = 0
    sell_count: int = 0
    skipped_count: int = 0
    metadata: ReviewMetadata = field(default_factory=ReviewMetadata)
    error_message: Optional[str] = None
    duration_ms: int = 0


@dataclass
class OnDemandOutcome:
    """Result of a user-initiated portfolio review."""
    decision: GateDecision
    recommendations: List[PortfolioRecommendation] = field(default_factory=list)
    positions_scanned: int = 0
    skipped: int = 0
    ai_rejected: int = 0

    @property
    def denied(self) -> bool:
        return not self.decision.allowed


class ReviewOrchestrator:
    """
    Executes review runs.

    Collaborators are injected; nothing is looked up at call time.
    """

    def __init__(
        self,
        assessor: MarketConditionAssessor,
        market: MarketDataProvider,
        discovery: DiscoveryRecommendationGenerator,
        portfolio: PortfolioRecommendationGenerator,
        store: RecommendationStore,
        audit_log: ReviewAuditLog,
        tiers: UserTierProvider,
        gate: TierGate,
        config: Optional[ReviewConfig] = None,
    ):
        self.assessor = assessor
        self.market = market
        self.discovery = discovery
        self.portfolio = portfolio
        self.store = store
        self.audit_log = audit_log
        self.tiers = tiers
        self.gate = gate
        self.config = config or get_config()

    @property
    def strategies(self) -> List[DiscoveryStrategy]:
        return list(self.config.discovery.strategies)

    @property
    def universes(self) -> List[CoinUniverse]:
        return list(self.config.discovery.universes)

    # =========================================================================
    # SCHEDULED / MANUAL / TRIGGERED RUNS
    # =========================================================================

    async def execute(self, run: ReviewRun) -> RunReport:
        """
        Execute one review run.

        Returns a report for both completed and failed runs. Cancellation
        (run watchdog) marks the row failed and re-raises.
        """
        started = time.monotonic()
        now = datetime.now(UTC)
        metadata = ReviewMetadata(
            strategies=[s.value for s in self.strategies],
            coin_universes=[u.value for u in self.universes],
        )
        if run.trigger_reason:
            metadata.extra["trigger_reason"] = run.trigger_reason

        report = RunReport(
            review_type=run.review_type.value,
            status=ReviewStatus.STARTED,
            phase=ReviewPhase.DISCOVERY,
            metadata=metadata,
        )

        try:
            run.audit_id = await self.audit_log.insert(
                AuditLogEntry(review_type=run.review_type, metadata=metadata, timestamp=now)
            )
        except Exception as e:
            logger.exception(f"Could not open audit row for {run.review_type.value} review")
            return self._failed_report(report, e, started)

        report.audit_id = run.audit_id
        logger.info(f"🔄 Review #{run.audit_id} started ({run.review_type.value})")

        try:
            # ---------------------------------------------------------------
            # DISCOVERY
            # ---------------------------------------------------------------
            signals = await call_external(
                self.market.get_market_signals, provider="market_data", config=self.config.concurrency
            )
            conditions = self.assessor.assess(signals)
            run.conditions = report.conditions = conditions
            metadata.market_regime = conditions.market_regime.value
            metadata.volatility_level = conditions.volatility_level.value
            metadata.review_interval_minutes = conditions.review_interval_minutes
            await self._log_conditions(conditions)

            coins_by_universe = {}
            for universe in self.universes:
                coins_by_universe[universe] = await self.discovery.collect(universe)

            user_ids = await self.tiers.list_user_ids()
            collected = await self.portfolio.collect(user_ids)

            report.coins_analyzed = len(
                {c.symbol for coins in coins_by_universe.values() for c in coins}
                | {p.symbol for p in collected.positions}
            )
            metadata.tier_denied = collected.tier_denied
            await self._transition(run, report, ReviewPhase.FILTERING)

            # ---------------------------------------------------------------
            # FILTERING
            # ---------------------------------------------------------------
            buy_prefilters = []
            skipped_buy = 0
            buy_candidates = 0
            errors = collected.candidate_errors
            for universe in self.universes:
                for strategy in self.strategies:
                    active = await self.store.active_discovery_symbols(strategy, universe)
                    pre = self.discovery.prefilter(coins_by_universe[universe], strategy, universe, active)
                    buy_prefilters.append((strategy, pre))
                    skipped_buy += pre.skipped
                    buy_candidates += pre.scanned
                    errors += pre.candidate_errors

            sell_pre = self.portfolio.prefilter(collected.positions)
            skipped_sell = collected.skipped + sell_pre.skipped
            errors += sell_pre.candidate_errors

            metadata.buy_candidates = buy_candidates
            metadata.sell_candidates = len(collected.positions) + collected.skipped
            metadata.skipped_buy = skipped_buy
            metadata.skipped_sell = skipped_sell
            metadata.candidate_errors = errors
            report.skipped_count = skipped_buy + skipped_sell
            await self._transition(run, report, ReviewPhase.AI_ANALYSIS)

            # ---------------------------------------------------------------
            # AI ANALYSIS
            # ---------------------------------------------------------------
            buys: List[DiscoveryRecommendation] = []
            ai_rejected_buy = 0
            for strategy, pre in buy_prefilters:
                result = await self.discovery.evaluate(pre.candidates, strategy, now)
                buys.extend(result.accepted)
                skipped_buy += result.skipped
                ai_rejected_buy += result.ai_rejected
                errors += result.candidate_errors

            sell_result = await self.portfolio.evaluate(sell_pre.candidates, now)
            sells: List[PortfolioRecommendation] = sell_result.accepted
            skipped_sell += sell_result.skipped
            errors += sell_result.candidate_errors

            metadata.skipped_buy = skipped_buy
            metadata.skipped_sell = skipped_sell
            metadata.ai_rejected_buy = ai_rejected_buy
            metadata.ai_rejected_sell = sell_result.ai_rejected
            metadata.candidate_errors = errors
            report.skipped_count = skipped_buy + skipped_sell
            await self._transition(run, report, ReviewPhase.STORING)

            # ---------------------------------------------------------------
            # STORING
            # ---------------------------------------------------------------
            # The audit row is closed in the same transaction as the batch
            duration_ms = self._elapsed_ms(started)
            completion = self._audit_fields(report, ReviewPhase.COMPLETED, ReviewStatus.COMPLETED)
            completion.update(buy_count=len(buys), sell_count=len(sells), duration_ms=duration_ms)
            await self.store.save_batch(
                buys, sells, review_log_id=run.audit_id, audit_patch=completion
            )

            # ---------------------------------------------------------------
            # COMPLETED
            # ---------------------------------------------------------------
            report.buy_count = len(buys)
            report.sell_count = len(sells)
            report.duration_ms = duration_ms
            report.status = ReviewStatus.COMPLETED
            run.phase = report.phase = ReviewPhase.COMPLETED

            logger.info(
                f"✅ Review #{run.audit_id} completed in {report.duration_ms}ms: "
                f"{report.buy_count} BUY, {report.sell_count} SELL, "
                f"{report.skipped_count} skipped, "
                f"{ai_rejected_buy + sell_result.ai_rejected} AI-rejected"
            )
            return report

        except asyncio.CancelledError:
            error = asyncio.TimeoutError("review run cancelled: exceeded maximum duration")
            await self._mark_failed(run, report, error, started)
            raise

        except Exception as e:
            await self._mark_failed(run, report, e, started)
            return report

    # =========================================================================
    # ON-DEMAND
    # =========================================================================

    async def review_portfolio_on_demand(self, user_id: int) -> OnDemandOutcome:
        """
        User-initiated portfolio review.

        Gated by the tier's daily on-demand allowance; does not take the run lock.
        A review that fails after being counted is given back to the user.
        """
        tier_info = await self.tiers.get_tier_info(user_id)
        decision = await self.gate.authorize(user_id, tier_info, RequestedWork.ON_DEMAND_REVIEW)
        if not decision.allowed:
            return OnDemandOutcome(decision=decision)

        try:
            result = await self.portfolio.generate([user_id], gated=False)
            if result.accepted:
                await self.store.save_batch([], result.accepted)
        except Exception:
            await self.gate.refund_on_demand(user_id, decision)
            raise

        logger.info(
            f"On-demand review for user {user_id}: {len(result.accepted)} SELL, "
            f"{result.skipped} skipped, {result.ai_rejected} AI-rejected"
        )
        return OnDemandOutcome(
            decision=decision,
            recommendations=result.accepted,
            positions_scanned=result.scanned,
            skipped=result.skipped,
            ai_rejected=result.ai_rejected,
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _audit_fields(
        report: RunReport,
        phase: ReviewPhase,
        status: Optional[ReviewStatus] = None,
    ) -> dict:
        fields = dict(
            phase=phase,
            coins_analyzed=report.coins_analyzed,
            buy_count=report.buy_count,
            sell_count=report.sell_count,
            skipped_count=report.skipped_count,
            metadata=report.metadata,
        )
        if status is not None:
            fields["status"] = status
            fields["duration_ms"] = report.duration_ms
        return fields

    async def _transition(
        self,
        run: ReviewRun,
        report: RunReport,
        phase: ReviewPhase,
    ) -> None:
        await self.audit_log.update(run.audit_id, **self._audit_fields(report, phase))
        run.phase = report.phase = phase
        logger.debug(f"Review #{run.audit_id} -> {phase.value}")

    async def _log_conditions(self, conditions: MarketConditions) -> None:
        try:
            await self.store.log_market_conditions(conditions)
        except Exception as e:
            # History only; the run does not depend on it
            logger.warning(f"Failed to log market conditions: {e}")

    async def _mark_failed(
        self,
        run: ReviewRun,
        report: RunReport,
        error: BaseException,
        started: float,
    ) -> None:
        if report.phase == ReviewPhase.STORING and await self._stored_as_completed(run, report):
            logger.warning(
                f"Review #{run.audit_id} was interrupted after its batch was committed "
                f"({type(error).__name__}); keeping it completed"
            )
            return

        self._failed_report(report, error, started)
        logger.error(
            f"❌ Review #{run.audit_id} failed in phase {report.phase.value}: {report.error_message}"
        )
        capture_review_failure(
            error,
            audit_id=run.audit_id,
            review_type=run.review_type.value,
            phase=report.phase.value,
            skipped_count=report.skipped_count,
        )
        try:
            await self.audit_log.update(
                run.audit_id,
                status=ReviewStatus.FAILED,
                phase=report.phase,
                error_message=report.error_message,
                coins_analyzed=report.coins_analyzed,
                skipped_count=report.skipped_count,
                metadata=report.metadata,
                duration_ms=report.duration_ms,
            )
        except Exception:
            logger.exception(f"Could not mark review #{run.audit_id} as failed")

    async def _stored_as_completed(self, run: ReviewRun, report: RunReport) -> bool:
        """Whether the storing transaction committed before the error arrived"""
        try:
            entry = await self.audit_log.get(run.audit_id)
        except Exception:
            logger.exception(f"Could not read back review #{run.audit_id}")
            return False

        if entry is None or entry.status != ReviewStatus.COMPLETED:
            return False

        report.status = ReviewStatus.COMPLETED
        report.phase = run.phase = ReviewPhase.COMPLETED
        report.buy_count = entry.buy_count
        report.sell_count = entry.sell_count
        report.duration_ms = entry.duration_ms
        return True

    def _failed_report(self, report: RunReport, error: BaseException, started: float) -> RunReport:
        report.status = ReviewStatus.FAILED
        report.error_message = str(error) or type(error).__name__
        report.metadata.error_type = type(error).__name__
        report.duration_ms = self._elapsed_ms(started)
        return report

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
