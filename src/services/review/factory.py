"""
Pipeline assembly

build_pipeline() wires every review component with explicit dependencies.
Tests and the worker pass their own session maker / providers.
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.engine import get_session_maker
from src.services.review.audit_log import ReviewAuditLog
from src.services.review.config import ReviewConfig, get_config
from src.services.review.discovery_generator import DiscoveryRecommendationGenerator
from src.services.review.interval_controller import ReviewIntervalController
from src.services.review.market_conditions import MarketConditionAssessor
from src.services.review.orchestrator import ReviewOrchestrator
from src.services.review.portfolio_generator import PortfolioRecommendationGenerator
from src.services.review.providers import (
    AIProvider,
    DatabasePortfolioProvider,
    DatabaseUserTierProvider,
    MarketDataProvider,
    PortfolioProvider,
    UserTierProvider,
)
from src.services.review.recommendation_store import RecommendationStore
from src.services.review.scheduler import ReviewScheduler
from src.services.review.tier_gate import TierGate


@dataclass
class ReviewPipeline:
    market: MarketDataProvider
    ai: AIProvider
    store: RecommendationStore
    audit_log: ReviewAuditLog
    tiers: UserTierProvider
    gate: TierGate
    orchestrator: ReviewOrchestrator
    controller: ReviewIntervalController
    scheduler: ReviewScheduler


def build_pipeline(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    market: Optional[MarketDataProvider] = None,
    ai: Optional[AIProvider] = None,
    tiers: Optional[UserTierProvider] = None,
    portfolios: Optional[PortfolioProvider] = None,
    config: Optional[ReviewConfig] = None,
) -> ReviewPipeline:
    """
    Assemble the review pipeline.

    Missing providers default to CoinGecko / OpenAI / the database.
    """
    config = config or get_config()
    session_maker = session_maker or get_session_maker()

    if market is None:
        from src.services.review.coingecko_market_data import CoinGeckoMarketData
        market = CoinGeckoMarketData()
    if ai is None:
        from src.services.review.openai_judge import OpenAIJudge
        ai = OpenAIJudge()

    tiers = tiers or DatabaseUserTierProvider(session_maker)
    portfolios = portfolios or DatabasePortfolioProvider(session_maker)

    store = RecommendationStore(session_maker)
    audit_log = ReviewAuditLog(session_maker)
    gate = TierGate(session_maker)

    discovery = DiscoveryRecommendationGenerator(
        market, ai, config=config.discovery, concurrency=config.concurrency
    )
    portfolio = PortfolioRecommendationGenerator(
        market, ai, portfolios, tiers, gate, rules=config.portfolio, concurrency=config.concurrency
    )
    orchestrator = ReviewOrchestrator(
        assessor=MarketConditionAssessor(config.interval),
        market=market,
        discovery=discovery,
        portfolio=portfolio,
        store=store,
        audit_log=audit_log,
        tiers=tiers,
        gate=gate,
        config=config,
    )
    controller = ReviewIntervalController(
        orchestrator, audit_log=audit_log, store=store, config=config.interval
    )
    scheduler = ReviewScheduler(controller, audit_log, config=config)

    return ReviewPipeline(
        market=market,
        ai=ai,
        store=store,
        audit_log=audit_log,
        tiers=tiers,
        gate=gate,
        orchestrator=orchestrator,
        controller=controller,
        scheduler=scheduler,
    )
