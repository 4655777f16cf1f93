"""
Pytest configuration and fixtures for the review pipeline tests
"""

import asyncio
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from src.core.enums import CoinUniverse, UserTier
from src.core.exceptions import TransientExternalError, ValidationError
from src.database.models import Base, User
import src.services.review.models  # noqa: F401  (registers review tables)
from src.services.review.config import (
    ConcurrencyConfig,
    DiscoveryConfig,
    IntervalConfig,
    PortfolioRulesConfig,
    ReviewConfig,
)
from src.services.review.entities import (
    AIJudgment,
    CoinSnapshot,
    MarketSignals,
    Position,
)
from src.services.review.factory import build_pipeline
from src.services.review.providers import tier_info_for


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(test_db_engine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory bound to the test engine (what the services receive)
    """
    return async_sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# =============================================================================
# BUILDERS
# =============================================================================

def make_coin(
    symbol: str,
    price: float = 100.0,
    market_cap: float = 5_000_000_000,
    volume: float = 1_000_000_000,
    change_24h: float = 5.0,
    change_7d: float = 8.0,
    sentiment: float = 0.7,
    rank: int = 1,
) -> CoinSnapshot:
    """Defaults score ~72.5: passes every strategy's pre-AI floor."""
    return CoinSnapshot(
        symbol=symbol,
        name=symbol.title(),
        market_cap_rank=rank,
        market_cap=market_cap,
        current_price=price,
        volume_24h=volume,
        price_change_24h=change_24h,
        price_change_7d=change_7d,
        sentiment=sentiment,
    )


def make_weak_coin(symbol: str, rank: int = 40) -> CoinSnapshot:
    """Scores ~19: below every strategy's pre-AI floor."""
    return make_coin(
        symbol,
        volume=100_000_000,
        change_24h=-5.0,
        change_7d=-5.0,
        sentiment=0.3,
        rank=rank,
    )


def make_position(
    user_id: int,
    symbol: str,
    entry_price: float = 100.0,
    current_price: float = 100.0,
    quantity: float = 1.0,
    **kwargs,
) -> Position:
    return Position(
        user_id=user_id,
        symbol=symbol,
        quantity=quantity,
        entry_price=entry_price,
        current_price=current_price,
        **kwargs,
    )


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

class FakeMarket:
    """MarketDataProvider with canned data and scripted failures."""

    def __init__(
        self,
        signals: Optional[MarketSignals] = None,
        coins: Optional[List[CoinSnapshot]] = None,
        quotes: Optional[Dict[str, CoinSnapshot]] = None,
    ):
        self.signals = signals or MarketSignals(avg_daily_range_pct=4.0, trend_pct=1.0)
        self.coins = coins or []
        self.quotes = quotes or {}
        self.signal_failures = 0          # transient failures before success
        self.signals_always_fail = False
        self.signal_calls = 0
        self.quote_calls: List[str] = []

    async def get_market_signals(self) -> MarketSignals:
        self.signal_calls += 1
        if self.signals_always_fail:
            raise TransientExternalError("market data unavailable", provider="fake")
        if self.signal_failures > 0:
            self.signal_failures -= 1
            raise TransientExternalError("market data hiccup", provider="fake")
        return self.signals

    async def get_universe(self, universe: CoinUniverse) -> List[CoinSnapshot]:
        return list(self.coins)

    async def get_quote(self, symbol: str) -> CoinSnapshot:
        self.quote_calls.append(symbol)
        if symbol not in self.quotes:
            raise ValidationError(f"Unknown symbol {symbol}", symbol=symbol)
        return self.quotes[symbol]


class FakeAI:
    """AIProvider: per-symbol judgments, default accept at 0.8."""

    def __init__(self, judgments: Optional[Dict[str, object]] = None, delay: float = 0.0):
        self.judgments = judgments or {}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def judge(self, candidate) -> AIJudgment:
        self.calls.append(candidate.symbol)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.judgments.get(
                candidate.symbol, AIJudgment(accept=True, confidence=0.8, reasoning="looks good")
            )
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


class FakeTiers:
    """UserTierProvider backed by a dict."""

    def __init__(self, tiers: Optional[Dict[int, UserTier]] = None):
        self.tiers = tiers or {}

    async def list_user_ids(self) -> List[int]:
        return list(self.tiers)

    async def get_tier_info(self, user_id: int):
        return tier_info_for(self.tiers.get(user_id, UserTier.FREE))


class FakePortfolios:
    """PortfolioProvider backed by a dict; positions come back unpriced."""

    def __init__(self, positions: Optional[Dict[int, List[Position]]] = None):
        self.positions = positions or {}

    async def get_open_positions(self, user_id: int) -> List[Position]:
        return list(self.positions.get(user_id, []))


# =============================================================================
# PIPELINE FIXTURES
# =============================================================================

@pytest.fixture
def review_config() -> ReviewConfig:
    """Short timeouts and backoff so retries do not slow the suite."""
    return ReviewConfig(
        interval=IntervalConfig(
            min_minutes=5,
            max_minutes=240,
            tick_seconds=60,
            max_run_seconds=5,
            default_minutes=60,
        ),
        concurrency=ConcurrencyConfig(
            max_concurrency=4,
            call_timeout_seconds=1.0,
            max_attempts=3,
            initial_backoff_seconds=0.01,
            max_backoff_seconds=0.02,
        ),
        discovery=DiscoveryConfig(),
        portfolio=PortfolioRulesConfig(),
        audit_keep_last=100,
    )


@pytest.fixture
def fake_market() -> FakeMarket:
    return FakeMarket()


@pytest.fixture
def fake_ai() -> FakeAI:
    return FakeAI()


@pytest.fixture
def fake_tiers() -> FakeTiers:
    return FakeTiers()


@pytest.fixture
def fake_portfolios() -> FakePortfolios:
    return FakePortfolios()


@pytest.fixture
def pipeline(session_maker, fake_market, fake_ai, fake_tiers, fake_portfolios, review_config):
    """Fully wired pipeline on SQLite with fake external providers"""
    return build_pipeline(
        session_maker=session_maker,
        market=fake_market,
        ai=fake_ai,
        tiers=fake_tiers,
        portfolios=fake_portfolios,
        config=review_config,
    )


@pytest.fixture
async def users(db_session):
    """One free and one premium user (ids 1 and 2)"""
    free = User(email="free@example.com", username="free", tier=UserTier.FREE.value)
    premium = User(email="premium@example.com", username="premium", tier=UserTier.PREMIUM.value)
    db_session.add_all([free, premium])
    await db_session.commit()
    return free, premium
