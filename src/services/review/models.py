"""
Review Pipeline Database Models

SQLAlchemy 2.0 models for the audit log, both recommendation classes
and the market conditions history.
"""
from datetime import datetime, UTC
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Float,
    DateTime,
    ForeignKey,
    Index,
    JSON,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from src.database.models import Base
from src.core.enums import ReviewStatus, ReviewPhase


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB, "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class AIReviewLog(Base):
    """
    One row per review run.

    Inserted once when the run starts and patched in place at every
    phase transition. Never re-created.
    """
    __tablename__ = "ai_review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    review_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="scheduled/manual/triggered"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReviewStatus.STARTED.value,
        index=True,
        comment="started/completed/failed"
    )
    phase: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ReviewPhase.DISCOVERY.value,
        comment="Last phase reached"
    )

    # === CUMULATIVE COUNTS ===
    coins_analyzed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    buy_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sell_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    review_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=dict,
        comment="ReviewMetadata (closed fields + extra map)"
    )

    duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Wall-clock duration, set on completion/failure"
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True,
        comment="Run start"
    )

    __table_args__ = (
        Index("ix_ai_review_logs_type_status", "review_type", "status"),
    )

    def __repr__(self) -> str:
        return f"<AIReviewLog(id={self.id}, type={self.review_type}, status={self.status}, phase={self.phase})>"


class DiscoveryRecommendationRecord(Base):
    """
    Global BUY recommendation (not user scoped).
    """
    __tablename__ = "discovery_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    strategy: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="conservative/moderate/aggressive"
    )
    coin_universe: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="top10/top50/top100"
    )

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    stop_loss: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit_low: Mapped[float] = mapped_column(Float, nullable=False)
    take_profit_high: Mapped[float] = mapped_column(Float, nullable=False)
    position_size: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Fraction of portfolio (0-1)"
    )
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sources: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    discovery_score: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        comment="Local composite score (0-100)"
    )

    review_log_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("ai_review_logs.id", ondelete="SET NULL"),
        nullable=True,
        comment="Run that produced this recommendation"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_discovery_strategy_universe", "strategy", "coin_universe"),
    )

    def __repr__(self) -> str:
        return f"<DiscoveryRecommendation(symbol={self.symbol}, strategy={self.strategy}, confidence={self.confidence})>"


class PortfolioRecommendationRecord(Base):
    """
    User-scoped SELL recommendation against an open position.

    At most one active (unexpired) row per (user_id, symbol).
    """
    __tablename__ = "portfolio_recommendations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)

    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    current_price: Mapped[float] = mapped_column(Float, nullable=False)
    entry_price: Mapped[float] = mapped_column(Float, nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unrealized_pnl: Mapped[float] = mapped_column(Float, nullable=False)
    percent_gain: Mapped[float] = mapped_column(Float, nullable=False)
    sell_reason: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="risk_management/profit_target/momentum_loss/resistance"
    )
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")

    review_log_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("ai_review_logs.id", ondelete="SET NULL"),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    __table_args__ = (
        Index("ix_portfolio_user_symbol", "user_id", "symbol"),
    )

    def __repr__(self) -> str:
        return f"<PortfolioRecommendation(user_id={self.user_id}, symbol={self.symbol}, reason={self.sell_reason})>"


class MarketConditionsLog(Base):
    """
    Market conditions assessed at the start of each run.
    """
    __tablename__ = "market_conditions_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    volatility_level: Mapped[str] = mapped_column(String(10), nullable=False)
    market_regime: Mapped[str] = mapped_column(String(10), nullable=False)
    volume_change_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    price_movement_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    news_rate_per_hour: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    btc_dominance_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    review_interval_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    top_movers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    significant_news: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    reasoning: Mapped[str] = mapped_column(Text, nullable=False, default="")

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        index=True
    )

    def __repr__(self) -> str:
        return (
            f"<MarketConditionsLog(volatility={self.volatility_level}, "
            f"regime={self.market_regime}, interval={self.review_interval_minutes})>"
        )
