"""
Database models for the Coin Advisor backend

SQLAlchemy 2.0 models with full type hints.
Review pipeline tables live in src/services/review/models.py.
"""

from datetime import datetime, date, UTC
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Float,
    Boolean,
    DateTime,
    Date,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from src.core.enums import UserTier


class Base(DeclarativeBase):
    """Base class for all models"""

    pass


# ===========================
# MODELS
# ===========================


class User(Base):
    """
    User model

    Tracks:
    - Basic identity (email / display name)
    - Subscription tier (drives TierGate decisions)

    Tier lifecycle is owned by the billing subsystem; this service only reads it.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True, nullable=True, comment="Account email"
    )
    username: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Display name"
    )
    tier: Mapped[str] = mapped_column(
        String(20),
        default=UserTier.FREE.value,
        nullable=False,
        index=True,
        comment="Subscription tier: free/premium",
    )
    tier_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Last tier change",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, comment="Inactive users are never scanned"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="Registration timestamp",
    )

    # Relationships
    holdings = relationship(
        "Holding", back_populates="user", cascade="all, delete-orphan"
    )
    on_demand_usage = relationship(
        "OnDemandUsage", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, tier={self.tier})>"


class Holding(Base):
    """
    Open position held by a user (paper or tracked portfolio)

    Protection levels (stop_loss / take_profit) are user-set values and feed
    the SELL rules of the portfolio generator.
    """

    __tablename__ = "holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    symbol: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="Coin symbol (e.g., 'BTC')"
    )
    quantity: Mapped[float] = mapped_column(
        Float, nullable=False, comment="Units held"
    )
    average_price: Mapped[float] = mapped_column(
        Float, nullable=False, comment="Average entry price (USD)"
    )
    stop_loss: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True, comment="User-set stop loss"
    )
    take_profit: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True, comment="User-set take profit"
    )
    resistance_price: Mapped[Optional[float]] = mapped_column(
        Float, nullable=True, comment="Nearest resistance level (from analysis)"
    )
    is_open: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False, index=True
    )
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    user = relationship("User", back_populates="holdings")

    __table_args__ = (UniqueConstraint("user_id", "symbol", name="uix_holding_user_symbol"),)

    def __repr__(self) -> str:
        return f"<Holding(user_id={self.user_id}, symbol={self.symbol}, qty={self.quantity})>"


class OnDemandUsage(Base):
    """
    On-demand review counter per user per day

    Counter resets at 00:00 UTC (a new row per day).
    """

    __tablename__ = "on_demand_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="User ID (foreign key)",
    )
    date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        index=True,
        comment="UTC date of this window",
    )
    review_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False, comment="On-demand reviews used in this window"
    )

    user = relationship("User", back_populates="on_demand_usage")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uix_on_demand_user_date"),
        Index("ix_on_demand_user_date", "user_id", "date"),
    )

    def __repr__(self) -> str:
        return f"<OnDemandUsage(user_id={self.user_id}, date={self.date}, count={self.review_count})>"
