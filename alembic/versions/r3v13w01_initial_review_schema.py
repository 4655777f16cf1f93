"""initial_review_schema

Revision ID: r3v13w01
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'r3v13w01'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True, comment='Account email'),
        sa.Column('username', sa.String(length=255), nullable=True, comment='Display name'),
        sa.Column('tier', sa.String(length=20), nullable=False, comment='Subscription tier: free/premium'),
        sa.Column('tier_updated_at', sa.DateTime(timezone=True), nullable=False, comment='Last tier change'),
        sa.Column('is_active', sa.Boolean(), nullable=False, comment='Inactive users are never scanned'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Registration timestamp'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_tier'), 'users', ['tier'], unique=False)

    op.create_table(
        'holdings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='User ID (foreign key)'),
        sa.Column('symbol', sa.String(length=20), nullable=False, comment="Coin symbol (e.g., 'BTC')"),
        sa.Column('quantity', sa.Float(), nullable=False, comment='Units held'),
        sa.Column('average_price', sa.Float(), nullable=False, comment='Average entry price (USD)'),
        sa.Column('stop_loss', sa.Float(), nullable=True, comment='User-set stop loss'),
        sa.Column('take_profit', sa.Float(), nullable=True, comment='User-set take profit'),
        sa.Column('resistance_price', sa.Float(), nullable=True, comment='Nearest resistance level (from analysis)'),
        sa.Column('is_open', sa.Boolean(), nullable=False),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'symbol', name='uix_holding_user_symbol'),
    )
    op.create_index(op.f('ix_holdings_user_id'), 'holdings', ['user_id'], unique=False)
    op.create_index(op.f('ix_holdings_is_open'), 'holdings', ['is_open'], unique=False)

    op.create_table(
        'on_demand_usage',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='User ID (foreign key)'),
        sa.Column('date', sa.Date(), nullable=False, comment='UTC date of this window'),
        sa.Column('review_count', sa.Integer(), nullable=False, comment='On-demand reviews used in this window'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'date', name='uix_on_demand_user_date'),
    )
    op.create_index(op.f('ix_on_demand_usage_user_id'), 'on_demand_usage', ['user_id'], unique=False)
    op.create_index(op.f('ix_on_demand_usage_date'), 'on_demand_usage', ['date'], unique=False)
    op.create_index('ix_on_demand_user_date', 'on_demand_usage', ['user_id', 'date'], unique=False)

    op.create_table(
        'ai_review_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('review_type', sa.String(length=20), nullable=False, comment='scheduled/manual/triggered'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='started/completed/failed'),
        sa.Column('phase', sa.String(length=20), nullable=False, comment='Last phase reached'),
        sa.Column('coins_analyzed', sa.Integer(), nullable=False),
        sa.Column('buy_count', sa.Integer(), nullable=False),
        sa.Column('sell_count', sa.Integer(), nullable=False),
        sa.Column('skipped_count', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment='ReviewMetadata (closed fields + extra map)'),
        sa.Column('duration_ms', sa.Integer(), nullable=True, comment='Wall-clock duration, set on completion/failure'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, comment='Run start'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ai_review_logs_review_type'), 'ai_review_logs', ['review_type'], unique=False)
    op.create_index(op.f('ix_ai_review_logs_status'), 'ai_review_logs', ['status'], unique=False)
    op.create_index(op.f('ix_ai_review_logs_timestamp'), 'ai_review_logs', ['timestamp'], unique=False)
    op.create_index('ix_ai_review_logs_type_status', 'ai_review_logs', ['review_type', 'status'], unique=False)

    op.create_table(
        'discovery_recommendations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('strategy', sa.String(length=20), nullable=False, comment='conservative/moderate/aggressive'),
        sa.Column('coin_universe', sa.String(length=10), nullable=False, comment='top10/top50/top100'),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('entry_price', sa.Float(), nullable=False),
        sa.Column('stop_loss', sa.Float(), nullable=False),
        sa.Column('take_profit_low', sa.Float(), nullable=False),
        sa.Column('take_profit_high', sa.Float(), nullable=False),
        sa.Column('position_size', sa.Float(), nullable=False, comment='Fraction of portfolio (0-1)'),
        sa.Column('risk_level', sa.String(length=10), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('sources', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('discovery_score', sa.Float(), nullable=False, comment='Local composite score (0-100)'),
        sa.Column('review_log_id', sa.Integer(), nullable=True, comment='Run that produced this recommendation'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['review_log_id'], ['ai_review_logs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_discovery_recommendations_symbol'), 'discovery_recommendations', ['symbol'], unique=False)
    op.create_index(op.f('ix_discovery_recommendations_expires_at'), 'discovery_recommendations', ['expires_at'], unique=False)
    op.create_index('ix_discovery_strategy_universe', 'discovery_recommendations', ['strategy', 'coin_universe'], unique=False)

    op.create_table(
        'portfolio_recommendations',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('current_price', sa.Float(), nullable=False),
        sa.Column('entry_price', sa.Float(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('unrealized_pnl', sa.Float(), nullable=False),
        sa.Column('percent_gain', sa.Float(), nullable=False),
        sa.Column('sell_reason', sa.String(length=20), nullable=False, comment='risk_management/profit_target/momentum_loss/resistance'),
        sa.Column('risk_level', sa.String(length=10), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('review_log_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['review_log_id'], ['ai_review_logs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_portfolio_recommendations_user_id'), 'portfolio_recommendations', ['user_id'], unique=False)
    op.create_index(op.f('ix_portfolio_recommendations_expires_at'), 'portfolio_recommendations', ['expires_at'], unique=False)
    op.create_index('ix_portfolio_user_symbol', 'portfolio_recommendations', ['user_id', 'symbol'], unique=False)

    op.create_table(
        'market_conditions_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('volatility_level', sa.String(length=10), nullable=False),
        sa.Column('market_regime', sa.String(length=10), nullable=False),
        sa.Column('volume_change_pct', sa.Float(), nullable=False),
        sa.Column('price_movement_pct', sa.Float(), nullable=False),
        sa.Column('news_rate_per_hour', sa.Float(), nullable=False),
        sa.Column('btc_dominance_pct', sa.Float(), nullable=False),
        sa.Column('review_interval_minutes', sa.Integer(), nullable=False),
        sa.Column('top_movers', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('significant_news', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_market_conditions_log_timestamp'), 'market_conditions_log', ['timestamp'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_market_conditions_log_timestamp'), table_name='market_conditions_log')
    op.drop_table('market_conditions_log')

    op.drop_index('ix_portfolio_user_symbol', table_name='portfolio_recommendations')
    op.drop_index(op.f('ix_portfolio_recommendations_expires_at'), table_name='portfolio_recommendations')
    op.drop_index(op.f('ix_portfolio_recommendations_user_id'), table_name='portfolio_recommendations')
    op.drop_table('portfolio_recommendations')

    op.drop_index('ix_discovery_strategy_universe', table_name='discovery_recommendations')
    op.drop_index(op.f('ix_discovery_recommendations_expires_at'), table_name='discovery_recommendations')
    op.drop_index(op.f('ix_discovery_recommendations_symbol'), table_name='discovery_recommendations')
    op.drop_table('discovery_recommendations')

    op.drop_index('ix_ai_review_logs_type_status', table_name='ai_review_logs')
    op.drop_index(op.f('ix_ai_review_logs_timestamp'), table_name='ai_review_logs')
    op.drop_index(op.f('ix_ai_review_logs_status'), table_name='ai_review_logs')
    op.drop_index(op.f('ix_ai_review_logs_review_type'), table_name='ai_review_logs')
    op.drop_table('ai_review_logs')

    op.drop_index('ix_on_demand_user_date', table_name='on_demand_usage')
    op.drop_index(op.f('ix_on_demand_usage_date'), table_name='on_demand_usage')
    op.drop_index(op.f('ix_on_demand_usage_user_id'), table_name='on_demand_usage')
    op.drop_table('on_demand_usage')

    op.drop_index(op.f('ix_holdings_is_open'), table_name='holdings')
    op.drop_index(op.f('ix_holdings_user_id'), table_name='holdings')
    op.drop_table('holdings')

    op.drop_index(op.f('ix_users_tier'), table_name='users')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')
