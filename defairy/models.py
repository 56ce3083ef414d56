"""SQLAlchemy Core table definitions for DeFairy."""
import sqlalchemy as sa
from sqlalchemy import func

metadata = sa.MetaData()

# ─── 1. Rebalance Preferences (one row per wallet) ──────────────────────────
rebalance_preferences = sa.Table('rebalance_preferences', metadata,
    sa.Column('wallet_address', sa.Text, primary_key=True),
    sa.Column('prefs_json', sa.Text, nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=func.now()),
)

# ─── 2. Rebalance History (one row per signed action) ───────────────────────
rebalance_history = sa.Table('rebalance_history', metadata,
    sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
    sa.Column('wallet_address', sa.Text),
    sa.Column('pool_key', sa.Text, nullable=False),
    sa.Column('pool', sa.Text),
    sa.Column('venue', sa.Text),
    sa.Column('action_type', sa.Text, nullable=False),
    sa.Column('signature', sa.Text, nullable=False),
    sa.Column('estimated_value', sa.Float),
    sa.Column('reason', sa.Text),
    sa.Column('executed_at', sa.Float, nullable=False),
)
sa.Index('idx_rebal_hist_wallet', rebalance_history.c.wallet_address)
sa.Index('idx_rebal_hist_pool', rebalance_history.c.pool_key)
