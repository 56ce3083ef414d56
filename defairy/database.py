"""DefairyDB: preference and rebalance-history storage via SQLAlchemy Core.

Works against PostgreSQL in production and SQLite for local runs and tests.
"""
import json
import logging

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from defairy.db_engine import get_engine
from defairy.models import metadata, rebalance_preferences, rebalance_history

logger = logging.getLogger("defairy.db")


class DefairyDB:
    def __init__(self, engine=None, url=None):
        if engine is not None:
            self.engine = engine
        else:
            self.engine = get_engine(url)

    def create_schema(self):
        """Create any missing tables."""
        metadata.create_all(self.engine)

    def _insert(self, table):
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(table)
        return sqlite_insert(table)

    # ─── Preferences ───────────────────────────────────────────────────────

    def save_preferences(self, wallet_address, prefs):
        """Upsert the preference document for a wallet."""
        stmt = self._insert(rebalance_preferences).values(
            wallet_address=wallet_address,
            prefs_json=json.dumps(prefs, sort_keys=True),
            updated_at=func.now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['wallet_address'],
            set_={'prefs_json': stmt.excluded.prefs_json, 'updated_at': func.now()},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def load_preferences(self, wallet_address):
        """Return the stored preference document, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                sa.select(rebalance_preferences.c.prefs_json)
                .where(rebalance_preferences.c.wallet_address == wallet_address)
            ).mappings().fetchone()
            return json.loads(row['prefs_json']) if row else None

    def list_preference_wallets(self):
        """Wallets with stored preferences."""
        with self.engine.connect() as conn:
            rows = conn.execute(sa.select(rebalance_preferences.c.wallet_address)).fetchall()
            return [r[0] for r in rows]

    # ─── Rebalance History ─────────────────────────────────────────────────

    def record_rebalance(self, result):
        """Record a successful rebalance action (RebalanceResult.to_dict())."""
        action = result.get('action') or {}
        with self.engine.begin() as conn:
            conn.execute(rebalance_history.insert().values(
                wallet_address=result.get('walletAddress'),
                pool_key=result['poolKey'],
                pool=result.get('pool'),
                venue=result.get('venue'),
                action_type=action.get('type', ''),
                signature=result['signature'],
                estimated_value=result.get('estimatedValue', 0.0),
                reason=action.get('reason'),
                executed_at=result['timestamp'],
            ))
        logger.info(f"[DB] Recorded rebalance {result['signature'][:16]} for {result['poolKey']}")

    def get_rebalance_history(self, wallet_address=None, limit=50):
        """Fetch recent rebalance history, newest first."""
        q = sa.select(rebalance_history).order_by(
            rebalance_history.c.executed_at.desc(),
            rebalance_history.c.id.desc(),
        ).limit(limit)
        if wallet_address:
            q = q.where(rebalance_history.c.wallet_address == wallet_address)
        with self.engine.connect() as conn:
            rows = conn.execute(q).mappings().fetchall()
            return [dict(r) for r in rows]
