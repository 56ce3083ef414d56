"""Database engines for the DeFairy preference and rebalance-history store.

The API server, the monitoring thread and the CLI all reach the store
through get_engine(), so each database URL maps to exactly one engine per
process. PostgreSQL gets a pooled engine; SQLite is shared across threads,
and an in-memory SQLite database lives on a single connection so every
caller sees the same tables.
"""
import logging

import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("defairy.db")

_engines = {}


def is_memory_sqlite(url: str) -> bool:
    return url in ('sqlite://', 'sqlite:///:memory:') or 'mode=memory' in url


def _create_sqlite_engine(url: str) -> sa.Engine:
    connect_args = {'check_same_thread': False}
    if is_memory_sqlite(url):
        return sa.create_engine(url, connect_args=connect_args, poolclass=StaticPool, echo=False)
    return sa.create_engine(url, connect_args=connect_args, echo=False)


def get_engine(url: str = None, pool_size: int = 10, max_overflow: int = 20) -> sa.Engine:
    """Return the engine for ``url``, creating it on first use.

    Args:
        url: Database URL. Defaults to config.DATABASE_URL.
        pool_size: PostgreSQL connections kept open for the monitor and API workers.
        max_overflow: Extra PostgreSQL connections allowed while a cycle and requests overlap.
    """
    if url is None:
        from defairy.config import DATABASE_URL
        url = DATABASE_URL

    if url not in _engines:
        if url.startswith('sqlite'):
            _engines[url] = _create_sqlite_engine(url)
        else:
            _engines[url] = sa.create_engine(
                url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=30,
                pool_recycle=1800,
                pool_pre_ping=True,
                echo=False,
            )
        logger.info(f"[DB] Engine created for {_engines[url].url.render_as_string(hide_password=True)}")
    return _engines[url]
