"""Database helpers for the worker."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from psycopg2 import errors as pg_errors, pool

from leadpipe.core.config import get_settings

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[1].joinpath("sql", "schema.sql")

_connection_pool: Optional[pool.ThreadedConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 10) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool.

    Dispatchers run handlers on worker threads, so the pool must be the
    thread-safe variant.
    """
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised (max=%d)", maxconn)
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    finally:
        pg_pool.putconn(conn)


@contextmanager
def transaction():
    """Yield a pooled connection and commit on success, roll back on error."""
    with get_connection() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def apply_schema() -> None:
    """Create tables and indexes; the DDL is idempotent."""
    ddl = SCHEMA_PATH.read_text(encoding="utf-8")
    with transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(ddl)
    logger.info("Applied schema from %s", SCHEMA_PATH)


def is_unique_violation(exc: BaseException) -> bool:
    return isinstance(exc, pg_errors.UniqueViolation)
