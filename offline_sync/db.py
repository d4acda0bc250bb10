import logging
from contextlib import asynccontextmanager

import asyncpg

from offline_sync.config import DATABASE_URL

logger = logging.getLogger(__name__)

DB_POOL = None  # asyncpg pool for the remote store


async def init_db_pool(dsn: str | None = None):
    """Initializes the asyncpg connection pool for the remote store."""
    global DB_POOL
    dsn = dsn or DATABASE_URL
    if not dsn:
        logger.error("DATABASE_URL is not set. Cannot initialize DB Pool.")
        return None
    try:
        DB_POOL = await asyncpg.create_pool(dsn=dsn, min_size=1, max_size=10)
        logger.info("Database connection pool initialized.")
    except (OSError, asyncpg.PostgresError) as e:
        # Unreachable remote is the normal offline case, not a crash
        logger.warning(f"Failed to initialize database connection pool: {e}")
        DB_POOL = None
    return DB_POOL


async def close_db_pool():
    """Closes the asyncpg connection pool."""
    global DB_POOL
    if DB_POOL:
        await DB_POOL.close()
        logger.info("Database connection pool closed.")
        DB_POOL = None


@asynccontextmanager
async def db_pool(dsn: str | None = None):
    """Opens the pool for the lifetime of one event loop (e.g. one worker task)."""
    await init_db_pool(dsn)
    try:
        yield DB_POOL
    finally:
        await close_db_pool()


def get_connection():
    """Returns a connection from the pool.

    Used as an async context manager: async with get_connection() as conn:
    """
    if not DB_POOL:
        raise ConnectionError("Database pool not available")
    return DB_POOL.acquire()
