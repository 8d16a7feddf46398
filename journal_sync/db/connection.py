"""
asyncpg pool for the journal sync database.

Repositories borrow connections from this pool; transactions pin one
connection for their whole block (see ``EntityStore.transaction``).
"""

import logging
from typing import Optional

import asyncpg

from ..core.config import get_settings

logger = logging.getLogger(__name__)

# Shared by every request and background job
_pool: Optional[asyncpg.Pool] = None


async def init_db() -> asyncpg.Pool:
    """
    Create the pool, or return the existing one.

    Called from the application lifespan before the scheduler starts.
    """
    global _pool

    if _pool is not None:
        return _pool

    settings = get_settings()

    logger.info(f"Connecting journal sync database (pool size {settings.database_pool_size})...")

    _pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=2,
        max_size=settings.database_pool_size,
        max_inactive_connection_lifetime=300,
    )

    logger.info("Journal sync database pool ready")
    return _pool


async def get_db_pool() -> asyncpg.Pool:
    """
    Get the database connection pool.

    Raises RuntimeError if pool is not initialized.
    """
    if _pool is None:
        raise RuntimeError("Database pool not initialized. Call init_db() first.")

    return _pool


async def close_db() -> None:
    """
    Close the pool after the scheduler has stopped.
    """
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Journal sync database pool closed")
