"""asyncpg pool creation."""

from typing import Optional

import asyncpg
import structlog

from control_plane.config import Settings

logger = structlog.get_logger(__name__)


async def create_pool(settings: Settings) -> Optional[asyncpg.Pool]:
    """Create the connection pool, or None when DATABASE_URL is unset."""
    if not settings.database_url:
        logger.warning("Database connection not configured. Set DATABASE_URL in .env")
        return None

    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=10,  # connect timeout
        command_timeout=30,
    )
    logger.info(
        "database_pool_initialized",
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
    )
    return pool
