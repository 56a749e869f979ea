"""
Database initialization for the scheduling worker.

This script:
- Checks the database connection
- Creates missing tables (Base.metadata.create_all)
- Seeds recurring availability windows from settings

Designed to be idempotent and safe to run multiple times.

Run with: python scripts/init_db.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import text  # noqa: E402

from database.connection import dispose_engine, get_engine, get_session_factory  # noqa: E402
from database.models import Base  # noqa: E402
from database.seeds import seed_all  # noqa: E402
from shared.config import get_settings  # noqa: E402
from shared.logging_config import configure_logging  # noqa: E402

logger = logging.getLogger(__name__)


async def check_database_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        logger.info("Checking database connection...")
        async with get_engine().connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✓ Database connection successful")
        return True
    except Exception as e:
        logger.error(f"✗ Database connection failed: {e}")
        return False


async def create_tables() -> None:
    async with get_engine().begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    logger.info(f"✓ Tables ready: {', '.join(sorted(Base.metadata.tables))}")


async def main() -> int:
    """Main entry point for database initialization."""
    configure_logging()
    settings = get_settings()

    try:
        if not await check_database_connection():
            return 1
        await create_tables()
        await seed_all(get_session_factory(), settings)
        logger.info("✓ Database initialization complete")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error during database initialization: {e}")
        return 1
    finally:
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
