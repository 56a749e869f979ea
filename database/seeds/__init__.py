"""
Seed data orchestration module.

Provides seed_all() to execute all seed scripts in dependency order.
Run through scripts/init_db.py, which creates the tables first.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.seeds.availability import seed_availability
from shared.config import Settings


async def seed_all(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> None:
    """
    Execute all seed scripts in dependency order.

    Order:
    1. availability windows - independent
    """
    print("Starting database seeding...")
    print("-" * 50)

    await seed_availability(session_factory, settings)

    print("-" * 50)
    print(" Database seeding complete!")
