"""
Seed script for the availability_windows table.

Creates one recurring window per working day from settings:
- Days: WORKING_DAYS (0=Monday ... 6=Sunday)
- Hours: BUSINESS_HOURS_START - BUSINESS_HOURS_END
- Lesson bounds: MIN_LESSON_DURATION - MAX_LESSON_DURATION

Existing recurring windows for a day are updated in place, so the script is
safe to run any number of times.
"""

import asyncio
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session_factory
from database.models import AvailabilityWindow, ScheduleType
from scheduling.utils.formatting import WEEKDAYS, parse_hhmm
from shared.config import Settings, get_settings


async def seed_availability(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> dict[str, int]:
    """
    Seed recurring availability windows.

    Returns:
        Dict with created/updated counts
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    start = parse_hhmm(settings.BUSINESS_HOURS_START)
    end = parse_hhmm(settings.BUSINESS_HOURS_END)

    created_count = 0
    updated_count = 0

    async with session_factory() as session:
        for day in settings.working_days:
            result = await session.execute(
                select(AvailabilityWindow).where(
                    AvailabilityWindow.schedule_type == ScheduleType.RECURRING,
                    AvailabilityWindow.day_of_week == day,
                )
            )
            existing = result.scalars().first()

            if existing is None:
                session.add(
                    AvailabilityWindow(
                        schedule_type=ScheduleType.RECURRING,
                        day_of_week=day,
                        start_time=start,
                        end_time=end,
                        is_available=True,
                        is_active=True,
                        min_lesson_duration=settings.MIN_LESSON_DURATION,
                        max_lesson_duration=settings.MAX_LESSON_DURATION,
                        buffer_after_minutes=0,
                        max_advance_booking_days=settings.MAX_ADVANCE_BOOKING_DAYS,
                        price_per_hour=Decimal(str(settings.DEFAULT_PRICE_PER_HOUR)),
                    )
                )
                created_count += 1
                print(f"✓ Created: {WEEKDAYS[day]} {settings.BUSINESS_HOURS_START}-{settings.BUSINESS_HOURS_END}")
            else:
                existing.start_time = start
                existing.end_time = end
                existing.is_active = True
                existing.min_lesson_duration = settings.MIN_LESSON_DURATION
                existing.max_lesson_duration = settings.MAX_LESSON_DURATION
                updated_count += 1
                print(f"⊙ Updated: {WEEKDAYS[day]} {settings.BUSINESS_HOURS_START}-{settings.BUSINESS_HOURS_END}")

        await session.commit()

    print(f"  Created: {created_count} windows, updated: {updated_count}")
    return {"created": created_count, "updated": updated_count}


if __name__ == "__main__":
    print("Seeding availability_windows table...")
    print("=" * 60)
    asyncio.run(seed_availability())
