"""
Test configuration and fixtures.

Every test gets its own SQLite database file (aiosqlite) with the schema
created from the models, a frozen clock, and in-memory fakes for the
calendar of record and the notification channel. The scheduling services
are wired exactly as in production through build_services().
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from database.connection import create_engine, create_session_factory
from database.models import Base, Lesson, NotificationRecord, Student, WaitlistEntry
from scheduling.container import build_services
from shared.config import Settings
from tests.factories import NOW, FakeCalendar, FakeNotifier, FrozenClock


@pytest.fixture
def settings(tmp_path):
    """Settings for a 10:00-18:00, seven-day teacher on a throwaway database."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}",
        TIMEZONE="Asia/Jerusalem",
        BUSINESS_HOURS_START="10:00",
        BUSINESS_HOURS_END="18:00",
        WORKING_DAYS="0,1,2,3,4,5,6",
        DEFAULT_PRICE_PER_HOUR=150.0,
        HEALTH_CHECK_DIR=str(tmp_path / "health"),
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings.DATABASE_URL)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def calendar():
    return FakeCalendar()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def services(settings, session_factory, calendar, notifier, clock):
    return build_services(settings, session_factory, calendar, notifier, clock)


@pytest.fixture
def make_student(session_factory):
    """Factory creating persisted students with unique chat ids."""
    counter = 0

    async def _make(name: str = "Dana", **fields) -> Student:
        nonlocal counter
        counter += 1
        student = Student(
            name=name,
            chat_id=fields.pop("chat_id", f"chat-{counter}"),
            total_lessons_booked=0,
            total_lessons_completed=0,
            total_lessons_cancelled=0,
            payment_debt=Decimal("0.00"),
            currency="ILS",
            **fields,
        )
        async with session_factory() as session:
            session.add(student)
            await session.commit()
        return student

    return _make


@pytest_asyncio.fixture
async def student(make_student):
    return await make_student()


@pytest.fixture
def db(session_factory):
    """Read helpers for assertions against the database."""

    class _Reader:
        async def lesson(self, lesson_id) -> Lesson:
            async with session_factory() as session:
                return await session.get(Lesson, lesson_id)

        async def student(self, student_id) -> Student:
            async with session_factory() as session:
                return await session.get(Student, student_id)

        async def entry(self, entry_id) -> WaitlistEntry:
            async with session_factory() as session:
                return await session.get(WaitlistEntry, entry_id)

        async def lessons(self) -> list[Lesson]:
            async with session_factory() as session:
                result = await session.execute(select(Lesson).order_by(Lesson.start_time))
                return list(result.scalars().all())

        async def notifications(self, notification_type=None) -> list[NotificationRecord]:
            stmt = select(NotificationRecord).order_by(NotificationRecord.created_at)
            if notification_type is not None:
                stmt = stmt.where(NotificationRecord.notification_type == notification_type)
            async with session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())

    return _Reader()
