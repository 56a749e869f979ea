"""
Unit tests for the availability seed and the JSON log formatter.
"""

import json
import logging
import sys
from uuid import uuid4

import pytest
from sqlalchemy import select

from database.models import AvailabilityWindow
from database.seeds.availability import seed_availability
from shared.logging_config import JSONFormatter
from tests.factories import WEDNESDAY


class TestSeedAvailability:
    @pytest.mark.asyncio
    async def test_creates_one_window_per_working_day(self, session_factory, settings):
        settings.WORKING_DAYS = "0,1,2,3,4"

        result = await seed_availability(session_factory, settings)

        assert result == {"created": 5, "updated": 0}
        async with session_factory() as session:
            windows = (await session.execute(select(AvailabilityWindow))).scalars().all()
        assert sorted(w.day_of_week for w in windows) == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_second_run_updates_in_place(self, session_factory, settings):
        settings.WORKING_DAYS = "2"
        await seed_availability(session_factory, settings)
        settings.BUSINESS_HOURS_END = "16:00"

        result = await seed_availability(session_factory, settings)

        assert result == {"created": 0, "updated": 1}
        async with session_factory() as session:
            [window] = (await session.execute(select(AvailabilityWindow))).scalars().all()
        assert window.end_time.hour == 16

    @pytest.mark.asyncio
    async def test_seeded_windows_drive_availability(self, session_factory, settings, services):
        settings.WORKING_DAYS = "2"
        settings.BUSINESS_HOURS_END = "12:00"
        await seed_availability(session_factory, settings)

        slots = await services.availability.get_available_slots(WEDNESDAY, 60)

        assert len(slots) == 3


class TestJSONFormatter:
    def _record(self, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            "scheduling.test", logging.INFO, __file__, 1, "Lesson %s booked", ("x",), None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(self._record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "scheduling.test"
        assert data["message"] == "Lesson x booked"
        assert "timestamp" in data
        assert "lesson_id" not in data

    def test_context_fields_are_copied(self):
        lesson_id = uuid4()

        data = json.loads(JSONFormatter().format(self._record(lesson_id=lesson_id, worker="purge")))

        assert data["lesson_id"] == str(lesson_id)
        assert data["worker"] == "purge"

    def test_exception_is_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = self._record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]
