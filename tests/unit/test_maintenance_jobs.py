"""
Unit tests for scheduling/workers/jobs.py - Background job bodies.

Tests coverage:
- run_maintenance(): expiry, reminders and integrity check in one pass
- Step isolation: a failing step is counted, the others still run
- check_lesson_integrity(): overlapping active lessons logged at ERROR
- process_notifications() / reconcile_calendar() / purge_notifications()
"""

import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from database.models import CalendarSyncStatus, Lesson, LessonStatus
from scheduling.services import WaitlistPreference
from scheduling.workers import jobs
from tests.factories import MONDAY, WEDNESDAY, at


async def _insert_raw_lesson(session_factory, student, start, minutes=60):
    """Insert a lesson directly, bypassing the booking checks."""
    async with session_factory() as session:
        session.add(Lesson(
            student_id=student.id,
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            duration_minutes=minutes,
            status=LessonStatus.SCHEDULED,
            calendar_sync_status=CalendarSyncStatus.PENDING,
            price=Decimal("150.00"),
            currency="ILS",
        ))
        await session.commit()


class TestRunMaintenance:
    @pytest.mark.asyncio
    async def test_all_steps_run(self, services, make_student, clock):
        waiting = await make_student("Avi")
        await services.waitlist.enqueue(waiting.id, WaitlistPreference(max_wait_days=1))
        booked = await make_student("Noa")
        await services.booking.book(booked.id, at(MONDAY, 15), 60)
        clock.advance(days=1, hours=1)

        stats = await jobs.run_maintenance(services)

        assert stats == {
            "errors": 0,
            "waitlist_expired": 1,
            "reminders_scheduled": 0,
            "overlapping_pairs": 0,
        }

    @pytest.mark.asyncio
    async def test_reminders_are_scheduled(self, services, student):
        await services.booking.book(student.id, at(MONDAY, 15), 60)

        stats = await jobs.run_maintenance(services)

        assert stats["reminders_scheduled"] == 1

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_the_others(
        self, services, student, monkeypatch
    ):
        await services.booking.book(student.id, at(MONDAY, 15), 60)

        async def broken():
            raise RuntimeError("waitlist table locked")

        monkeypatch.setattr(services.waitlist, "expire_stale", broken)

        stats = await jobs.run_maintenance(services)

        assert stats["errors"] == 1
        assert "waitlist_expired" not in stats
        assert stats["reminders_scheduled"] == 1
        assert stats["overlapping_pairs"] == 0


class TestIntegrityCheck:
    @pytest.mark.asyncio
    async def test_overlaps_are_logged_at_error(
        self, services, student, session_factory, caplog
    ):
        await _insert_raw_lesson(session_factory, student, at(WEDNESDAY, 10))
        await _insert_raw_lesson(session_factory, student, at(WEDNESDAY, 10, 30))

        with caplog.at_level(logging.ERROR, logger="scheduling.workers.jobs"):
            count = await jobs.check_lesson_integrity(services)

        assert count == 1
        assert any("overlap" in record.getMessage() for record in caplog.records)

    @pytest.mark.asyncio
    async def test_clean_schedule_reports_nothing(self, services, student):
        await services.booking.book(student.id, at(WEDNESDAY, 10), 60)
        await services.booking.book(student.id, at(WEDNESDAY, 11), 60)

        assert await jobs.check_lesson_integrity(services) == 0


class TestOtherJobs:
    @pytest.mark.asyncio
    async def test_process_notifications_delivers(self, services, student, notifier):
        await services.booking.book(student.id, at(WEDNESDAY, 10), 60)

        stats = await jobs.process_notifications(services)

        assert stats["sent"] == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_reconcile_calendar_runs_both_passes(self, services, student, calendar):
        calendar.fail_create = True
        await services.booking.book(student.id, at(WEDNESDAY, 10), 60)
        calendar.fail_create = False

        result = await jobs.reconcile_calendar(services)

        assert result["sync"]["synced"] == 1
        assert result["reconcile"]["events"] == 1

    @pytest.mark.asyncio
    async def test_purge_reports_deleted_count(self, services, student, clock):
        await services.booking.book(student.id, at(WEDNESDAY, 10), 60)
        await jobs.process_notifications(services)
        clock.advance(days=40)

        assert await jobs.purge_notifications(services) == {"deleted": 1}
