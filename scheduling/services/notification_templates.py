"""
Message templates for student notifications.

Messages are rendered when the notification is scheduled and stored on the
NotificationRecord, so a retry resends exactly what was first attempted.
Formatting uses Telegram's HTML subset (<b>, <i>); anything a user typed
goes through _text() first.
"""

import html
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

from database.models import Lesson, Student, WaitlistEntry
from scheduling.utils.formatting import format_datetime, format_money


def _text(value: str) -> str:
    return html.escape(value, quote=False)


def _lesson_line(lesson: Lesson, tz: ZoneInfo) -> str:
    return f"📅 {format_datetime(lesson.start_time, tz)} ({lesson.duration_minutes} min)"


def booking_confirmation(student: Student, lesson: Lesson, tz: ZoneInfo) -> str:
    lines = [
        f"✅ <b>Lesson booked</b>, {_text(student.name)}!",
        "",
        _lesson_line(lesson, tz),
        f"💰 {format_money(lesson.price, lesson.currency)}",
    ]
    if lesson.topic:
        lines.append(f"📚 {_text(lesson.topic)}")
    return "\n".join(lines)


def lesson_cancellation(
    student: Student,
    lesson: Lesson,
    tz: ZoneInfo,
    by_teacher: bool,
    fee: Decimal | None = None,
) -> str:
    who = "The teacher cancelled" if by_teacher else "You cancelled"
    lines = [
        "❌ <b>Lesson cancelled</b>",
        "",
        f"{who} the lesson on {format_datetime(lesson.start_time, tz)}.",
    ]
    if lesson.cancellation_reason and by_teacher:
        lines.append(f"<i>{_text(lesson.cancellation_reason)}</i>")
    if fee:
        lines.append(
            f"A late-cancellation fee of {format_money(fee, lesson.currency)} was added to your balance."
        )
    return "\n".join(lines)


def lesson_rescheduled(
    student: Student,
    lesson: Lesson,
    previous_start: datetime,
    tz: ZoneInfo,
) -> str:
    return "\n".join([
        "🔄 <b>Lesson rescheduled</b>",
        "",
        f"Was: {format_datetime(previous_start, tz)}",
        f"Now: {format_datetime(lesson.start_time, tz)} ({lesson.duration_minutes} min)",
    ])


def lesson_reminder(student: Student, lesson: Lesson, tz: ZoneInfo) -> str:
    return "\n".join([
        f"⏰ <b>Reminder</b>: you have a lesson coming up, {_text(student.name)}.",
        "",
        _lesson_line(lesson, tz),
    ])


def waitlist_added(student: Student, entry: WaitlistEntry) -> str:
    return (
        f"🕐 You've been added to the waitlist (position #{entry.position}). "
        f"We'll let you know as soon as a matching time becomes available."
    )


def waitlist_slot_available(
    student: Student, start: datetime, end: datetime, tz: ZoneInfo
) -> str:
    minutes = int((end - start).total_seconds() // 60)
    return "\n".join([
        "🎉 <b>A time slot opened up!</b>",
        "",
        f"📅 {format_datetime(start, tz)} ({minutes} min)",
        "",
        "Reply quickly to book it, other students were notified too.",
    ])
