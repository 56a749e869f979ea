"""Human-readable date and money formatting for slot labels and messages."""

from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal
from zoneinfo import ZoneInfo

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
MONTHS = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December"
]

CURRENCY_SYMBOLS = {"ILS": "₪", "USD": "$", "EUR": "€", "GBP": "£"}

CENTS = Decimal("0.01")


def parse_hhmm(value: str) -> time:
    """
    Parse an "HH:MM" string.

    Raises:
        ValueError: If the string is not a valid 24h time
    """
    hours, _, minutes = value.strip().partition(":")
    return time(int(hours), int(minutes or 0))


def format_date(dt: datetime) -> str:
    """
    Format datetime to a date string.

    Returns:
        Formatted string like "Wednesday, 15 January"
    """
    return f"{WEEKDAYS[dt.weekday()]}, {dt.day} {MONTHS[dt.month - 1]}"


def format_datetime(dt: datetime, tz: ZoneInfo) -> str:
    """
    Format datetime in the teacher's timezone.

    Returns:
        Formatted string like "Wednesday, 15 January at 10:00"
    """
    local = dt.astimezone(tz)
    return f"{format_date(local)} at {local:%H:%M}"


def format_slot_label(start: datetime, end: datetime, tz: ZoneInfo) -> str:
    """
    Label for a bookable slot.

    Returns:
        Formatted string like "Wednesday, 15 January 10:00-11:00"
    """
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    return f"{format_date(local_start)} {local_start:%H:%M}-{local_end:%H:%M}"


def calculate_price(price_per_hour: Decimal | float | str, duration_minutes: int) -> Decimal:
    """Hourly rate prorated to the lesson duration, rounded to cents."""
    rate = Decimal(str(price_per_hour))
    return (rate * duration_minutes / 60).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{amount:.2f}"
