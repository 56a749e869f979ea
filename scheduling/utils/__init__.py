"""
Utility functions shared by the scheduling services.

- formatting: slot labels, message dates, price calculation
"""

from scheduling.utils.formatting import (
    calculate_price,
    format_date,
    format_datetime,
    format_money,
    format_slot_label,
    parse_hhmm,
)

__all__ = [
    "calculate_price",
    "format_date",
    "format_datetime",
    "format_money",
    "format_slot_label",
    "parse_hhmm",
]
