"""
Layer 4 — Date helpers
Calendar-day arithmetic for exemption periods. No timezone or business-day
adjustment anywhere.
"""
from datetime import date, datetime, timedelta
from typing import Optional, Union

DateLike = Union[date, str]


def to_date(value: DateLike) -> date:
    """Accept a date, a datetime or an ISO string (YYYY-MM-DD...)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


# Longest exemption accepted anywhere (ten years)
MAX_DURATION_DAYS = 3650


def derive_end_date(start_date: DateLike, duration_days: int) -> date:
    """End of the exemption: start date plus duration, in calendar days."""
    return to_date(start_date) + timedelta(days=int(duration_days))


def is_expired(end_date: DateLike, today: Optional[date] = None) -> bool:
    """True once the end date lies strictly before today."""
    return to_date(end_date) < (today or date.today())


def days_remaining(end_date: DateLike, today: Optional[date] = None) -> int:
    """Whole days from today to the end date (negative once expired)."""
    return (to_date(end_date) - (today or date.today())).days


def format_date(value: Optional[DateLike]) -> str:
    """French display format, dd/mm/yyyy."""
    if not value:
        return ''
    return to_date(value).strftime('%d/%m/%Y')
