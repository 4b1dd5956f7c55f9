"""
Time Window Utilities

Date helpers shared by the forecast, rhythm and agent code.
"""

import calendar
from datetime import date, datetime, timedelta

DAY_SECONDS = 24 * 60 * 60
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.utcnow()


def to_datetime(value) -> datetime:
    """Normalize a date, datetime or ISO string to a naive datetime."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        return to_datetime(datetime.fromisoformat(value))
    raise TypeError(f"Unsupported date value: {value!r}")


def days_between(earlier, later) -> float:
    """Fractional days from ``earlier`` to ``later``."""
    return (to_datetime(later) - to_datetime(earlier)).total_seconds() / DAY_SECONDS


def start_of_month(reference_date: datetime) -> datetime:
    return reference_date.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def add_months(value: datetime, months: int) -> datetime:
    """Step a datetime by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_due_from_day(due_day: int, reference_date: datetime) -> datetime:
    """Next occurrence of ``due_day`` strictly after ``reference_date``."""
    last_day = calendar.monthrange(reference_date.year, reference_date.month)[1]
    candidate = reference_date.replace(day=min(due_day, last_day))
    if candidate <= reference_date:
        following = add_months(reference_date.replace(day=1), 1)
        last_day = calendar.monthrange(following.year, following.month)[1]
        candidate = following.replace(day=min(due_day, last_day))
    return candidate


def next_recurring_date(current: datetime, interval: str) -> datetime:
    """Advance a recurring schedule by one interval (DAILY, WEEKLY, MONTHLY, YEARLY)."""
    interval = (interval or "MONTHLY").upper()
    if interval == "DAILY":
        return current + timedelta(days=1)
    if interval == "WEEKLY":
        return current + timedelta(days=7)
    if interval == "YEARLY":
        return add_months(current, 12)
    return add_months(current, 1)


def window_bucket(moment: datetime, hours: int) -> str:
    """Label of the fixed ``hours``-wide window containing ``moment``."""
    epoch_hours = int((to_datetime(moment) - datetime(1970, 1, 1)).total_seconds() // 3600)
    return str(epoch_hours // hours)
