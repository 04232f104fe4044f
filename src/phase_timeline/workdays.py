from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from .catalog_models import DurationUnit


def is_business_day(day: date) -> bool:
    return day.weekday() < 5


def add_business_days(start: date, days: int) -> date:
    """
    Step `days` business days away from `start` (negative steps go backwards).

    Weekend days are skipped and never counted; zero returns `start` unchanged.
    """

    step = 1 if days >= 0 else -1
    remaining = abs(days)
    current = start
    while remaining > 0:
        current += timedelta(days=step)
        if is_business_day(current):
            remaining -= 1
    return current


def add_calendar_days(start: date, days: int) -> date:
    return start + timedelta(days=days)


def shift(start: date, duration: int, unit: DurationUnit) -> date:
    if unit == "business_days":
        return add_business_days(start, duration)
    return add_calendar_days(start, duration)


def parse_completion_date(value: date | str | None) -> date | None:
    """
    Parse a completion record into the anchor date, or None when unusable.

    Accepts a date, 'YYYY-MM-DD', or 'YYYY-MM' (anchored on the last day of that month).
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    parts = text.split("-")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        return None
    year, month = int(parts[0]), int(parts[1])
    if not (1 <= month <= 12) or year < 1:
        return None
    return date(year, month, calendar.monthrange(year, month)[1])
