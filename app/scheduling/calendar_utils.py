from __future__ import annotations

import calendar
import datetime
from typing import List, Tuple

MINUTES_PER_DAY = 24 * 60


def is_weekend(day: datetime.date) -> bool:
    return day.weekday() >= 5


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_key(day: datetime.date) -> Tuple[int, int]:
    return day.year, day.month


def iso_week_key(day: datetime.date) -> Tuple[int, int]:
    iso_year, iso_week, _ = day.isocalendar()
    return iso_year, iso_week


def date_range(start: datetime.date, end: datetime.date) -> List[datetime.date]:
    """Inclusive list of dates from ``start`` to ``end``."""
    if end < start:
        return []
    return [start + datetime.timedelta(days=offset) for offset in range((end - start).days + 1)]


def month_dates(year: int, month: int) -> List[datetime.date]:
    first = datetime.date(year, month, 1)
    return date_range(first, datetime.date(year, month, days_in_month(year, month)))


def week_dates(start: datetime.date) -> List[datetime.date]:
    return date_range(start, start + datetime.timedelta(days=6))


def time_to_minutes(value: datetime.time) -> int:
    return value.hour * 60 + value.minute


def window_minutes(start: datetime.time, end: datetime.time) -> Tuple[int, int]:
    """Shift window in minutes from midnight; overnight windows end past 1440."""
    start_minutes = time_to_minutes(start)
    end_minutes = time_to_minutes(end)
    if end_minutes <= start_minutes:
        end_minutes += MINUTES_PER_DAY
    return start_minutes, end_minutes


def windows_overlap(first: Tuple[int, int], second: Tuple[int, int]) -> bool:
    return first[0] < second[1] and second[0] < first[1]


def format_window(start: datetime.time, end: datetime.time) -> str:
    return f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"
