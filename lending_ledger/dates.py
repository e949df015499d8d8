"""
Date/Calendar Utilities

All ledger dates are timezone-naive calendar dates serialized as YYYY-MM-DD.
"Today" is the UTC calendar date unless a clock is injected.
"""

import calendar
import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple, Union

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')

DateLike = Union[date, str]


def parse_date(value: DateLike) -> date:
    """
    Parse a YYYY-MM-DD string (or pass through a date)

    Raises:
        ValueError: If the value is not a valid calendar date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value):
        raise ValueError(f"Date must be YYYY-MM-DD, got {value!r}")
    return date.fromisoformat(value)


def parse_optional_date(value: Optional[DateLike]) -> Optional[date]:
    if value is None or value == "":
        return None
    return parse_date(value)


def to_date_string(value: Optional[date]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def add_days(value: date, days: int) -> date:
    return value + timedelta(days=days)


def days_between(start: date, end: date) -> int:
    """Whole calendar days from start to end (negative when end is earlier)"""
    return (end - start).days


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def month_start(year: int, month: int) -> date:
    return date(year, month, 1)


def next_month(year: int, month: int) -> Tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def months_between(start: date, end: date) -> int:
    """Calendar month distance, ignoring the day of month"""
    return (end.year * 12 + end.month) - (start.year * 12 + start.month)


def due_date_for(year: int, month: int, due_day: int) -> date:
    """
    Due date of a monthly cycle.

    The anchor day is clamped to the month's last day but never permanently
    reduced: an anchor of 31 gives Feb 28 and then Mar 31 again.
    """
    return date(year, month, min(due_day, last_day_of_month(year, month)))


class Clock:
    """Source of the current calendar date"""

    def today(self) -> date:
        raise NotImplementedError

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemClock(Clock):
    """UTC calendar date of the host clock"""

    def today(self) -> date:
        return datetime.now(timezone.utc).date()


class FixedClock(Clock):
    """Clock pinned to a given date, used by tests and backfills"""

    def __init__(self, today: DateLike):
        self._today = parse_date(today)

    def today(self) -> date:
        return self._today

    def set(self, today: DateLike) -> None:
        self._today = parse_date(today)

    def advance(self, days: int) -> None:
        self._today = add_days(self._today, days)
