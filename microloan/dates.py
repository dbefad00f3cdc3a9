"""
Date helpers for daily repayment schedules.

All schedule arithmetic is in whole calendar days; there is no business-day
adjustment.
"""

from datetime import date, datetime, timedelta
from typing import Union

DateLike = Union[date, datetime]


def to_date(value: DateLike) -> date:
    """Drop the time component of a datetime (midnight truncation)"""
    if isinstance(value, datetime):
        return value.date()
    return value


def add_days(start: DateLike, days: int) -> date:
    """Shift a date by a number of calendar days"""
    return to_date(start) + timedelta(days=days)


def days_between(earlier: DateLike, later: DateLike) -> int:
    """Signed day-count difference ``later - earlier``"""
    return (to_date(later) - to_date(earlier)).days


def days_overdue(due_date: DateLike, as_of: DateLike) -> int:
    """Number of whole days past the due date, never negative"""
    return max(0, days_between(due_date, as_of))


def is_same_day(first: DateLike, second: DateLike) -> bool:
    return to_date(first) == to_date(second)


def format_iso(value: DateLike) -> str:
    """YYYY-MM-DD"""
    return to_date(value).isoformat()


def format_indian_date(value: DateLike) -> str:
    """DD/MM/YYYY"""
    return to_date(value).strftime("%d/%m/%Y")


def compact_stamp(value: DateLike) -> str:
    """YYYYMMDD, used in token and batch numbers"""
    return to_date(value).strftime("%Y%m%d")
