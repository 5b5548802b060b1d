"""Utilities for turning a configured date range into booking date keys."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import List, Union

DATE_KEY_FORMAT = "%m/%d/%Y"

DateLike = Union[date, str]


def format_date_key(value: date) -> str:
    """Render a calendar date in the upstream ``MM/DD/YYYY`` form."""
    return value.strftime(DATE_KEY_FORMAT)


def parse_date_key(text: str) -> date:
    """Parse an ``MM/DD/YYYY`` key, raising ``ValueError`` on anything else."""
    return datetime.strptime(text.strip(), DATE_KEY_FORMAT).date()


def coerce_date(value: DateLike) -> date:
    """Accept a ``date`` or an ISO ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip())


def enumerate_dates(start: DateLike, end: DateLike) -> List[date]:
    """
    Every calendar day from ``start`` to ``end`` inclusive, ascending.

    Stepping plain ``date`` values keeps each day anchored at its own midnight,
    so daylight-saving changes inside the range never skip or repeat a day.
    An inverted range yields nothing.
    """
    current = coerce_date(start)
    stop = coerce_date(end)
    days: List[date] = []
    while current <= stop:
        days.append(current)
        current += timedelta(days=1)
    return days


def date_keys(start: DateLike, end: DateLike) -> List[str]:
    return [format_date_key(day) for day in enumerate_dates(start, end)]
