from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_dt(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def period_for(value: datetime | date | None = None) -> str:
    """Calendar-month key (``YYYY-MM``) used for monthly aggregation."""
    value = value or utcnow()
    return f"{value.year:04d}-{value.month:02d}"


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """Return ``[start, end)`` for a ``YYYY-MM`` period."""
    year_str, month_str = period.split("-", 1)
    year, month = int(year_str), int(month_str)
    start = datetime(year, month, 1)
    days = calendar.monthrange(year, month)[1]
    return start, start + timedelta(days=days)


def previous_period(period: str) -> str:
    start, _end = period_bounds(period)
    return period_for(start - timedelta(days=1))
