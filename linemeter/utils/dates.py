"""Date helpers for billing periods.

The engine works in timezone-aware UTC throughout. Callers may pass naive
datetimes; those are taken to already be UTC.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: Optional[datetime]) -> datetime:
    """Normalise *value* to aware UTC; ``None`` means now."""
    if value is None:
        return utcnow()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    """Calendar month arithmetic with end-of-month clamping.

    Jan 31 + 1 month is Feb 28 (or Feb 29 in a leap year), never Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))
