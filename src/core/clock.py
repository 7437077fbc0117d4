"""Fixed-offset calendar day arithmetic.

All day values are plain ``datetime.date`` objects. The only place an instant
is turned into a day is ``today()``, so downstream comparisons never have to
think about offsets or time-of-day.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

# Africa/Harare is UTC+2 all year round (no DST).
DEFAULT_UTC_OFFSET_MINUTES = 120

_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

DayLike = Union[date, datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today(offset_minutes: int = DEFAULT_UTC_OFFSET_MINUTES, now: Optional[datetime] = None) -> date:
    """Return the local calendar day for ``now`` under a fixed UTC offset.

    Naive datetimes are interpreted as UTC.
    """

    if now is None:
        now = utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    shifted = now.astimezone(timezone.utc) + timedelta(minutes=offset_minutes)
    return shifted.date()


def _as_day(value: DayLike) -> date:
    # datetime is a subclass of date, so check it first
    if isinstance(value, datetime):
        return value.date()
    return value


def days_between(start: DayLike, end: DayLike) -> int:
    """Whole days from ``start`` to ``end`` (negative when ``end`` is earlier)."""

    return (_as_day(end) - _as_day(start)).days


def format_day(value: DayLike) -> str:
    return _as_day(value).isoformat()


def parse_day(text: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` string into a date."""

    match = _DAY_RE.match(text or "")
    if not match:
        raise ValueError(f"Invalid local date: {text!r}")
    year, month, day = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ValueError(f"Invalid local date: {text!r}") from exc
