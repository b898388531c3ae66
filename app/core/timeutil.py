"""
Time and billing-period helpers.

Timestamps are stored as naive UTC datetimes. A billing period is a calendar
month written ``YYYY-MM``.
"""
import re
from datetime import datetime, timezone
from typing import Optional, Tuple
from app.core.errors import InvalidInputError

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def current_period(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"{now.year:04d}-{now.month:02d}"


def parse_period(period: str) -> Tuple[int, int]:
    match = _PERIOD_RE.match(period or "")
    if not match:
        raise InvalidInputError("period", f"expected YYYY-MM, got {period!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise InvalidInputError("period", f"month out of range in {period!r}")
    return year, month


def period_bounds(period: str) -> Tuple[datetime, datetime]:
    """Return [start, end) of the calendar month."""
    year, month = parse_period(period)
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return start, end
