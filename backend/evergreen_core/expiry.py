"""Race expiry rule and Pacific wall-clock conversion.

Race days are counted in a fixed UTC-8 offset. There is no daylight saving
adjustment: a race stays "next" until the Pacific midnight that follows its
scheduled date, whatever the season.
"""

from __future__ import annotations

import datetime as dt
from typing import Optional

from .errors import ValidationError

PACIFIC_OFFSET = dt.timedelta(hours=8)
UTC = dt.timezone.utc

# boundaries of races whose Pacific day lies at the edge of the datetime range
EARLIEST_BOUNDARY = dt.datetime(dt.MINYEAR, 1, 1, tzinfo=UTC) + PACIFIC_OFFSET
LATEST_BOUNDARY = dt.datetime.max.replace(tzinfo=UTC)


def as_utc(value: dt.datetime) -> dt.datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _next_pacific_midnight(scheduled: dt.datetime) -> dt.datetime:
    pacific_local = as_utc(scheduled) - PACIFIC_OFFSET
    next_day = pacific_local.date() + dt.timedelta(days=1)
    local_midnight = dt.datetime.combine(next_day, dt.time(0, 0), tzinfo=UTC)
    return local_midnight + PACIFIC_OFFSET


def expiry_boundary(scheduled: dt.datetime) -> dt.datetime:
    """UTC instant of the Pacific midnight following the race's Pacific date.

    Never raises: a race on the last representable Pacific day gets
    ``LATEST_BOUNDARY`` (it never expires), one before the first gets
    ``EARLIEST_BOUNDARY``.
    """
    try:
        return _next_pacific_midnight(scheduled)
    except OverflowError:
        if scheduled.year <= dt.MINYEAR:
            return EARLIEST_BOUNDARY
        return LATEST_BOUNDARY


def is_race_expired(scheduled: Optional[dt.datetime], now: dt.datetime) -> bool:
    if scheduled is None:
        return False
    return as_utc(now) >= expiry_boundary(scheduled)


def pacific_to_utc(local: dt.datetime) -> dt.datetime:
    """Convert a naive Pacific wall-clock time to UTC.

    Values that already carry an offset are converted directly, the offset
    they state wins over the Pacific assumption. Raises ``ValidationError``
    when the result, or the race's expiry boundary, falls outside the
    datetime range.
    """
    try:
        if local.tzinfo is not None:
            converted = local.astimezone(UTC)
        else:
            converted = (local + PACIFIC_OFFSET).replace(tzinfo=UTC)
        _next_pacific_midnight(converted)
    except OverflowError as exc:
        raise ValidationError(f"Race date '{local.isoformat()}' is out of range") from exc
    return converted


def parse_local_datetime(value: str) -> dt.datetime:
    """Parse ``YYYY-MM-DDTHH:MM[:SS]`` as submitted by a datetime-local input."""
    text = (value or "").strip()
    if not text:
        raise ValidationError("Race date is required")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid race date '{value}'") from exc
    return parsed


def parse_instant(value: object) -> Optional[dt.datetime]:
    """Parse a stored timestamp (ISO string or datetime) into aware UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(dt.datetime.fromisoformat(text))


def format_instant(value: Optional[dt.datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")
