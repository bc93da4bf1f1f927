"""Timestamp resolution and recurrence stepping.

Entity timestamps arrive in three shapes: ISO strings with a ``Z``/offset
suffix (absolute), ISO strings without one (wall-clock time in the business's
home timezone), and bare calendar dates. Everything leaves this module as an
aware UTC ``datetime``.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

log = logging.getLogger(__name__)

DEFAULT_REFERENCE_TIME = time(9, 0)

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_STEPS = {
    "daily": "days",
    "weekly": "weeks",
    "monthly": "months",
    "yearly": "years",
}

Timestamp = str | datetime | date


class TimestampError(ValueError):
    """Raised when a timestamp defeats both the ISO and the fallback parser."""


def _localize(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None or dt.utcoffset() is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def _parse(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    log.warning("Non-ISO timestamp %r, falling back to generic parse", text)
    try:
        return date_parser.parse(text)
    except (ValueError, OverflowError) as e:
        raise TimestampError(f"Unparseable timestamp: {text!r}") from e


def _parse_day(raw: str | date) -> date:
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as e:
        raise TimestampError(f"Invalid calendar date: {raw!r}") from e


def is_date_only(raw: Timestamp) -> bool:
    if isinstance(raw, datetime):
        return False
    if isinstance(raw, date):
        return True
    return bool(_DATE_ONLY.match(raw.strip()))


def resolve(raw: Timestamp, tz: ZoneInfo) -> datetime:
    """Absolute instant for raw; zone-less values are wall-clock time in tz."""
    if isinstance(raw, datetime):
        return _localize(raw, tz)
    if isinstance(raw, date):
        return _localize(datetime.combine(raw, time()), tz)
    text = raw.strip()
    if not text:
        raise TimestampError("Empty timestamp")
    return _localize(_parse(text), tz)


def resolve_reference(
    raw: Timestamp,
    tz: ZoneInfo,
    *,
    default_time: time = DEFAULT_REFERENCE_TIME,
) -> datetime:
    """Like resolve(), but a bare calendar date lands on default_time local."""
    if is_date_only(raw):
        return _localize(datetime.combine(_parse_day(raw), default_time), tz)
    return resolve(raw, tz)


def next_occurrence(
    due: datetime, frequency: str, interval: int, tz: ZoneInfo
) -> datetime:
    """Step due forward by interval units of frequency, keeping local wall-clock time."""
    unit = _STEPS.get(frequency)
    if unit is None:
        raise ValueError(f"Unknown recurrence frequency: {frequency!r}")
    if interval < 1:
        raise ValueError(f"Recurrence interval must be >= 1, got {interval}")
    local = due.astimezone(tz).replace(tzinfo=None)
    stepped = local + relativedelta(**{unit: interval})
    return _localize(stepped, tz)


def within_end(candidate: datetime, end: Timestamp | None, tz: ZoneInfo) -> bool:
    """True when candidate does not exceed end; a date-only end covers that whole local day."""
    if end is None or end == "":
        return True
    if is_date_only(end):
        return candidate.astimezone(tz).date() <= _parse_day(end)
    return candidate <= resolve(end, tz)


def is_recurrence_frequency(value: object) -> bool:
    return value in _STEPS
