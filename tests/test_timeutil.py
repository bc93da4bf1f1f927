"""Tests for engine/timeutil.py: timestamp resolution and recurrence stepping."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from crm_reminders.engine.timeutil import (
    TimestampError,
    is_date_only,
    is_recurrence_frequency,
    next_occurrence,
    resolve,
    resolve_reference,
    within_end,
)

ZONES = [
    ZoneInfo("Asia/Jerusalem"),
    ZoneInfo("America/New_York"),
    ZoneInfo("Europe/London"),
    ZoneInfo("Australia/Sydney"),
    ZoneInfo("UTC"),
]

NAIVE = [
    "2024-01-15T08:30:00",
    "2024-03-10T08:00:00",
    "2024-07-04T23:45:00",
    "2024-11-03T12:00:00",
    "2025-12-31T00:00:00",
]

MARKED = [
    "2024-03-10T08:00:00Z",
    "2024-07-01T12:00:00+03:00",
    "2024-12-31T23:59:59-05:00",
    "2024-10-27T01:30:00+00:00",
]


@pytest.mark.parametrize("tz", ZONES, ids=str)
@pytest.mark.parametrize("raw", NAIVE)
def test_naive_timestamp_is_home_wall_clock(raw, tz):
    expected = datetime.fromisoformat(raw).replace(tzinfo=tz)

    assert resolve(raw, tz) == expected


@pytest.mark.parametrize("tz", ZONES, ids=str)
@pytest.mark.parametrize("raw", MARKED)
def test_marked_timestamp_ignores_home_zone(raw, tz):
    assert resolve(raw, tz) == datetime.fromisoformat(raw)


@pytest.mark.parametrize("tz", ZONES, ids=str)
def test_resolve_returns_utc(tz):
    result = resolve("2024-03-10T08:00:00", tz)

    assert result.utcoffset() == timedelta(0)


def test_resolve_datetime_and_date_inputs():
    tz = ZoneInfo("Asia/Jerusalem")

    assert resolve(datetime(2024, 3, 10, 8, 0), tz) == datetime(2024, 3, 10, 6, 0, tzinfo=timezone.utc)
    assert resolve(datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc), tz) == datetime(
        2024, 3, 10, 8, 0, tzinfo=timezone.utc
    )
    assert resolve(date(2024, 3, 10), tz) == datetime(2024, 3, 9, 22, 0, tzinfo=timezone.utc)


def test_non_iso_timestamp_falls_back(caplog):
    tz = ZoneInfo("Asia/Jerusalem")

    result = resolve("10 March 2024 08:00", tz)

    assert result == datetime(2024, 3, 10, 6, 0, tzinfo=timezone.utc)
    assert "falling back" in caplog.text


@pytest.mark.parametrize("raw", ["garbage!!", "", "   "])
def test_unparseable_timestamp_raises(raw):
    with pytest.raises(TimestampError):
        resolve(raw, ZoneInfo("UTC"))


def test_timestamp_error_is_value_error():
    assert issubclass(TimestampError, ValueError)


def test_is_date_only():
    assert is_date_only("2024-03-10")
    assert is_date_only(" 2024-03-10 ")
    assert is_date_only(date(2024, 3, 10))
    assert not is_date_only("2024-03-10T09:00:00")
    assert not is_date_only(datetime(2024, 3, 10, 9))


# --- reference dates ---


def test_reference_date_minus_minutes_lands_on_local_eight():
    tz = ZoneInfo("Asia/Jerusalem")

    due = resolve_reference("2024-03-10", tz) - timedelta(minutes=60)

    local = due.astimezone(tz)
    assert (local.date(), local.time()) == (date(2024, 3, 10), time(8, 0))


@pytest.mark.parametrize("tz", ZONES, ids=str)
@pytest.mark.parametrize("day", ["2024-03-10", "2024-03-31", "2024-10-27", "2024-11-03"])
def test_reference_date_defaults_to_nine_local(day, tz):
    local = resolve_reference(day, tz).astimezone(tz)

    assert local.date() == date.fromisoformat(day)
    assert local.time() == time(9, 0)


def test_reference_custom_default_time():
    tz = ZoneInfo("UTC")

    result = resolve_reference(date(2024, 5, 1), tz, default_time=time(14, 30))

    assert result == datetime(2024, 5, 1, 14, 30, tzinfo=timezone.utc)


def test_reference_with_time_behaves_like_resolve():
    tz = ZoneInfo("America/New_York")

    assert resolve_reference("2024-03-10T15:00:00", tz) == resolve("2024-03-10T15:00:00", tz)


def test_reference_invalid_calendar_date():
    with pytest.raises(TimestampError):
        resolve_reference("2024-02-30", ZoneInfo("UTC"))


# --- recurrence stepping ---


def test_weekly_step_keeps_wall_clock_across_dst():
    tz = ZoneInfo("America/New_York")
    due = datetime(2024, 3, 8, 14, 0, tzinfo=timezone.utc)  # 09:00 EST

    nxt = next_occurrence(due, "weekly", 1, tz)

    assert nxt == datetime(2024, 3, 15, 13, 0, tzinfo=timezone.utc)  # 09:00 EDT
    assert nxt.astimezone(tz).time() == time(9, 0)


@pytest.mark.parametrize(
    ("frequency", "interval", "start", "expected"),
    [
        ("daily", 1, datetime(2024, 3, 10, 9), datetime(2024, 3, 11, 9)),
        ("daily", 2, datetime(2024, 3, 10, 9), datetime(2024, 3, 12, 9)),
        ("weekly", 2, datetime(2024, 3, 10, 9), datetime(2024, 3, 24, 9)),
        ("monthly", 1, datetime(2024, 1, 31, 9), datetime(2024, 2, 29, 9)),
        ("monthly", 3, datetime(2024, 11, 15, 9), datetime(2025, 2, 15, 9)),
        ("yearly", 1, datetime(2024, 2, 29, 9), datetime(2025, 2, 28, 9)),
    ],
)
def test_next_occurrence_local_steps(frequency, interval, start, expected):
    tz = ZoneInfo("Asia/Jerusalem")
    due = start.replace(tzinfo=tz).astimezone(timezone.utc)

    nxt = next_occurrence(due, frequency, interval, tz)

    assert nxt.astimezone(tz).replace(tzinfo=None) == expected


def test_next_occurrence_rejects_unknown_frequency():
    with pytest.raises(ValueError, match="frequency"):
        next_occurrence(datetime(2024, 1, 1, tzinfo=timezone.utc), "hourly", 1, ZoneInfo("UTC"))


def test_next_occurrence_rejects_zero_interval():
    with pytest.raises(ValueError, match="interval"):
        next_occurrence(datetime(2024, 1, 1, tzinfo=timezone.utc), "daily", 0, ZoneInfo("UTC"))


def test_is_recurrence_frequency():
    assert is_recurrence_frequency("weekly")
    assert not is_recurrence_frequency("hourly")
    assert not is_recurrence_frequency(None)


# --- recurrence end ---


def test_within_end_without_end():
    now = datetime(2024, 3, 10, tzinfo=timezone.utc)

    assert within_end(now, None, ZoneInfo("UTC"))
    assert within_end(now, "", ZoneInfo("UTC"))


def test_within_end_date_only_covers_whole_local_day():
    tz = ZoneInfo("Asia/Jerusalem")
    late_on_day = datetime(2024, 3, 17, 21, 30, tzinfo=timezone.utc)  # 23:30 local
    next_day = datetime(2024, 3, 17, 22, 30, tzinfo=timezone.utc)  # 00:30 local, 18th

    assert within_end(late_on_day, "2024-03-17", tz)
    assert not within_end(next_day, "2024-03-17", tz)


def test_within_end_datetime_is_inclusive():
    tz = ZoneInfo("Asia/Jerusalem")
    end = "2024-03-17T09:00:00"
    exact = resolve(end, tz)

    assert within_end(exact, end, tz)
    assert not within_end(exact + timedelta(seconds=1), end, tz)
