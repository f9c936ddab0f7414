from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from huddle.datetimes import (
    event_instant,
    format_event_datetime,
    is_upcoming,
    normalize,
    normalize_event_datetime,
    parse_wall_time,
    split_event_datetime,
    to_naive_utc,
)


def test_legacy_date_and_time_match_iso_timestamp():
    legacy = normalize_event_datetime("2024-05-01", "19:00")
    iso = normalize_event_datetime("2024-05-01T19:00:00")
    assert legacy == iso == "2024-05-01T19:00:00Z"


def test_twelve_hour_times_are_converted():
    assert normalize_event_datetime("2024-05-01", "7:00 PM") == "2024-05-01T19:00:00Z"
    assert normalize_event_datetime("2024-05-01", "12:15 am") == "2024-05-01T00:15:00Z"
    assert normalize_event_datetime("2024-05-01", "12pm") == "2024-05-01T12:00:00Z"


def test_missing_time_means_start_of_day():
    assert normalize_event_datetime("2024-05-01") == "2024-05-01T00:00:00Z"
    assert normalize_event_datetime("2024-05-01", "  ") == "2024-05-01T00:00:00Z"


@pytest.mark.parametrize(
    "date, time",
    [
        ("2024-05-01", "19:00"),
        ("2024-05-01T19:00:00+02:00", None),
        ("2024-05-01", "7:30 pm"),
    ],
)
def test_normalize_is_idempotent(date, time):
    once = normalize_event_datetime(date, time)
    assert normalize_event_datetime(once) == once


def test_offsets_are_converted_to_utc():
    assert (
        normalize_event_datetime("2024-05-01T19:00:00+02:00") == "2024-05-01T17:00:00Z"
    )


def test_naive_values_use_requested_timezone():
    assert (
        normalize_event_datetime("2024-07-01", "09:00", tz="America/New_York")
        == "2024-07-01T13:00:00Z"
    )


def test_invalid_inputs_raise_value_error():
    with pytest.raises(ValueError):
        normalize_event_datetime("")
    with pytest.raises(ValueError):
        normalize_event_datetime("2024-13-01")
    with pytest.raises(ValueError):
        normalize_event_datetime("2024-05-01", "25:00")
    with pytest.raises(ValueError):
        normalize_event_datetime("2024-05-01", "13pm")
    with pytest.raises(ValueError):
        normalize_event_datetime("2024-05-01", "19:00", tz="Mars/Olympus")


def test_parse_wall_time_variants():
    assert parse_wall_time("19:00").hour == 19
    assert parse_wall_time("7pm").hour == 19
    assert parse_wall_time("7:45 P.M.").minute == 45
    assert parse_wall_time(None).hour == 0


def test_normalize_reads_event_attributes():
    legacy = SimpleNamespace(date="2024-05-01", time="19:00")
    modern = SimpleNamespace(date="2024-05-01T19:00:00Z", time=None)
    assert normalize(legacy) == normalize(modern)


def test_event_instant_prefers_stored_start():
    stored = datetime(2030, 1, 1, 12, 0)
    event = SimpleNamespace(date="2024-05-01", time="19:00", starts_at=stored)
    assert event_instant(event) == stored


def test_event_instant_parses_when_start_missing():
    event = SimpleNamespace(date="2024-05-01", time="7:00 PM", starts_at=None)
    assert event_instant(event) == datetime(2024, 5, 1, 19, 0)


def test_is_upcoming_compares_against_now():
    now = datetime(2024, 5, 1, 12, 0)
    assert is_upcoming(now + timedelta(minutes=1), now)
    assert not is_upcoming(now, now)
    assert not is_upcoming(now - timedelta(days=1), now)


def test_to_naive_utc():
    aware = datetime(2024, 5, 1, 14, 0, tzinfo=UTC).astimezone(
        ZoneInfo("Europe/Berlin")
    )
    assert to_naive_utc(aware) == datetime(2024, 5, 1, 14, 0)
    assert to_naive_utc(None) is None
    naive = datetime(2024, 5, 1, 12, 0)
    assert to_naive_utc(naive) is naive


def test_split_and_format_event_datetime():
    assert split_event_datetime("2024-05-01T19:00:00Z", tz="UTC") == (
        "2024-05-01",
        "19:00",
    )
    assert (
        format_event_datetime("2024-05-01T19:00:00Z", tz="UTC")
        == "May 1, 2024 at 7:00 PM UTC"
    )
