"""Event date/time normalization.

Events created before ISO timestamps were introduced store a calendar date
(``2024-05-01``) and a local wall time (``19:00`` or ``7:00 PM``) in separate
fields. Newer rows store a single ISO-8601 timestamp in ``date``. Everything
that sorts, filters or displays events goes through :func:`normalize_event_datetime`
so both shapes compare as the same instant.
"""

from __future__ import annotations

import re
from datetime import UTC, date as date_cls, datetime, time as time_cls
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import settings

_twelve_hour = re.compile(
    r"^(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<period>am|pm)$", re.IGNORECASE
)
_twenty_four_hour = re.compile(r"^(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::\d{2})?$")


def _zone(tz: str | None) -> ZoneInfo:
    name = tz or settings.default_timezone or "UTC"
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown timezone {name!r}") from exc


def _format_iso(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_wall_time(raw: str | None) -> time_cls:
    """Parse ``19:00``, ``7pm`` or ``7:30 PM`` into a time; blank means midnight."""
    cleaned = (raw or "").strip()
    if not cleaned:
        return time_cls(0, 0)
    match = _twelve_hour.match(cleaned.replace(".", ""))
    if match:
        hour = int(match.group("hour"))
        minute = int(match.group("minute") or 0)
        if not 1 <= hour <= 12:
            raise ValueError(f"Invalid time {raw!r}")
        is_pm = match.group("period").lower() == "pm"
        if is_pm and hour != 12:
            hour += 12
        if not is_pm and hour == 12:
            hour = 0
        return time_cls(hour, minute)
    match = _twenty_four_hour.match(cleaned)
    if match:
        try:
            return time_cls(int(match.group("hour")), int(match.group("minute")))
        except ValueError as exc:
            raise ValueError(f"Invalid time {raw!r}") from exc
    raise ValueError(f"Invalid time {raw!r}")


def parse_event_datetime(
    date: str, time: str | None = None, *, tz: str | None = None
) -> datetime:
    """Return the aware UTC instant described by an event's date fields."""
    cleaned = (date or "").strip()
    if not cleaned:
        raise ValueError("Event date is required")
    zone = _zone(tz)
    if "T" in cleaned:
        try:
            parsed = datetime.fromisoformat(cleaned)
        except ValueError as exc:
            raise ValueError(f"Invalid ISO timestamp {date!r}") from exc
    else:
        try:
            calendar_date = date_cls.fromisoformat(cleaned)
        except ValueError as exc:
            raise ValueError(f"Invalid date {date!r}") from exc
        parsed = datetime.combine(calendar_date, parse_wall_time(time))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(UTC)


def normalize_event_datetime(
    date: str, time: str | None = None, *, tz: str | None = None
) -> str:
    """Return the canonical ISO-8601 UTC string for an event's date fields."""
    return _format_iso(parse_event_datetime(date, time, tz=tz))


def normalize(event, *, tz: str | None = None) -> str:
    """Normalize any object carrying ``date`` and optional ``time`` attributes."""
    return normalize_event_datetime(
        getattr(event, "date"), getattr(event, "time", None), tz=tz
    )


def event_instant(event, *, tz: str | None = None) -> datetime:
    """Return the event start as a naive UTC datetime, matching stored columns."""
    starts_at = getattr(event, "starts_at", None)
    if starts_at is not None:
        return starts_at
    parsed = parse_event_datetime(event.date, getattr(event, "time", None), tz=tz)
    return parsed.replace(tzinfo=None)


def is_upcoming(instant: datetime, now: datetime) -> bool:
    """Compare naive UTC datetimes; the event is upcoming while it is in the future."""
    return instant > now


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def split_event_datetime(iso_value: str, *, tz: str | None = None) -> tuple[str, str]:
    """Return local ``(YYYY-MM-DD, HH:MM)`` parts for form defaults."""
    local = parse_event_datetime(iso_value, tz=tz).astimezone(_zone(tz))
    return local.strftime("%Y-%m-%d"), local.strftime("%H:%M")


def format_event_datetime(iso_value: str, *, tz: str | None = None) -> str:
    """Return a display string such as ``May 1, 2024 at 7:00 PM UTC``."""
    local = parse_event_datetime(iso_value, tz=tz).astimezone(_zone(tz))
    hour = local.hour % 12 or 12
    period = "AM" if local.hour < 12 else "PM"
    return (
        f"{local.strftime('%b')} {local.day}, {local.year} at "
        f"{hour}:{local.minute:02d} {period} {local.tzname()}"
    )
