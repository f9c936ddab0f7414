"""iCalendar (.ics) helpers."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .datetimes import event_instant

if TYPE_CHECKING:
    from .models import Event


_tag_pattern = re.compile(r"<[^>]+>")
DEFAULT_DURATION = timedelta(hours=1)


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip HTML and markdown markers."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    cleaned_lines: list[str] = []
    for line in normalized.split("\n"):
        trimmed = line.lstrip()
        if trimmed.startswith("#"):
            trimmed = trimmed.lstrip("#").lstrip()
        if trimmed.startswith(("- ", "* ")):
            trimmed = trimmed[2:].lstrip()
        cleaned_lines.append(trimmed)
    normalized = "\n".join(cleaned_lines)
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", r"\n")
    )


def _fold(line: str) -> list[str]:
    """Fold content lines longer than 75 octets."""
    encoded = line.encode("utf-8")
    if len(encoded) <= 75:
        return [line]
    parts: list[str] = []
    current = ""
    for char in line:
        if len((current + char).encode("utf-8")) > 75:
            parts.append(current)
            current = " " + char
        else:
            current += char
    parts.append(current)
    return parts


def generate_ics(
    event: Event, *, include_location: bool = True, now: datetime | None = None
) -> str:
    """Return ICS text for an event."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    start_source = event_instant(event)
    end_source = event.end_time or start_source + DEFAULT_DURATION
    location = ""
    if include_location:
        location = event.virtual_link if event.is_virtual else event.location
        location = location or event.location or ""

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Huddle//EN",
        "CALSCALE:GREGORIAN",
        "BEGIN:VEVENT",
        f"UID:{event.id}@huddle",
        f"DTSTAMP:{dtstamp}",
        f"DTSTART:{_format_utc(start_source)}",
        f"DTEND:{_format_utc(end_source)}",
        f"SUMMARY:{_escape_text(event.title)}",
        f"DESCRIPTION:{_escape_text(event.description)}",
    ]
    if location:
        lines.append(f"LOCATION:{_escape_text(location)}")
    if event.status == "cancelled":
        lines.append("STATUS:CANCELLED")
    lines.extend(["END:VEVENT", "END:VCALENDAR"])
    folded: list[str] = []
    for line in lines:
        folded.extend(_fold(line))
    return "\r\n".join(folded) + "\r\n"
