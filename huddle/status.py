"""Event lifecycle statuses and the RSVP gate derived from them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import settings
from .datetimes import event_instant

EVENT_STATUSES = (
    "draft",
    "scheduled",
    "pending",
    "active",
    "live",
    "completed",
    "cancelled",
    "postponed",
)
LEGACY_STATUS = "scheduled"

# Statuses that never accept RSVPs. "pending" means the RSVP deadline passed
# and "live" means the event is under way.
RSVP_CLOSED_STATUSES = frozenset(
    {"draft", "completed", "cancelled", "postponed", "pending", "live"}
)

# Statuses only a host changes; the clock never moves an event out of these.
MANUAL_STATUSES = frozenset({"draft", "cancelled", "postponed", "completed"})


@dataclass(frozen=True)
class StatusDisplay:
    label: str
    color: str
    emoji: str


STATUS_DISPLAY: dict[str, StatusDisplay] = {
    "draft": StatusDisplay("Draft", "gray", "📝"),
    "scheduled": StatusDisplay("Scheduled", "blue", "📅"),
    "pending": StatusDisplay("RSVPs Closed", "orange", "⏳"),
    "active": StatusDisplay("Open for RSVPs", "green", "✅"),
    "live": StatusDisplay("Happening Now", "red", "🔴"),
    "completed": StatusDisplay("Completed", "gray", "🏁"),
    "cancelled": StatusDisplay("Cancelled", "red", "❌"),
    "postponed": StatusDisplay("Postponed", "yellow", "⏸️"),
}

# Host-initiated transitions: action -> (allowed source statuses, target status).
STATUS_ACTIONS: dict[str, tuple[frozenset[str | None], str]] = {
    "publish": (frozenset({"draft"}), "scheduled"),
    "cancel": (
        frozenset({None, "draft", "scheduled", "active", "pending", "postponed"}),
        "cancelled",
    ),
    "postpone": (frozenset({None, "scheduled", "active", "pending"}), "postponed"),
    "reschedule": (frozenset({"postponed", "cancelled"}), "scheduled"),
    "complete": (frozenset({None, "scheduled", "active", "pending", "live"}), "completed"),
}


def display_status(status: str | None) -> str:
    return status or LEGACY_STATUS


def status_display(status: str | None) -> StatusDisplay:
    return STATUS_DISPLAY.get(display_status(status), STATUS_DISPLAY[LEGACY_STATUS])


def can_rsvp(event) -> bool:
    """Return whether the event's status lets users RSVP at all.

    Events without a stored status predate lifecycle tracking and always accept
    RSVPs. Capacity is checked separately by the rule engine.
    """
    status = getattr(event, "status", None)
    if status is None:
        return True
    return status not in RSVP_CLOSED_STATUSES


def compute_status(
    event, now: datetime, *, completed_after: timedelta | None = None
) -> str | None:
    """Return the status the event should have at ``now``.

    ``now`` and the event's datetimes are naive UTC.
    """
    status = event.status
    if status is None or status in MANUAL_STATUSES:
        return status
    completed_after = completed_after or settings.completed_after
    start = event_instant(event)
    end = event.end_time

    if end is not None and end < now:
        return "completed"
    if end is None and start < now - completed_after:
        return "completed"
    if status == "live":
        return status
    if start <= now:
        if end is None or end > now:
            return "live"
        return status
    if not event.published:
        return status
    deadline = event.rsvp_deadline
    if deadline is not None and deadline < now:
        return "pending"
    return "active"


def apply_status_transition(event, now: datetime) -> str | None:
    """Update ``event.status`` in place; return the previous status when it changed."""
    new_status = compute_status(event, now)
    if new_status == event.status:
        return None
    previous = event.status
    event.status = new_status
    event.status_updated_at = now
    return previous or LEGACY_STATUS


def transition_for_action(current: str | None, action: str) -> str:
    """Return the target status for a host action or raise ``ValueError``."""
    if action not in STATUS_ACTIONS:
        raise ValueError(f"Unknown status action {action!r}")
    sources, target = STATUS_ACTIONS[action]
    if current not in sources:
        raise ValueError(
            f"Cannot {action} an event that is {display_status(current)}"
        )
    return target
