"""RSVP capacity rules."""

from __future__ import annotations

from dataclasses import dataclass

from .status import can_rsvp

RSVP_STATUSES = ("going", "maybe", "not_going")

APPLY = "apply"
WAITLIST = "waitlist"
REJECT = "reject"


@dataclass(frozen=True)
class RsvpDecision:
    action: str
    reason: str | None = None

    @property
    def applies(self) -> bool:
        return self.action == APPLY


def normalize_rsvp_status(raw: str | None) -> str:
    normalized = (raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    if normalized not in RSVP_STATUSES:
        raise ValueError(f"Invalid RSVP status {raw!r}")
    return normalized


def seats_left(event, going_count: int) -> int | None:
    if event.max_capacity is None:
        return None
    return max(event.max_capacity - going_count, 0)


def decide_rsvp_action(
    event,
    desired_status: str,
    prior_status: str | None,
    going_count: int,
) -> RsvpDecision:
    """Decide what a user's RSVP should do.

    ``going_count`` counts every ``going`` RSVP on the event, including the
    user's own when ``prior_status`` is ``going``.
    """
    if not can_rsvp(event):
        return RsvpDecision(REJECT, "closed")
    if desired_status != "going":
        return RsvpDecision(APPLY)
    if event.max_capacity is None:
        return RsvpDecision(APPLY)
    if prior_status == "going":
        return RsvpDecision(APPLY)
    if going_count < event.max_capacity:
        return RsvpDecision(APPLY)
    if event.waitlist_enabled:
        return RsvpDecision(WAITLIST, "full")
    return RsvpDecision(REJECT, "full")
