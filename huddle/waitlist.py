"""Waitlist allocation for capacity-limited events."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .crud import count_going, get_rsvp, upsert_rsvp
from .models import Event, EventRSVP, WaitlistEntry
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def get_waitlist_entry(
    session: Session, event: Event, user_id: str
) -> WaitlistEntry | None:
    stmt = select(WaitlistEntry).where(
        WaitlistEntry.event_id == event.id, WaitlistEntry.user_id == user_id
    )
    return session.scalars(stmt).first()


def waitlist_size(session: Session, event: Event) -> int:
    stmt = (
        select(func.count())
        .select_from(WaitlistEntry)
        .where(WaitlistEntry.event_id == event.id)
    )
    return session.scalar(stmt) or 0


def add_to_waitlist(session: Session, event: Event, user_id: str) -> tuple[int, int]:
    """Append ``user_id`` to the event's waitlist.

    Returns ``(position, total)``. A user already on the list keeps their
    position. Callers hold the event row lock so concurrent joins cannot
    allocate the same position.
    """
    entry = get_waitlist_entry(session, event, user_id)
    if entry is None:
        highest = session.scalar(
            select(func.max(WaitlistEntry.position)).where(
                WaitlistEntry.event_id == event.id
            )
        )
        entry = WaitlistEntry(
            event=event,
            user_id=user_id,
            position=(highest or 0) + 1,
            created_at=utcnow(),
        )
        session.add(entry)
        session.flush()
        logger.info(
            "User %s joined waitlist for event %s at position %d",
            user_id,
            event.id,
            entry.position,
        )
    return entry.position, waitlist_size(session, event)


def leave_waitlist(session: Session, event: Event, user_id: str) -> bool:
    """Remove the user's entry. Remaining positions are left as stored."""
    entry = get_waitlist_entry(session, event, user_id)
    if entry is None:
        return False
    if entry in event.waitlist_entries:
        event.waitlist_entries.remove(entry)
    else:
        session.delete(entry)
    session.flush()
    return True


def waitlist_ranking(session: Session, event: Event) -> list[tuple[int, WaitlistEntry]]:
    """Return entries in stored order with contiguous display ranks from 1."""
    stmt = (
        select(WaitlistEntry)
        .where(WaitlistEntry.event_id == event.id)
        .order_by(WaitlistEntry.position.asc(), WaitlistEntry.created_at.asc())
    )
    return list(enumerate(session.scalars(stmt).all(), start=1))


def waitlist_rank(session: Session, event: Event, user_id: str) -> int | None:
    for rank, entry in waitlist_ranking(session, event):
        if entry.user_id == user_id:
            return rank
    return None


def confirm_from_waitlist(
    session: Session, event: Event, user_id: str
) -> EventRSVP | None:
    """Turn a waitlist entry into a ``going`` RSVP; ``None`` if not waitlisted."""
    entry = get_waitlist_entry(session, event, user_id)
    if entry is None:
        return None
    entry.confirmed_at = utcnow()
    rsvp = upsert_rsvp(session, event=event, user_id=user_id, status="going")
    leave_waitlist(session, event, user_id)
    logger.info("Confirmed user %s from waitlist for event %s", user_id, event.id)
    return rsvp


def promote_next(session: Session, event: Event) -> list[EventRSVP]:
    """Fill free seats from the head of the waitlist when auto-confirm is on."""
    promoted: list[EventRSVP] = []
    if not event.auto_confirm_waitlist or event.max_capacity is None:
        return promoted
    while count_going(session, event) < event.max_capacity:
        ranking = waitlist_ranking(session, event)
        if not ranking:
            break
        _, head = ranking[0]
        existing = get_rsvp(session, event, head.user_id)
        if existing is not None and existing.status == "going":
            leave_waitlist(session, event, head.user_id)
            continue
        rsvp = confirm_from_waitlist(session, event, head.user_id)
        if rsvp is not None:
            promoted.append(rsvp)
    return promoted
