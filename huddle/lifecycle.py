"""Periodic event lifecycle maintenance."""

from __future__ import annotations

import logging

from sqlalchemy import and_, or_, select

from .database import engine, get_session
from .datetimes import parse_event_datetime
from .models import Event
from .status import MANUAL_STATUSES, apply_status_transition
from .utils import utcnow

# Use uvicorn's error logger so lifecycle messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")

STATUS_BATCH_SIZE = 200


def _backfill_start(event: Event) -> bool:
    """Fill ``starts_at`` for rows written before it existed."""
    if event.starts_at is not None:
        return False
    try:
        event.starts_at = parse_event_datetime(event.date, event.time).replace(
            tzinfo=None
        )
    except ValueError:
        logger.warning(
            "Event %s has an unparseable date %r; skipping", event.id, event.date
        )
        return False
    return True


def refresh_event_statuses() -> dict:
    """Persist due status transitions and backfill normalized start times."""
    stats = {
        "events_checked": 0,
        "statuses_changed": 0,
        "starts_backfilled": 0,
        "batches": 0,
    }
    now = utcnow()
    candidates = or_(
        Event.starts_at.is_(None),
        and_(Event.status.is_not(None), Event.status.not_in(MANUAL_STATUSES)),
    )

    with get_session() as session:
        last_seen: str | None = None
        while True:
            query = select(Event).where(candidates).order_by(Event.id)
            if last_seen:
                query = query.where(Event.id > last_seen)
            batch = session.scalars(query.limit(STATUS_BATCH_SIZE)).all()
            if not batch:
                break
            for event in batch:
                stats["events_checked"] += 1
                if _backfill_start(event):
                    stats["starts_backfilled"] += 1
                if event.starts_at is None:
                    continue
                previous = apply_status_transition(event, now)
                if previous is not None:
                    stats["statuses_changed"] += 1
                    logger.info(
                        "Event %s (%s) moved from %s to %s",
                        event.id,
                        event.title,
                        previous,
                        event.status,
                    )
                session.add(event)
            last_seen = batch[-1].id
            stats["batches"] += 1
            session.commit()

    logger.info(
        "Status refresh finished: checked=%d changed=%d backfilled=%d across %d batches",
        stats["events_checked"],
        stats["statuses_changed"],
        stats["starts_backfilled"],
        stats["batches"],
    )
    return stats


def vacuum_database() -> None:
    if engine.dialect.name != "sqlite":
        logger.debug("Skipping VACUUM for %s database", engine.dialect.name)
        return
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
