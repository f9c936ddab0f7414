"""Development helpers for populating fake profiles, sections, and events."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .crud import (
    count_going,
    create_event,
    create_profile,
    create_section,
    get_rsvp,
    join_section,
    upsert_rsvp,
)
from .database import get_session
from .models import Event, Profile, Section
from .rules import APPLY, WAITLIST, decide_rsvp_action
from .status import apply_status_transition
from .storage import init_db
from .utils import utcnow
from .waitlist import add_to_waitlist

_section_suffixes = [
    "Social Club",
    "Meetup",
    "Crew",
    "Collective",
    "Society",
    "Circle",
    "Makers",
]
_event_types = [
    "Mixer",
    "Hangout",
    "Workshop",
    "Hack Night",
    "Field Trip",
    "Meet & Greet",
    "Dinner",
    "Discussion",
]
_tags = ["social", "tech", "outdoors", "food", "music", "learning", "games"]
_rsvp_statuses = ["going", "going", "going", "maybe", "maybe", "not_going"]


def seed_fake_data(
    *,
    profile_count: int = 12,
    section_count: int = 3,
    max_events_per_section: int = 4,
    max_rsvps_per_event: int = 6,
    private_percentage: int = 10,
) -> dict[str, int]:
    """Populate the database with synthetic profiles, sections, and events."""
    if profile_count < 1:
        raise ValueError("profile_count must be >= 1")
    if section_count < 0:
        raise ValueError("section_count must be >= 0")
    if max_events_per_section < 1:
        raise ValueError("max_events_per_section must be >= 1")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")
    if not 0 <= private_percentage <= 100:
        raise ValueError("private_percentage must be between 0 and 100")

    init_db()
    fake = Faker()
    stats = {"profiles": 0, "sections": 0, "events": 0, "rsvps": 0, "waitlisted": 0}

    with get_session() as session:
        profiles = [_create_profile(session, fake) for _ in range(profile_count)]
        stats["profiles"] = len(profiles)
        for _ in range(section_count):
            creator = random.choice(profiles)
            section = _create_section(session, fake, creator, profiles)
            stats["sections"] += 1
            for _ in range(random.randint(1, max_events_per_section)):
                event = _create_event(
                    session,
                    fake,
                    creator=creator,
                    section=section,
                    private_percentage=private_percentage,
                )
                stats["events"] += 1
                rsvps, waitlisted = _create_rsvps(
                    session, event, profiles, max_rsvps_per_event
                )
                stats["rsvps"] += rsvps
                stats["waitlisted"] += waitlisted

    return stats


def _create_profile(session: Session, fake: Faker) -> Profile:
    return create_profile(
        session,
        full_name=fake.name_nonbinary(),
        email=f"{fake.user_name()}.{fake.random_int(1000, 9999)}@example.com",
        bio=fake.sentence(nb_words=12),
        interests=", ".join(random.sample(_tags, k=3)),
        private=random.random() < 0.15,
    )


def _create_section(
    session: Session, fake: Faker, creator: Profile, profiles: list[Profile]
) -> Section:
    section = create_section(
        session,
        creator=creator,
        name=f"{fake.city()} {random.choice(_section_suffixes)}",
        description=fake.paragraph(nb_sentences=3),
        is_public=random.random() < 0.8,
        requires_approval=random.random() < 0.3,
    )
    if section.is_public:
        for profile in random.sample(profiles, k=len(profiles) // 2):
            if profile.id != creator.id:
                join_section(session, section=section, user=profile)
    return section


def _create_event(
    session: Session,
    fake: Faker,
    *,
    creator: Profile,
    section: Section,
    private_percentage: int,
) -> Event:
    start_time = _random_start_time()
    capacity = random.choice([None, None, 5, 10, 20])
    published = random.random() < 0.9
    is_virtual = random.random() < 0.25
    event = create_event(
        session,
        creator=creator,
        title=f"{fake.city()} {random.choice(_event_types)}",
        date=start_time.strftime("%Y-%m-%dT%H:%M:%SZ"),
        description="\n\n".join(fake.paragraphs(nb=2)),
        end_time=_maybe_end_time(start_time),
        location=None if is_virtual else fake.address().replace("\n", ", "),
        is_virtual=is_virtual,
        virtual_link=fake.url() if is_virtual else None,
        tags=random.sample(_tags, k=2),
        published=published,
        is_private=random.randint(1, 100) <= private_percentage,
        guest_list_visibility=random.choice(["public", "rsvp_only", "hidden"]),
        section=section,
        max_capacity=capacity,
        waitlist_enabled=capacity is not None and random.random() < 0.6,
    )
    apply_status_transition(event, utcnow())
    return event


def _random_start_time() -> datetime:
    day_offset = random.randint(-7, 30)
    minute_offset = random.randint(0, 23 * 60)
    start = utcnow() + timedelta(days=day_offset, minutes=minute_offset)
    return start.replace(second=0, microsecond=0)


def _maybe_end_time(start_time: datetime) -> datetime | None:
    if random.random() < 0.3:
        return None
    return start_time + timedelta(hours=random.randint(1, 6))


def _create_rsvps(
    session: Session, event: Event, profiles: list[Profile], max_rsvps: int
) -> tuple[int, int]:
    """Add RSVPs through the capacity rules; returns (applied, waitlisted)."""
    if max_rsvps <= 0 or not event.published:
        return 0, 0
    applied = waitlisted = 0
    guests = [p for p in profiles if p.id != event.created_by]
    for profile in random.sample(guests, k=min(len(guests), random.randint(0, max_rsvps))):
        desired = random.choice(_rsvp_statuses)
        prior = get_rsvp(session, event, profile.id)
        decision = decide_rsvp_action(
            event, desired, prior.status if prior else None, count_going(session, event)
        )
        if decision.action == APPLY:
            upsert_rsvp(session, event=event, user_id=profile.id, status=desired)
            applied += 1
        elif decision.action == WAITLIST:
            add_to_waitlist(session, event, profile.id)
            waitlisted += 1
    return applied, waitlisted
