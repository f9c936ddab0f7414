"""CRUD helpers for profiles, events, sections, and channels."""

from __future__ import annotations

import re
import secrets
from datetime import date as date_cls, datetime
from typing import Any, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .datetimes import normalize_event_datetime, parse_event_datetime, to_naive_utc
from .models import (
    Channel,
    ChannelCategory,
    ChannelMember,
    ChannelMessage,
    Event,
    EventCohost,
    EventComment,
    EventInvitation,
    EventRSVP,
    EventSectionInvite,
    Profile,
    Section,
    SectionInvitation,
    SectionMember,
    SectionMembershipVisibility,
    SectionProfileData,
    SectionProfileField,
)
from .rules import normalize_rsvp_status
from .status import EVENT_STATUSES, transition_for_action
from .utils import utcnow

GUEST_LIST_VISIBILITIES = {"public", "rsvp_only", "hidden"}
MEMBERSHIP_STATUSES = {"pending", "approved", "rejected"}
INVITATION_STATUSES = {"pending", "accepted", "declined"}
COHOST_ROLES = {"cohost", "organizer", "moderator"}
CHANNEL_TYPES = {"public", "private", "event", "section"}
CHANNEL_ROLES = {"owner", "admin", "moderator", "member"}
MESSAGE_TYPES = {"text", "image", "system"}
PROFILE_FIELD_TYPES = {
    "text",
    "textarea",
    "select",
    "multiselect",
    "checkbox",
    "number",
    "date",
    "url",
    "email",
    "phone",
}
MAX_MESSAGE_LENGTH = 4000
MAX_COMMENT_LENGTH = 2000

_phone_pattern = re.compile(r"^[\+]?[1-9][\d\s\-\(\)\.]{7,15}$")
_email_pattern = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_field_name_invalid = re.compile(r"[^a-z0-9_]+")


def _now() -> datetime:
    return utcnow()


def _clean(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def _require_text(value: str | None, label: str) -> str:
    cleaned = _clean(value)
    if not cleaned:
        raise ValueError(f"{label} is required")
    return cleaned


def _validate_phone(phone: str | None) -> str | None:
    cleaned = _clean(phone)
    if cleaned is None:
        return None
    if not _phone_pattern.match(cleaned):
        raise ValueError("Invalid phone number")
    return cleaned


def _validate_email(email: str | None) -> str | None:
    cleaned = _clean(email)
    if cleaned is None:
        return None
    if not _email_pattern.match(cleaned):
        raise ValueError("Invalid email address")
    return cleaned.lower()


# -------- Profiles --------


def create_profile(
    session: Session,
    *,
    full_name: str,
    email: str | None = None,
    bio: str | None = None,
    interests: str | None = None,
    phone: str | None = None,
    private: bool = False,
) -> Profile:
    """Create a profile along with the bearer token that authenticates it."""
    normalized_email = _validate_email(email)
    if normalized_email and get_profile_by_email(session, normalized_email):
        raise ValueError("A profile with that email already exists")
    profile = Profile(
        access_token=secrets.token_urlsafe(32),
        full_name=_require_text(full_name, "Full name"),
        email=normalized_email,
        bio=_clean(bio),
        interests=_clean(interests),
        phone=_validate_phone(phone),
        private=bool(private),
    )
    session.add(profile)
    session.flush()
    return profile


def get_profile_by_email(session: Session, email: str) -> Profile | None:
    stmt = select(Profile).where(Profile.email == email.strip().lower())
    return session.scalars(stmt).first()


def get_profile_by_token(session: Session, token: str | None) -> Profile | None:
    if not token:
        return None
    stmt = select(Profile).where(Profile.access_token == token)
    return session.scalars(stmt).first()


def update_profile(session: Session, profile: Profile, **changes: Any) -> Profile:
    """Apply partial profile changes; unknown keys are ignored."""
    if "full_name" in changes:
        profile.full_name = _require_text(changes["full_name"], "Full name")
    if "email" in changes:
        normalized_email = _validate_email(changes["email"])
        if normalized_email and normalized_email != profile.email:
            existing = get_profile_by_email(session, normalized_email)
            if existing and existing.id != profile.id:
                raise ValueError("A profile with that email already exists")
        profile.email = normalized_email
    for key in ("bio", "interests"):
        if key in changes:
            setattr(profile, key, _clean(changes[key]))
    if "phone" in changes:
        profile.phone = _validate_phone(changes["phone"])
    if "private" in changes and changes["private"] is not None:
        profile.private = bool(changes["private"])
    if "profile_picture_url" in changes:
        profile.profile_picture_url = _clean(changes["profile_picture_url"])
    profile.updated_at = _now()
    session.add(profile)
    session.flush()
    return profile


def rotate_profile_token(session: Session, profile: Profile) -> str:
    profile.access_token = secrets.token_urlsafe(32)
    session.add(profile)
    session.flush()
    return profile.access_token


def search_profiles(
    session: Session, query: str, *, exclude_id: str | None = None, limit: int = 10
) -> Sequence[Profile]:
    term = (query or "").strip()
    if len(term) < 2:
        return []
    stmt = (
        select(Profile)
        .where(
            or_(Profile.full_name.ilike(f"%{term}%"), Profile.email.ilike(f"%{term}%"))
        )
        .order_by(Profile.full_name.asc())
        .limit(limit)
    )
    if exclude_id:
        stmt = stmt.where(Profile.id != exclude_id)
    return session.scalars(stmt).all()


# -------- Events --------


def _event_start(date: str, time: str | None) -> tuple[str, str | None, datetime]:
    """Validate date fields; return what to store plus the normalized start."""
    cleaned_date = _require_text(date, "Event date")
    cleaned_time = _clean(time)
    if "T" in cleaned_date:
        cleaned_date = normalize_event_datetime(cleaned_date)
        cleaned_time = None
    starts_at = parse_event_datetime(cleaned_date, cleaned_time).replace(tzinfo=None)
    return cleaned_date, cleaned_time, starts_at


def _validate_capacity(max_capacity: int | None) -> int | None:
    if max_capacity is None:
        return None
    value = int(max_capacity)
    if value < 1:
        raise ValueError("Maximum capacity must be at least 1")
    return value


def _validate_guest_list_visibility(value: str | None) -> str:
    normalized = (value or "rsvp_only").strip().lower()
    if normalized not in GUEST_LIST_VISIBILITIES:
        raise ValueError("Invalid guest list visibility")
    return normalized


def _clean_tags(tags: Sequence[str] | None) -> list[str]:
    cleaned: list[str] = []
    for tag in tags or []:
        value = (tag or "").strip().lower()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


def create_event(
    session: Session,
    *,
    creator: Profile,
    title: str,
    date: str,
    time: str | None = None,
    description: str | None = None,
    end_time: datetime | None = None,
    location: str | None = None,
    is_virtual: bool = False,
    virtual_link: str | None = None,
    image_url: str | None = None,
    tags: Sequence[str] | None = None,
    published: bool = True,
    is_private: bool = False,
    guest_list_visibility: str | None = None,
    group_name: str | None = None,
    section: Section | None = None,
    max_capacity: int | None = None,
    waitlist_enabled: bool = False,
    auto_confirm_waitlist: bool = True,
    rsvp_deadline: datetime | None = None,
    status: str | None = None,
) -> Event:
    """Create and persist a new event."""
    stored_date, stored_time, starts_at = _event_start(date, time)
    normalized_end = to_naive_utc(end_time)
    if normalized_end is not None and normalized_end <= starts_at:
        raise ValueError("End time must be after the start time")
    if status is None:
        status = "scheduled" if published else "draft"
    elif status not in EVENT_STATUSES:
        raise ValueError("Invalid event status")
    capacity = _validate_capacity(max_capacity)
    now = _now()
    event = Event(
        created_by=creator.id,
        title=_require_text(title, "Title"),
        description=_clean(description),
        date=stored_date,
        time=stored_time,
        starts_at=starts_at,
        end_time=normalized_end,
        location=_clean(location),
        is_virtual=bool(is_virtual),
        virtual_link=_clean(virtual_link),
        image_url=_clean(image_url),
        tags=_clean_tags(tags),
        published=bool(published),
        is_private=bool(is_private),
        guest_list_visibility=_validate_guest_list_visibility(guest_list_visibility),
        group_name=_clean(group_name),
        section=section,
        max_capacity=capacity,
        waitlist_enabled=bool(waitlist_enabled) and capacity is not None,
        auto_confirm_waitlist=bool(auto_confirm_waitlist),
        rsvp_deadline=to_naive_utc(rsvp_deadline),
        status=status,
        status_updated_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(event)
    session.flush()
    return event


def update_event(session: Session, event: Event, **changes: Any) -> Event:
    """Apply partial event changes. Keys mirror :func:`create_event` arguments."""
    if "date" in changes or "time" in changes:
        stored_date, stored_time, starts_at = _event_start(
            changes.get("date", event.date), changes.get("time", event.time)
        )
        event.date = stored_date
        event.time = stored_time
        event.starts_at = starts_at
    if "title" in changes:
        event.title = _require_text(changes["title"], "Title")
    for key in ("description", "location", "virtual_link", "image_url", "group_name"):
        if key in changes:
            setattr(event, key, _clean(changes[key]))
    for key in ("is_virtual", "published", "is_private", "auto_confirm_waitlist"):
        if key in changes and changes[key] is not None:
            setattr(event, key, bool(changes[key]))
    if "tags" in changes:
        event.tags = _clean_tags(changes["tags"])
    if "guest_list_visibility" in changes:
        event.guest_list_visibility = _validate_guest_list_visibility(
            changes["guest_list_visibility"]
        )
    if "section" in changes:
        event.section = changes["section"]
    if "end_time" in changes:
        event.end_time = to_naive_utc(changes["end_time"])
    if "rsvp_deadline" in changes:
        event.rsvp_deadline = to_naive_utc(changes["rsvp_deadline"])
    if "max_capacity" in changes:
        event.max_capacity = _validate_capacity(changes["max_capacity"])
    if "waitlist_enabled" in changes and changes["waitlist_enabled"] is not None:
        event.waitlist_enabled = bool(changes["waitlist_enabled"])
    if event.max_capacity is None:
        event.waitlist_enabled = False
    start = event.starts_at or parse_event_datetime(event.date, event.time).replace(
        tzinfo=None
    )
    if event.end_time is not None and event.end_time <= start:
        raise ValueError("End time must be after the start time")
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def set_event_status(session: Session, event: Event, action: str) -> Event:
    """Apply a host status action such as ``cancel`` or ``publish``."""
    target = transition_for_action(event.status, action)
    event.status = target
    if action == "publish":
        event.published = True
    event.status_updated_at = _now()
    session.add(event)
    session.flush()
    return event


def delete_event(session: Session, event: Event) -> None:
    for channel in session.scalars(
        select(Channel).where(Channel.event_id == event.id)
    ).all():
        session.delete(channel)
    session.delete(event)
    session.flush()


def lock_event(session: Session, event_id: str) -> Event | None:
    """Load an event holding its row lock for the rest of the transaction."""
    stmt = select(Event).where(Event.id == event_id).with_for_update()
    return session.scalars(stmt).first()


def count_going(session: Session, event: Event) -> int:
    stmt = (
        select(func.count())
        .select_from(EventRSVP)
        .where(EventRSVP.event_id == event.id, EventRSVP.status == "going")
    )
    return session.scalar(stmt) or 0


def get_rsvp(session: Session, event: Event, user_id: str) -> EventRSVP | None:
    stmt = select(EventRSVP).where(
        EventRSVP.event_id == event.id, EventRSVP.user_id == user_id
    )
    return session.scalars(stmt).first()


def upsert_rsvp(
    session: Session, *, event: Event, user_id: str, status: str
) -> EventRSVP:
    """Create or overwrite the single RSVP a user holds for an event."""
    normalized = normalize_rsvp_status(status)
    rsvp = get_rsvp(session, event, user_id)
    now = _now()
    if rsvp is None:
        rsvp = EventRSVP(
            event=event,
            user_id=user_id,
            status=normalized,
            created_at=now,
            updated_at=now,
        )
    else:
        rsvp.status = normalized
        rsvp.updated_at = now
    session.add(rsvp)
    session.flush()
    return rsvp


def remove_rsvp(session: Session, event: Event, user_id: str) -> EventRSVP | None:
    """Delete the user's RSVP and return the removed row, if any."""
    rsvp = get_rsvp(session, event, user_id)
    if rsvp is None:
        return None
    if rsvp in event.rsvps:
        event.rsvps.remove(rsvp)
    else:
        session.delete(rsvp)
    session.flush()
    return rsvp


def add_cohost(
    session: Session,
    *,
    event: Event,
    user: Profile,
    added_by: Profile,
    role: str = "cohost",
) -> EventCohost:
    normalized_role = (role or "cohost").strip().lower()
    if normalized_role not in COHOST_ROLES:
        raise ValueError("Invalid co-host role")
    if user.id == event.created_by:
        raise ValueError("The event creator is already a host")
    for cohost in event.cohosts:
        if cohost.user_id == user.id:
            cohost.role = normalized_role
            session.flush()
            return cohost
    cohost = EventCohost(
        event=event, user_id=user.id, added_by=added_by.id, role=normalized_role
    )
    session.add(cohost)
    session.flush()
    return cohost


def remove_cohost(session: Session, event: Event, user_id: str) -> bool:
    for cohost in list(event.cohosts):
        if cohost.user_id == user_id:
            event.cohosts.remove(cohost)
            session.flush()
            return True
    return False


def invite_to_event(
    session: Session,
    *,
    event: Event,
    user: Profile,
    invited_by: Profile,
    message: str | None = None,
) -> EventInvitation:
    """Invite a user; re-inviting resets a declined invitation to pending."""
    for invitation in event.invitations:
        if invitation.user_id == user.id:
            invitation.status = "pending"
            invitation.message = _clean(message) or invitation.message
            invitation.responded_at = None
            session.flush()
            return invitation
    invitation = EventInvitation(
        event=event,
        user_id=user.id,
        invited_by=invited_by.id,
        message=_clean(message),
        status="pending",
    )
    session.add(invitation)
    session.flush()
    return invitation


def get_event_invitation(
    session: Session, event: Event, user_id: str
) -> EventInvitation | None:
    stmt = select(EventInvitation).where(
        EventInvitation.event_id == event.id, EventInvitation.user_id == user_id
    )
    return session.scalars(stmt).first()


def respond_to_invitation(
    invitation: EventInvitation | SectionInvitation, *, accept: bool
) -> None:
    if invitation.status != "pending":
        raise ValueError("Invitation was already answered")
    invitation.status = "accepted" if accept else "declined"
    invitation.responded_at = _now()


def invite_section_to_event(
    session: Session, *, event: Event, section: Section, invited_by: Profile
) -> EventSectionInvite:
    for invite in event.section_invites:
        if invite.section_id == section.id:
            return invite
    invite = EventSectionInvite(
        event=event, section_id=section.id, invited_by=invited_by.id
    )
    session.add(invite)
    session.flush()
    return invite


def _comment_text(content: str | None) -> str:
    cleaned = _require_text(content, "Comment")
    if len(cleaned) > MAX_COMMENT_LENGTH:
        raise ValueError("Comment is too long")
    return cleaned


def create_comment(
    session: Session, *, event: Event, author: Profile, content: str
) -> EventComment:
    now = _now()
    comment = EventComment(
        event=event,
        user_id=author.id,
        author=author,
        content=_comment_text(content),
        created_at=now,
        updated_at=now,
    )
    session.add(comment)
    session.flush()
    return comment


def list_comments(session: Session, event: Event) -> Sequence[EventComment]:
    stmt = (
        select(EventComment)
        .where(EventComment.event_id == event.id)
        .order_by(EventComment.created_at.asc(), EventComment.id.asc())
    )
    return session.scalars(stmt).all()


def update_comment(
    session: Session, comment: EventComment, *, content: str
) -> EventComment:
    comment.content = _comment_text(content)
    comment.updated_at = _now()
    session.add(comment)
    session.flush()
    return comment


def delete_comment(session: Session, comment: EventComment) -> None:
    session.delete(comment)
    session.flush()


# -------- Sections --------


def create_section(
    session: Session,
    *,
    creator: Profile,
    name: str,
    description: str | None = None,
    image_url: str | None = None,
    is_public: bool = True,
    requires_approval: bool = False,
) -> Section:
    """Create a section and make its creator an approved admin member."""
    now = _now()
    section = Section(
        creator_id=creator.id,
        name=_require_text(name, "Section name"),
        description=_clean(description),
        image_url=_clean(image_url),
        is_public=bool(is_public),
        requires_approval=bool(requires_approval),
        created_at=now,
        updated_at=now,
    )
    session.add(section)
    session.flush()
    session.add(
        SectionMember(
            section=section,
            user_id=creator.id,
            is_admin=True,
            status="approved",
            joined_at=now,
            approved_at=now,
            approved_by=creator.id,
        )
    )
    session.flush()
    return section


def update_section(session: Session, section: Section, **changes: Any) -> Section:
    if "name" in changes:
        section.name = _require_text(changes["name"], "Section name")
    for key in ("description", "image_url"):
        if key in changes:
            setattr(section, key, _clean(changes[key]))
    for key in ("is_public", "requires_approval"):
        if key in changes and changes[key] is not None:
            setattr(section, key, bool(changes[key]))
    section.updated_at = _now()
    session.add(section)
    session.flush()
    return section


def delete_section(session: Session, section: Section) -> None:
    """Delete a section; its events stay behind without a section."""
    for model in (SectionProfileData, SectionMembershipVisibility):
        for row in session.scalars(
            select(model).where(model.section_id == section.id)
        ).all():
            session.delete(row)
    for event in list(section.events):
        event.section = None
    session.delete(section)
    session.flush()


def get_membership(
    session: Session, section: Section, user_id: str
) -> SectionMember | None:
    stmt = select(SectionMember).where(
        SectionMember.section_id == section.id, SectionMember.user_id == user_id
    )
    return session.scalars(stmt).first()


def get_section_invitation(
    session: Session, section: Section, user_id: str
) -> SectionInvitation | None:
    stmt = select(SectionInvitation).where(
        SectionInvitation.section_id == section.id,
        SectionInvitation.user_id == user_id,
    )
    return session.scalars(stmt).first()


def is_section_admin(session: Session, section: Section, user_id: str) -> bool:
    if section.creator_id == user_id:
        return True
    membership = get_membership(session, section, user_id)
    return bool(
        membership and membership.is_admin and membership.status == "approved"
    )


def join_section(session: Session, *, section: Section, user: Profile) -> SectionMember:
    """Request membership.

    Public sections approve immediately unless they require approval. Private
    sections need a pending invitation, which the join accepts.
    """
    membership = get_membership(session, section, user.id)
    if membership is not None:
        if membership.status == "rejected":
            raise ValueError("Your membership request was declined")
        return membership
    invitation = get_section_invitation(session, section, user.id)
    has_invitation = invitation is not None and invitation.status == "pending"
    if not section.is_public and not has_invitation:
        raise PermissionError("This section is invite-only")
    now = _now()
    approved = has_invitation or not section.requires_approval
    membership = SectionMember(
        section=section,
        user_id=user.id,
        status="approved" if approved else "pending",
        joined_at=now,
        approved_at=now if approved else None,
        approved_by=invitation.invited_by if has_invitation else None,
    )
    if has_invitation:
        respond_to_invitation(invitation, accept=True)
    session.add(membership)
    session.flush()
    return membership


def leave_section(session: Session, section: Section, user_id: str) -> bool:
    if section.creator_id == user_id:
        raise ValueError("The section creator cannot leave the section")
    membership = get_membership(session, section, user_id)
    if membership is None:
        return False
    if membership in section.members:
        section.members.remove(membership)
    else:
        session.delete(membership)
    session.flush()
    return True


def set_membership_status(
    session: Session, membership: SectionMember, *, status: str, approver: Profile
) -> SectionMember:
    normalized = (status or "").strip().lower()
    if normalized not in MEMBERSHIP_STATUSES:
        raise ValueError("Invalid membership status")
    membership.status = normalized
    if normalized == "approved":
        membership.approved_at = _now()
        membership.approved_by = approver.id
    session.add(membership)
    session.flush()
    return membership


def invite_to_section(
    session: Session,
    *,
    section: Section,
    user: Profile,
    invited_by: Profile,
    message: str | None = None,
) -> SectionInvitation:
    membership = get_membership(session, section, user.id)
    if membership is not None and membership.status == "approved":
        raise ValueError("User is already a member of this section")
    invitation = get_section_invitation(session, section, user.id)
    if invitation is None:
        invitation = SectionInvitation(
            section=section, user_id=user.id, invited_by=invited_by.id
        )
        session.add(invitation)
    invitation.status = "pending"
    invitation.invited_by = invited_by.id
    invitation.message = _clean(message)
    invitation.invited_at = _now()
    invitation.responded_at = None
    session.flush()
    return invitation


def accept_section_invitation(
    session: Session, invitation: SectionInvitation, user: Profile
) -> SectionMember:
    """Accept an invitation, creating or approving the membership."""
    respond_to_invitation(invitation, accept=True)
    section = invitation.section
    membership = get_membership(session, section, user.id)
    now = _now()
    if membership is None:
        membership = SectionMember(section=section, user_id=user.id, joined_at=now)
        session.add(membership)
    membership.status = "approved"
    membership.approved_at = now
    membership.approved_by = invitation.invited_by
    session.flush()
    return membership


def pending_section_invitations(
    session: Session, user_id: str
) -> Sequence[SectionInvitation]:
    stmt = (
        select(SectionInvitation)
        .where(
            SectionInvitation.user_id == user_id,
            SectionInvitation.status == "pending",
        )
        .order_by(SectionInvitation.invited_at.desc())
    )
    return session.scalars(stmt).all()


def add_profile_field(
    session: Session,
    *,
    section: Section,
    field_label: str,
    field_type: str,
    field_name: str | None = None,
    field_options: Sequence[str] | None = None,
    help_text: str | None = None,
    is_required: bool = False,
    display_order: int | None = None,
) -> SectionProfileField:
    label = _require_text(field_label, "Field label")
    normalized_type = (field_type or "").strip().lower()
    if normalized_type not in PROFILE_FIELD_TYPES:
        raise ValueError("Invalid field type")
    name = _field_name_invalid.sub("_", (field_name or label).strip().lower()).strip("_")
    if not name:
        raise ValueError("Invalid field name")
    options = [str(option).strip() for option in field_options or [] if str(option).strip()]
    if normalized_type in {"select", "multiselect"} and not options:
        raise ValueError("Select fields need at least one option")
    for existing in section.profile_fields:
        if existing.field_name == name:
            raise ValueError("A field with that name already exists")
    if display_order is None:
        display_order = len(section.profile_fields)
    field = SectionProfileField(
        section=section,
        field_name=name,
        field_label=label,
        field_type=normalized_type,
        field_options=options,
        help_text=_clean(help_text),
        is_required=bool(is_required),
        display_order=display_order,
        is_active=True,
    )
    session.add(field)
    session.flush()
    return field


def deactivate_profile_field(session: Session, field: SectionProfileField) -> None:
    field.is_active = False
    session.flush()


def _coerce_field_value(field: SectionProfileField, raw: Any) -> str | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    field_type = field.field_type
    if field_type == "checkbox":
        if isinstance(raw, bool):
            return "true" if raw else "false"
        lowered = str(raw).strip().lower()
        if lowered in {"true", "1", "yes", "on"}:
            return "true"
        if lowered in {"false", "0", "no", "off"}:
            return "false"
        raise ValueError(f"{field.field_label} must be yes or no")
    if field_type == "multiselect":
        values = raw if isinstance(raw, (list, tuple)) else str(raw).split(",")
        cleaned = [str(value).strip() for value in values if str(value).strip()]
        invalid = [value for value in cleaned if value not in field.field_options]
        if invalid:
            raise ValueError(f"Invalid choice for {field.field_label}")
        return ",".join(cleaned) or None
    value = str(raw).strip()
    if field_type == "select" and value not in field.field_options:
        raise ValueError(f"Invalid choice for {field.field_label}")
    if field_type == "number":
        try:
            float(value)
        except ValueError as exc:
            raise ValueError(f"{field.field_label} must be a number") from exc
    if field_type == "date":
        try:
            date_cls.fromisoformat(value)
        except ValueError as exc:
            raise ValueError(f"{field.field_label} must be a YYYY-MM-DD date") from exc
    if field_type == "url" and not value.lower().startswith(("http://", "https://")):
        raise ValueError(f"{field.field_label} must be an http(s) URL")
    if field_type == "email":
        value = _validate_email(value) or value
    if field_type == "phone":
        value = _validate_phone(value) or value
    return value


def set_section_profile_data(
    session: Session, *, section: Section, user: Profile, values: dict[str, Any]
) -> dict[str, str | None]:
    """Validate and store a member's answers keyed by field name."""
    active_fields = [f for f in section.profile_fields if f.is_active]
    known = {f.field_name for f in active_fields}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown fields: {', '.join(sorted(unknown))}")
    existing = {
        row.field_id: row
        for row in session.scalars(
            select(SectionProfileData).where(
                SectionProfileData.section_id == section.id,
                SectionProfileData.user_id == user.id,
            )
        ).all()
    }
    stored: dict[str, str | None] = {}
    for field in active_fields:
        row = existing.get(field.id)
        if field.field_name in values:
            value = _coerce_field_value(field, values[field.field_name])
        else:
            value = row.value if row else None
        if field.is_required and value is None:
            raise ValueError(f"{field.field_label} is required")
        if field.field_name in values:
            if row is None:
                row = SectionProfileData(
                    section_id=section.id, user_id=user.id, field_id=field.id
                )
                session.add(row)
            row.value = value
        stored[field.field_name] = value
    session.flush()
    return stored


def get_section_profile_data(
    session: Session, *, section: Section, user_id: str
) -> dict[str, str | None]:
    rows = session.scalars(
        select(SectionProfileData).where(
            SectionProfileData.section_id == section.id,
            SectionProfileData.user_id == user_id,
        )
    ).all()
    by_field = {row.field_id: row.value for row in rows}
    return {
        f.field_name: by_field.get(f.id) for f in section.profile_fields if f.is_active
    }


def set_membership_visibility(
    session: Session, *, section: Section, user_id: str, is_visible: bool
) -> SectionMembershipVisibility:
    stmt = select(SectionMembershipVisibility).where(
        SectionMembershipVisibility.section_id == section.id,
        SectionMembershipVisibility.user_id == user_id,
    )
    row = session.scalars(stmt).first()
    if row is None:
        row = SectionMembershipVisibility(section_id=section.id, user_id=user_id)
        session.add(row)
    row.is_visible = bool(is_visible)
    session.flush()
    return row


def hidden_member_ids(session: Session, section: Section) -> set[str]:
    stmt = select(SectionMembershipVisibility.user_id).where(
        SectionMembershipVisibility.section_id == section.id,
        SectionMembershipVisibility.is_visible.is_(False),
    )
    return set(session.scalars(stmt).all())


# -------- Channels --------


def create_category(
    session: Session,
    *,
    name: str,
    description: str | None = None,
    icon: str | None = None,
    display_order: int = 0,
) -> ChannelCategory:
    cleaned = _require_text(name, "Category name")
    existing = session.scalars(
        select(ChannelCategory).where(ChannelCategory.name == cleaned)
    ).first()
    if existing:
        raise ValueError("Category already exists")
    category = ChannelCategory(
        name=cleaned,
        description=_clean(description),
        icon=_clean(icon),
        display_order=display_order,
    )
    session.add(category)
    session.flush()
    return category


def create_channel(
    session: Session,
    *,
    creator: Profile,
    name: str,
    channel_type: str = "public",
    description: str | None = None,
    section: Section | None = None,
    event: Event | None = None,
    category: ChannelCategory | None = None,
    is_read_only: bool = False,
) -> Channel:
    """Create a channel with its creator as owner."""
    normalized_type = (channel_type or "public").strip().lower()
    if normalized_type not in CHANNEL_TYPES:
        raise ValueError("Invalid channel type")
    if normalized_type == "section" and section is None:
        raise ValueError("Section channels need a section")
    if normalized_type == "event" and event is None:
        raise ValueError("Event channels need an event")
    channel = Channel(
        name=_require_text(name, "Channel name"),
        description=_clean(description),
        type=normalized_type,
        section=section,
        event=event,
        category=category,
        is_read_only=bool(is_read_only),
        created_by=creator.id,
        created_at=_now(),
    )
    session.add(channel)
    session.flush()
    session.add(ChannelMember(channel=channel, user_id=creator.id, role="owner"))
    session.flush()
    return channel


def get_channel_member(
    session: Session, channel: Channel, user_id: str
) -> ChannelMember | None:
    stmt = select(ChannelMember).where(
        ChannelMember.channel_id == channel.id, ChannelMember.user_id == user_id
    )
    return session.scalars(stmt).first()


def join_channel(
    session: Session, *, channel: Channel, user: Profile, role: str = "member"
) -> ChannelMember:
    if role not in CHANNEL_ROLES:
        raise ValueError("Invalid channel role")
    member = get_channel_member(session, channel, user.id)
    if member is not None:
        return member
    member = ChannelMember(channel=channel, user_id=user.id, role=role)
    session.add(member)
    session.flush()
    return member


def leave_channel(session: Session, channel: Channel, user_id: str) -> bool:
    member = get_channel_member(session, channel, user_id)
    if member is None:
        return False
    if member in channel.members:
        channel.members.remove(member)
    else:
        session.delete(member)
    session.flush()
    return True


def find_direct_channel(
    session: Session, user_id: str, other_id: str
) -> Channel | None:
    """Return the private two-person channel shared by both users, if any."""
    stmt = (
        select(Channel)
        .join(ChannelMember, ChannelMember.channel_id == Channel.id)
        .where(
            Channel.type == "private",
            Channel.is_archived.is_(False),
            ChannelMember.user_id.in_([user_id, other_id]),
        )
        .group_by(Channel.id)
        .having(func.count(ChannelMember.id) == 2)
    )
    for channel in session.scalars(stmt).all():
        if len(channel.members) == 2:
            return channel
    return None


def find_or_create_direct_channel(
    session: Session, *, user: Profile, other: Profile
) -> Channel:
    if user.id == other.id:
        raise ValueError("Cannot open a direct channel with yourself")
    existing = find_direct_channel(session, user.id, other.id)
    if existing is not None:
        return existing
    channel = create_channel(
        session,
        creator=user,
        name=f"DM: {other.full_name}",
        channel_type="private",
    )
    join_channel(session, channel=channel, user=other)
    return channel


def _message_text(content: str | None) -> str:
    cleaned = _require_text(content, "Message content")
    if len(cleaned) > MAX_MESSAGE_LENGTH:
        raise ValueError("Message is too long")
    return cleaned


def create_message(
    session: Session,
    *,
    channel: Channel,
    author: Profile,
    content: str,
    message_type: str = "text",
) -> ChannelMessage:
    """Persist a message and bump the channel's last activity time."""
    cleaned = _message_text(content)
    if message_type not in MESSAGE_TYPES:
        raise ValueError("Invalid message type")
    now = _now()
    message = ChannelMessage(
        channel=channel,
        user_id=author.id,
        author=author,
        content=cleaned,
        message_type=message_type,
        created_at=now,
    )
    channel.last_message_at = now
    session.add(message)
    session.flush()
    return message


def list_messages(
    session: Session,
    channel: Channel,
    *,
    after: datetime | None = None,
    query: str | None = None,
    limit: int = 50,
) -> Sequence[ChannelMessage]:
    """Return visible messages oldest first.

    ``after`` skips already-seen messages; ``query`` keeps only messages whose
    content contains it, case-insensitively.
    """
    stmt = select(ChannelMessage).where(
        ChannelMessage.channel_id == channel.id, ChannelMessage.deleted_at.is_(None)
    )
    term = _clean(query)
    if term:
        stmt = stmt.where(ChannelMessage.content.icontains(term, autoescape=True))
    if after is not None:
        stmt = stmt.where(ChannelMessage.created_at > after)
        stmt = stmt.order_by(ChannelMessage.created_at.asc(), ChannelMessage.id.asc())
        return session.scalars(stmt.limit(limit)).all()
    # Latest page, returned in ascending order.
    stmt = stmt.order_by(ChannelMessage.created_at.desc(), ChannelMessage.id.desc())
    latest = session.scalars(stmt.limit(limit)).all()
    return list(reversed(latest))


def edit_message(
    session: Session, message: ChannelMessage, *, content: str
) -> ChannelMessage:
    if message.deleted_at is not None:
        raise ValueError("Deleted messages cannot be edited")
    if message.message_type == "system":
        raise ValueError("System messages cannot be edited")
    message.content = _message_text(content)
    message.edited_at = _now()
    session.add(message)
    session.flush()
    return message


def soft_delete_message(
    session: Session, message: ChannelMessage, *, actor: Profile
) -> ChannelMessage:
    if message.deleted_at is not None:
        return message
    message.deleted_at = _now()
    message.deleted_by = actor.id
    session.add(message)
    session.flush()
    return message
