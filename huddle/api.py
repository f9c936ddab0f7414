"""FastAPI application for Huddle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any
import tomllib

from fastapi import (
    Depends,
    FastAPI,
    File,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import crud
from .config import settings
from .database import SessionLocal
from .datetimes import (
    event_instant,
    format_event_datetime,
    is_upcoming,
    normalize,
    normalize_event_datetime,
    split_event_datetime,
    to_naive_utc,
)
from .ics import generate_ics
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
    Meta,
    Profile,
    Section,
    SectionInvitation,
    SectionMember,
    SectionProfileField,
    WaitlistEntry,
)
from .realtime import hub, message_created, message_deleted, message_updated
from .rules import REJECT, WAITLIST, decide_rsvp_action, normalize_rsvp_status, seats_left
from .scheduler import start_scheduler, stop_scheduler
from .status import apply_status_transition, can_rsvp, display_status, status_display
from .storage import init_db
from .uploads import (
    PROFILE_PICTURES,
    PROJECT_IMAGES,
    UploadError,
    UploadTooLarge,
    read_limited,
    save_upload,
)
from .utils import (
    duration_between,
    humanize_time,
    render_markdown,
    slugify,
    split_interests,
    utcnow,
)
from .waitlist import (
    add_to_waitlist,
    confirm_from_waitlist,
    leave_waitlist,
    promote_next,
    waitlist_rank,
    waitlist_ranking,
    waitlist_size,
)

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")


class EventFullError(Exception):
    """Raised when a going RSVP would exceed capacity and no waitlist exists."""


class RSVPsClosedError(Exception):
    """Raised when the event's status does not accept RSVPs."""


EVENT_FULL_ERROR = {
    "error": "EventFull",
    "message": "This event has reached its maximum capacity.",
}

RSVPS_CLOSED_ERROR = {
    "error": "RSVPsClosed",
    "message": "RSVPs are closed for this event.",
}

AUTH_REDIRECT = "/auth"
MESSAGE_PAGE_LIMIT = 50
CHANNEL_STAFF_ROLES = {"owner", "admin", "moderator"}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("huddle")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Huddle", version=APP_VERSION, lifespan=lifespan)
settings.storage_dir.mkdir(parents=True, exist_ok=True)
app.mount(
    "/storage", StaticFiles(directory=str(settings.storage_dir)), name="storage"
)

EVENTS_PER_PAGE = settings.events_per_page


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    payload: dict[str, Any] = {"detail": exc.detail}
    if exc.status_code == 401:
        payload["redirect"] = AUTH_REDIRECT
    return JSONResponse(
        payload, status_code=exc.status_code, headers=getattr(exc, "headers", None)
    )


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


# -------- Auth --------


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_current_profile(request: Request, db: Session = Depends(get_db)) -> Profile:
    profile = crud.get_profile_by_token(db, _get_bearer_token(request))
    if profile is None:
        raise HTTPException(status_code=401, detail="Sign in to continue")
    return profile


def get_optional_profile(
    request: Request, db: Session = Depends(get_db)
) -> Profile | None:
    return crud.get_profile_by_token(db, _get_bearer_token(request))


def _fetch_root_token_in_session(db: Session) -> str | None:
    meta = db.get(Meta, settings.root_token_key)
    return meta.value if meta else None


def _require_root_access(request: Request, db: Session) -> None:
    token = _get_bearer_token(request)
    stored = _fetch_root_token_in_session(db)
    if not token or token != stored:
        raise HTTPException(status_code=403, detail="Forbidden")


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


def _parse_cursor(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail="Invalid after; use ISO8601 format"
        ) from exc


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _store_image(bucket: str, *, owner_id: str, file: UploadFile) -> str:
    try:
        return save_upload(
            bucket,
            owner_id=owner_id,
            data=read_limited(file.file, bucket),
            content_type=file.content_type,
        )
    except UploadTooLarge as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except UploadError as exc:
        raise _bad_request(exc) from exc


# -------- Serializers --------


def _serialize_profile(profile: Profile, *, include_private: bool = False):
    payload = {
        "id": profile.id,
        "full_name": profile.full_name,
        "profile_picture_url": profile.profile_picture_url,
        "private": profile.private,
    }
    if profile.private and not include_private:
        return payload
    payload.update(
        {
            "bio": profile.bio,
            "interests": split_interests(profile.interests),
            "created_at": _iso(profile.created_at),
        }
    )
    if include_private:
        payload.update({"email": profile.email, "phone": profile.phone})
    return payload


def _serialize_profile_brief(profile: Profile | None):
    if profile is None:
        return None
    return {
        "id": profile.id,
        "full_name": profile.full_name,
        "profile_picture_url": profile.profile_picture_url,
    }


def _serialize_rsvp(rsvp: EventRSVP):
    return {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "user_id": rsvp.user_id,
        "status": rsvp.status,
        "created_at": _iso(rsvp.created_at),
        "updated_at": _iso(rsvp.updated_at),
        "profile": _serialize_profile_brief(rsvp.profile),
    }


def _serialize_waitlist_entry(rank: int, entry: WaitlistEntry):
    return {
        "rank": rank,
        "position": entry.position,
        "user_id": entry.user_id,
        "created_at": _iso(entry.created_at),
        "profile": _serialize_profile_brief(entry.profile),
    }


def _serialize_cohost(cohost: EventCohost):
    return {
        "user_id": cohost.user_id,
        "role": cohost.role,
        "added_by": cohost.added_by,
        "profile": _serialize_profile_brief(cohost.profile),
    }


def _serialize_event_invitation(invitation: EventInvitation):
    return {
        "id": invitation.id,
        "event_id": invitation.event_id,
        "user_id": invitation.user_id,
        "invited_by": invitation.invited_by,
        "status": invitation.status,
        "message": invitation.message,
        "created_at": _iso(invitation.created_at),
        "responded_at": _iso(invitation.responded_at),
    }


def _serialize_event(
    event: Event,
    *,
    viewer: Profile | None = None,
    db: Session | None = None,
    include_location: bool = True,
):
    display = status_display(event.status)
    start = event_instant(event)
    starts_at = normalize(event)
    local_date, local_time = split_event_datetime(starts_at)
    now = utcnow()
    going = event.going_count
    payload = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "description_html": render_markdown(event.description),
        "date": event.date,
        "time": event.time,
        "starts_at": starts_at,
        "starts_at_display": format_event_datetime(starts_at),
        "local_date": local_date,
        "local_time": local_time,
        "end_time": _iso(event.end_time),
        "is_upcoming": is_upcoming(start, now),
        "starts_in": humanize_time(start, now=now),
        "duration": duration_between(start, event.end_time),
        "location": event.location if include_location else None,
        "is_virtual": event.is_virtual,
        "virtual_link": event.virtual_link if include_location else None,
        "image_url": event.image_url,
        "tags": list(event.tags or []),
        "published": event.published,
        "is_private": event.is_private,
        "guest_list_visibility": event.guest_list_visibility,
        "group_name": event.group_name,
        "section": (
            {"id": event.section.id, "name": event.section.name}
            if event.section
            else None
        ),
        "max_capacity": event.max_capacity,
        "waitlist_enabled": event.waitlist_enabled,
        "auto_confirm_waitlist": event.auto_confirm_waitlist,
        "rsvp_deadline": _iso(event.rsvp_deadline),
        "status": display_status(event.status),
        "status_display": {
            "label": display.label,
            "color": display.color,
            "emoji": display.emoji,
        },
        "can_rsvp": can_rsvp(event),
        "counts": {
            "going": going,
            "maybe": event.maybe_count,
            "waitlist": len(event.waitlist_entries),
            "seats_left": seats_left(event, going),
        },
        "created_by": event.created_by,
        "created_at": _iso(event.created_at),
        "updated_at": _iso(event.updated_at),
    }
    if viewer is not None and db is not None:
        rsvp = crud.get_rsvp(db, event, viewer.id)
        payload["viewer"] = {
            "is_host": viewer.id in event.host_ids,
            "rsvp_status": rsvp.status if rsvp else None,
            "waitlist_position": waitlist_rank(db, event, viewer.id),
        }
    return payload


def _serialize_section(
    section: Section, *, membership: SectionMember | None = None
):
    payload = {
        "id": section.id,
        "name": section.name,
        "description": section.description,
        "image_url": section.image_url,
        "is_public": section.is_public,
        "requires_approval": section.requires_approval,
        "creator_id": section.creator_id,
        "member_count": section.approved_member_count,
        "created_at": _iso(section.created_at),
    }
    payload["membership"] = _serialize_member(membership) if membership else None
    return payload


def _serialize_member(member: SectionMember):
    return {
        "user_id": member.user_id,
        "section_id": member.section_id,
        "status": member.status,
        "is_admin": member.is_admin,
        "joined_at": _iso(member.joined_at),
        "approved_at": _iso(member.approved_at),
        "profile": _serialize_profile_brief(member.profile),
    }


def _serialize_section_invitation(invitation: SectionInvitation):
    return {
        "id": invitation.id,
        "section_id": invitation.section_id,
        "section_name": invitation.section.name if invitation.section else None,
        "user_id": invitation.user_id,
        "invited_by": invitation.invited_by,
        "status": invitation.status,
        "message": invitation.message,
        "invited_at": _iso(invitation.invited_at),
        "responded_at": _iso(invitation.responded_at),
    }


def _serialize_field(field: SectionProfileField):
    return {
        "id": field.id,
        "field_name": field.field_name,
        "field_label": field.field_label,
        "field_type": field.field_type,
        "field_options": list(field.field_options or []),
        "help_text": field.help_text,
        "is_required": field.is_required,
        "display_order": field.display_order,
    }


def _serialize_category(category: ChannelCategory):
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
        "icon": category.icon,
        "display_order": category.display_order,
    }


def _serialize_channel(channel: Channel, *, member: ChannelMember | None = None):
    return {
        "id": channel.id,
        "name": channel.name,
        "description": channel.description,
        "type": channel.type,
        "category_id": channel.category_id,
        "section_id": channel.section_id,
        "event_id": channel.event_id,
        "is_archived": channel.is_archived,
        "is_read_only": channel.is_read_only,
        "created_by": channel.created_by,
        "created_at": _iso(channel.created_at),
        "last_message_at": _iso(channel.last_message_at),
        "member_count": len(channel.members),
        "role": member.role if member else None,
    }


def _serialize_message(message: ChannelMessage):
    return {
        "id": message.id,
        "channel_id": message.channel_id,
        "user_id": message.user_id,
        "content": None if message.deleted_at else message.content,
        "message_type": message.message_type,
        "created_at": _iso(message.created_at),
        "edited_at": _iso(message.edited_at),
        "deleted_at": _iso(message.deleted_at),
        "author": _serialize_profile_brief(message.author),
    }


def _serialize_comment(comment: EventComment):
    return {
        "id": comment.id,
        "event_id": comment.event_id,
        "user_id": comment.user_id,
        "content": comment.content,
        "created_at": _iso(comment.created_at),
        "updated_at": _iso(comment.updated_at),
        "author": _serialize_profile_brief(comment.author),
    }


def _build_pagination(*, page: int, per_page: int, total_events: int):
    total_pages = (
        max(1, (total_events + per_page - 1) // per_page) if total_events else 1
    )
    page = max(1, min(page, total_pages)) if total_events else 1
    return {
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "total_events": total_events,
        "has_prev": page > 1,
        "has_next": page < total_pages and total_events > 0,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages and total_events > 0 else None,
    }


# -------- Event helpers --------


def _apply_due_status(event: Event) -> None:
    previous = apply_status_transition(event, utcnow())
    if previous is not None:
        logger.info(
            "Event %s (%s) moved from %s to %s on load",
            event.id,
            event.title,
            previous,
            event.status,
        )


def _sync_statuses(events: Iterable[Event]) -> None:
    for event in events:
        _apply_due_status(event)


def _is_host(event: Event, profile: Profile | None) -> bool:
    return profile is not None and profile.id in event.host_ids


def _is_approved_member(db: Session, section: Section | None, user_id: str) -> bool:
    if section is None:
        return False
    membership = crud.get_membership(db, section, user_id)
    return membership is not None and membership.status == "approved"


def _can_view_event(db: Session, event: Event, profile: Profile | None) -> bool:
    if _is_host(event, profile):
        return True
    if not event.published:
        return False
    if not event.is_private:
        return True
    if profile is None:
        return False
    if crud.get_rsvp(db, event, profile.id) is not None:
        return True
    if crud.get_event_invitation(db, event, profile.id) is not None:
        return True
    if any(entry.user_id == profile.id for entry in event.waitlist_entries):
        return True
    if _is_approved_member(db, event.section, profile.id):
        return True
    return any(
        _is_approved_member(db, invite.section, profile.id)
        for invite in event.section_invites
    )


def _can_view_location(db: Session, event: Event, profile: Profile | None) -> bool:
    if not event.is_private or _is_host(event, profile):
        return True
    return profile is not None and crud.get_rsvp(db, event, profile.id) is not None


def _ensure_event(db: Session, event_id: str, *, lock: bool = False) -> Event:
    event = crud.lock_event(db, event_id) if lock else db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    _apply_due_status(event)
    return event


def _ensure_visible_event(
    db: Session, event_id: str, profile: Profile | None, *, lock: bool = False
) -> Event:
    event = _ensure_event(db, event_id, lock=lock)
    if not _can_view_event(db, event, profile):
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _has_active_rsvp(db: Session, event: Event, profile: Profile | None) -> bool:
    if profile is None:
        return False
    own = crud.get_rsvp(db, event, profile.id)
    return own is not None and own.status in {"going", "maybe"}


def _require_comment_access(db: Session, event: Event, profile: Profile) -> None:
    if not (_is_host(event, profile) or _has_active_rsvp(db, event, profile)):
        raise HTTPException(
            status_code=403, detail="RSVP to join the conversation for this event"
        )


def _ensure_comment(db: Session, event: Event, comment_id: str) -> EventComment:
    comment = db.get(EventComment, comment_id)
    if comment is None or comment.event_id != event.id:
        raise HTTPException(status_code=404, detail="Comment not found")
    return comment


def _require_host(event: Event, profile: Profile) -> None:
    if not _is_host(event, profile):
        raise HTTPException(status_code=403, detail="Only event hosts can do that")


def _require_creator(event: Event, profile: Profile) -> None:
    if event.created_by != profile.id:
        raise HTTPException(
            status_code=403, detail="Only the event creator can do that"
        )


def _ensure_profile(db: Session, user_id: str) -> Profile:
    profile = db.get(Profile, user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


def _promote_waitlist(db: Session, event: Event) -> list[EventRSVP]:
    if not can_rsvp(event):
        return []
    promoted = promote_next(db, event)
    for rsvp in promoted:
        logger.info(
            "Promoted user %s from the waitlist of event %s", rsvp.user_id, event.id
        )
    return promoted


def _submit_rsvp(db: Session, *, event_id: str, profile: Profile, desired: str):
    """Run one RSVP change through the capacity rules inside the request transaction."""
    try:
        desired_status = normalize_rsvp_status(desired)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    event = _ensure_visible_event(db, event_id, profile, lock=True)
    prior = crud.get_rsvp(db, event, profile.id)
    prior_status = prior.status if prior else None
    decision = decide_rsvp_action(
        event, desired_status, prior_status, crud.count_going(db, event)
    )
    if decision.action == REJECT:
        if decision.reason == "closed":
            raise RSVPsClosedError
        raise EventFullError
    if decision.action == WAITLIST:
        position, total = add_to_waitlist(db, event, profile.id)
        return {
            "result": "waitlisted",
            "waitlist": {
                "position": position,
                "rank": waitlist_rank(db, event, profile.id),
                "total": total,
            },
            "event": _serialize_event(event, viewer=profile, db=db),
        }
    rsvp = crud.upsert_rsvp(
        db, event=event, user_id=profile.id, status=desired_status
    )
    if desired_status == "going":
        leave_waitlist(db, event, profile.id)
    promoted: list[EventRSVP] = []
    if prior_status == "going" and desired_status != "going":
        promoted = _promote_waitlist(db, event)
    return {
        "result": "applied",
        "rsvp": _serialize_rsvp(rsvp),
        "promoted": [r.user_id for r in promoted],
        "event": _serialize_event(event, viewer=profile, db=db),
    }


def _event_filters(
    *,
    viewer: Profile | None,
    when: str,
    section_id: str | None,
    group_name: str | None,
    tag: str | None,
    query: str | None,
    now: datetime,
):
    visible = Event.published.is_(True) & Event.is_private.is_(False)
    filters: list = [or_(visible, Event.created_by == viewer.id) if viewer else visible]
    if when == "upcoming":
        filters.append(Event.starts_at > now)
    elif when == "past":
        filters.append(Event.starts_at <= now)
    if section_id:
        filters.append(Event.section_id == section_id)
    if group_name:
        filters.append(func.lower(Event.group_name) == group_name.strip().lower())
    if tag:
        filters.append(
            func.lower(cast(Event.tags, String)).like(f'%"{tag.strip().lower()}"%')
        )
    if query:
        pattern = f"%{query.strip()}%"
        filters.append(
            or_(
                Event.title.ilike(pattern),
                Event.description.ilike(pattern),
                Event.location.ilike(pattern),
            )
        )
    return filters


def paginate_events(
    db: Session, *, filters: Iterable | None, order_by, per_page: int, page: int
):
    filters = list(filters or [])
    count_stmt = select(func.count()).select_from(Event)
    for condition in filters:
        count_stmt = count_stmt.where(condition)
    total_events = db.scalar(count_stmt) or 0
    pagination = _build_pagination(
        page=page, per_page=per_page, total_events=total_events
    )
    offset = (pagination["page"] - 1) * per_page if total_events else 0

    stmt = select(Event).order_by(order_by, Event.id)
    for condition in filters:
        stmt = stmt.where(condition)
    events = db.scalars(stmt.offset(offset).limit(per_page)).all()
    _sync_statuses(events)
    return events, pagination


# -------- Payloads --------


class ProfileCreatePayload(BaseModel):
    full_name: str
    email: str | None = None
    bio: str | None = None
    interests: str | None = None
    phone: str | None = None
    private: bool = False


class ProfileUpdatePayload(BaseModel):
    full_name: str | None = None
    email: str | None = None
    bio: str | None = None
    interests: str | None = None
    phone: str | None = None
    private: bool | None = None


class EventCreatePayload(BaseModel):
    title: str
    date: str = Field(..., description="ISO timestamp or YYYY-MM-DD calendar date")
    time: str | None = Field(None, description="Wall time for calendar dates")
    timezone: str | None = Field(
        None, description="IANA zone used for naive dates; defaults to settings"
    )
    description: str | None = None
    end_time: datetime | None = None
    location: str | None = None
    is_virtual: bool = False
    virtual_link: str | None = None
    image_url: str | None = None
    tags: list[str] = Field(default_factory=list)
    published: bool = True
    is_private: bool = False
    guest_list_visibility: str = "rsvp_only"
    group_name: str | None = None
    section_id: str | None = None
    max_capacity: int | None = Field(None, ge=1)
    waitlist_enabled: bool = False
    auto_confirm_waitlist: bool = True
    rsvp_deadline: datetime | None = None


class EventUpdatePayload(BaseModel):
    title: str | None = None
    date: str | None = None
    time: str | None = None
    timezone: str | None = None
    description: str | None = None
    end_time: datetime | None = None
    location: str | None = None
    is_virtual: bool | None = None
    virtual_link: str | None = None
    image_url: str | None = None
    tags: list[str] | None = None
    published: bool | None = None
    is_private: bool | None = None
    guest_list_visibility: str | None = None
    group_name: str | None = None
    section_id: str | None = None
    max_capacity: int | None = Field(None, ge=1)
    waitlist_enabled: bool | None = None
    auto_confirm_waitlist: bool | None = None
    rsvp_deadline: datetime | None = None


class StatusActionPayload(BaseModel):
    action: str


class RSVPPayload(BaseModel):
    status: str


class CohostPayload(BaseModel):
    user_id: str
    role: str = "cohost"


class InvitationPayload(BaseModel):
    user_id: str
    message: str | None = None


class InvitationResponsePayload(BaseModel):
    accept: bool


class SectionInvitePayload(BaseModel):
    section_id: str


class SectionCreatePayload(BaseModel):
    name: str
    description: str | None = None
    image_url: str | None = None
    is_public: bool = True
    requires_approval: bool = False


class SectionUpdatePayload(BaseModel):
    name: str | None = None
    description: str | None = None
    image_url: str | None = None
    is_public: bool | None = None
    requires_approval: bool | None = None


class ProfileFieldPayload(BaseModel):
    field_label: str
    field_type: str
    field_name: str | None = None
    field_options: list[str] = Field(default_factory=list)
    help_text: str | None = None
    is_required: bool = False
    display_order: int | None = None


class SectionProfilePayload(BaseModel):
    values: dict[str, Any]


class VisibilityPayload(BaseModel):
    is_visible: bool


class CategoryPayload(BaseModel):
    name: str
    description: str | None = None
    icon: str | None = None
    display_order: int = 0


class ChannelCreatePayload(BaseModel):
    name: str
    description: str | None = None
    type: str = "public"
    section_id: str | None = None
    event_id: str | None = None
    category_id: str | None = None
    is_read_only: bool = False


class MessagePayload(BaseModel):
    content: str
    message_type: str = "text"


class MessageEditPayload(BaseModel):
    content: str


class CommentPayload(BaseModel):
    content: str


# -------- Profiles --------


@app.post("/api/v1/profiles", status_code=201)
def api_create_profile(payload: ProfileCreatePayload, db: Session = Depends(get_db)):
    try:
        profile = crud.create_profile(db, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "profile": _serialize_profile(profile, include_private=True),
        "access_token": profile.access_token,
    }


@app.get("/api/v1/profiles/me")
def api_get_my_profile(profile: Profile = Depends(get_current_profile)):
    return {"profile": _serialize_profile(profile, include_private=True)}


@app.patch("/api/v1/profiles/me")
def api_update_my_profile(
    payload: ProfileUpdatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    try:
        crud.update_profile(db, profile, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"profile": _serialize_profile(profile, include_private=True)}


@app.post("/api/v1/profiles/me/token")
def api_rotate_my_token(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    token = crud.rotate_profile_token(db, profile)
    logger.info("Access token rotated for profile %s", profile.id)
    return {"access_token": token}


@app.post("/api/v1/profiles/me/picture")
def api_upload_profile_picture(
    file: UploadFile = File(...),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    url = _store_image(PROFILE_PICTURES, owner_id=profile.id, file=file)
    crud.update_profile(db, profile, profile_picture_url=url)
    return {"url": url, "profile": _serialize_profile(profile, include_private=True)}


@app.get("/api/v1/profiles")
def api_search_profiles(
    q: str = Query(""),
    limit: int = Query(10, ge=1, le=50),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    results = crud.search_profiles(db, q, exclude_id=profile.id, limit=limit)
    return {"profiles": [_serialize_profile_brief(p) for p in results]}


@app.get("/api/v1/profiles/{profile_id}")
def api_get_profile(
    profile_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    profile = _ensure_profile(db, profile_id)
    is_self = viewer is not None and viewer.id == profile.id
    return {"profile": _serialize_profile(profile, include_private=is_self)}


# -------- Events --------


def _event_start_fields(date: str, time: str | None, timezone: str | None):
    if timezone:
        return normalize_event_datetime(date, time, tz=timezone), None
    return date, time


def _resolve_section(db: Session, section_id: str | None, profile: Profile):
    if not section_id:
        return None
    section = db.get(Section, section_id)
    if not section:
        raise HTTPException(status_code=404, detail="Section not found")
    if not _is_approved_member(db, section, profile.id):
        raise HTTPException(
            status_code=403, detail="Only section members can post events there"
        )
    return section


@app.get("/api/v1/events")
def api_list_events(
    when: str = Query("upcoming", pattern="^(upcoming|past|all)$"),
    section_id: str | None = Query(None),
    group_name: str | None = Query(None),
    tag: str | None = Query(None),
    q: str | None = Query(None),
    page: int = Query(1, ge=1),
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    now = utcnow()
    filters = _event_filters(
        viewer=viewer,
        when=when,
        section_id=section_id,
        group_name=group_name,
        tag=tag,
        query=q,
        now=now,
    )
    order_by = Event.starts_at.desc() if when == "past" else Event.starts_at.asc()
    events, pagination = paginate_events(
        db, filters=filters, order_by=order_by, per_page=EVENTS_PER_PAGE, page=page
    )
    return {
        "events": [
            _serialize_event(
                event, include_location=_can_view_location(db, event, viewer)
            )
            for event in events
        ],
        "pagination": pagination,
        "filters": {
            "when": when,
            "section_id": section_id,
            "group_name": group_name,
            "tag": tag,
            "q": q,
        },
    }


@app.post("/api/v1/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    data = payload.model_dump()
    section = _resolve_section(db, data.pop("section_id"), profile)
    timezone = data.pop("timezone")
    try:
        data["date"], data["time"] = _event_start_fields(
            data["date"], data["time"], timezone
        )
        event = crud.create_event(db, creator=profile, section=section, **data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    _apply_due_status(event)
    logger.info("Event %s (%s) created by %s", event.id, event.title, profile.id)
    return {"event": _serialize_event(event, viewer=profile, db=db)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(
    event_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, viewer)
    return {
        "event": _serialize_event(
            event,
            viewer=viewer,
            db=db,
            include_location=_can_view_location(db, event, viewer),
        )
    }


@app.patch("/api/v1/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, lock=True)
    _require_host(event, profile)
    data = payload.model_dump(exclude_unset=True)
    if "section_id" in data:
        data["section"] = _resolve_section(db, data.pop("section_id"), profile)
    timezone = data.pop("timezone", None)
    previous_capacity = event.max_capacity
    try:
        if "date" in data or "time" in data:
            data["date"], data["time"] = _event_start_fields(
                data.get("date", event.date), data.get("time", event.time), timezone
            )
        crud.update_event(db, event, **data)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    _apply_due_status(event)
    if event.max_capacity is None or (
        previous_capacity is not None and event.max_capacity > previous_capacity
    ):
        _promote_waitlist(db, event)
    return {"event": _serialize_event(event, viewer=profile, db=db)}


@app.delete("/api/v1/events/{event_id}", status_code=204)
def api_delete_event(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_creator(event, profile)
    crud.delete_event(db, event)
    logger.info("Event %s deleted by %s", event_id, profile.id)
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/status")
def api_change_event_status(
    event_id: str,
    payload: StatusActionPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, lock=True)
    _require_host(event, profile)
    previous = display_status(event.status)
    try:
        crud.set_event_status(db, event, payload.action.strip().lower())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    # Publishing can make a future event open for RSVPs straight away.
    _apply_due_status(event)
    logger.info(
        "Event %s status %s -> %s by %s", event.id, previous, event.status, profile.id
    )
    return {"event": _serialize_event(event, viewer=profile, db=db)}


@app.post("/api/v1/events/{event_id}/image")
def api_upload_event_image(
    event_id: str,
    file: UploadFile = File(...),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_host(event, profile)
    url = _store_image(PROJECT_IMAGES, owner_id=profile.id, file=file)
    crud.update_event(db, event, image_url=url)
    return {"url": url, "event": _serialize_event(event, viewer=profile, db=db)}


@app.get("/api/v1/events/{event_id}/event.ics")
def api_get_event_ics(
    event_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    """Serve an event as a downloadable ICS file."""

    event = _ensure_visible_event(db, event_id, viewer)
    ics_text = generate_ics(
        event, include_location=_can_view_location(db, event, viewer)
    )
    filename = f"{slugify(event.title) or 'event'}-{event.id[:8]}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(content=ics_text, media_type="text/calendar", headers=headers)


@app.get("/api/v1/events/{event_id}/rsvps")
def api_list_event_rsvps(
    event_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, viewer)
    visibility = event.guest_list_visibility
    allowed = visibility == "public" or _is_host(event, viewer)
    if not allowed and visibility == "rsvp_only":
        allowed = _has_active_rsvp(db, event, viewer)
    if not allowed:
        raise HTTPException(
            status_code=403, detail="The guest list for this event is not visible"
        )
    rsvps = sorted(event.rsvps, key=lambda r: r.created_at)
    counts = {status: 0 for status in ("going", "maybe", "not_going")}
    for rsvp in rsvps:
        counts[rsvp.status] = counts.get(rsvp.status, 0) + 1
    return {"rsvps": [_serialize_rsvp(r) for r in rsvps], "counts": counts}


@app.get("/api/v1/events/{event_id}/comments")
def api_list_comments(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile)
    _require_comment_access(db, event, profile)
    comments = crud.list_comments(db, event)
    return {"comments": [_serialize_comment(c) for c in comments]}


@app.post("/api/v1/events/{event_id}/comments", status_code=201)
def api_post_comment(
    event_id: str,
    payload: CommentPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile)
    _require_comment_access(db, event, profile)
    try:
        comment = crud.create_comment(
            db, event=event, author=profile, content=payload.content
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"comment": _serialize_comment(comment)}


@app.patch("/api/v1/events/{event_id}/comments/{comment_id}")
def api_update_comment(
    event_id: str,
    comment_id: str,
    payload: CommentPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile)
    comment = _ensure_comment(db, event, comment_id)
    if comment.user_id != profile.id:
        raise HTTPException(status_code=403, detail="Only the author can edit it")
    try:
        crud.update_comment(db, comment, content=payload.content)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"comment": _serialize_comment(comment)}


@app.delete("/api/v1/events/{event_id}/comments/{comment_id}", status_code=204)
def api_delete_comment(
    event_id: str,
    comment_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile)
    comment = _ensure_comment(db, event, comment_id)
    if comment.user_id != profile.id and not _is_host(event, profile):
        raise HTTPException(
            status_code=403, detail="Only the author or a host can delete it"
        )
    crud.delete_comment(db, comment)
    return Response(status_code=204)


@app.put("/api/v1/events/{event_id}/rsvp")
def api_set_rsvp(
    event_id: str,
    payload: RSVPPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    try:
        return _submit_rsvp(db, event_id=event_id, profile=profile, desired=payload.status)
    except RSVPsClosedError:
        return JSONResponse(RSVPS_CLOSED_ERROR, status_code=403)
    except EventFullError:
        return JSONResponse(EVENT_FULL_ERROR, status_code=409)


@app.delete("/api/v1/events/{event_id}/rsvp", status_code=204)
def api_delete_rsvp(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, lock=True)
    removed = crud.remove_rsvp(db, event, profile.id)
    if removed is None:
        raise HTTPException(status_code=404, detail="RSVP not found")
    if removed.status == "going":
        _promote_waitlist(db, event)
    return Response(status_code=204)


@app.get("/api/v1/events/{event_id}/waitlist")
def api_get_waitlist(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile)
    payload: dict[str, Any] = {
        "total": waitlist_size(db, event),
        "my_position": waitlist_rank(db, event, profile.id),
    }
    if _is_host(event, profile):
        payload["entries"] = [
            _serialize_waitlist_entry(rank, entry)
            for rank, entry in waitlist_ranking(db, event)
        ]
    return payload


@app.post("/api/v1/events/{event_id}/waitlist", status_code=201)
def api_join_waitlist(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, profile, lock=True)
    if not can_rsvp(event):
        return JSONResponse(RSVPS_CLOSED_ERROR, status_code=403)
    if not event.waitlist_enabled:
        raise HTTPException(status_code=400, detail="This event has no waitlist")
    rsvp = crud.get_rsvp(db, event, profile.id)
    if rsvp is not None and rsvp.status == "going":
        raise HTTPException(status_code=400, detail="You already have a seat")
    remaining = seats_left(event, crud.count_going(db, event))
    if remaining:
        raise HTTPException(
            status_code=400, detail="Seats are still available; RSVP instead"
        )
    position, total = add_to_waitlist(db, event, profile.id)
    return {
        "position": position,
        "rank": waitlist_rank(db, event, profile.id),
        "total": total,
    }


@app.delete("/api/v1/events/{event_id}/waitlist", status_code=204)
def api_leave_waitlist(
    event_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, lock=True)
    if not leave_waitlist(db, event, profile.id):
        raise HTTPException(status_code=404, detail="You are not on the waitlist")
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/waitlist/{user_id}/confirm")
def api_confirm_waitlist(
    event_id: str,
    user_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, lock=True)
    _require_host(event, profile)
    rsvp = confirm_from_waitlist(db, event, user_id)
    if rsvp is None:
        raise HTTPException(status_code=404, detail="User is not on the waitlist")
    return {"rsvp": _serialize_rsvp(rsvp), "event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}/cohosts")
def api_list_cohosts(
    event_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_visible_event(db, event_id, viewer)
    return {
        "creator": _serialize_profile_brief(event.creator),
        "cohosts": [_serialize_cohost(c) for c in event.cohosts],
    }


@app.post("/api/v1/events/{event_id}/cohosts", status_code=201)
def api_add_cohost(
    event_id: str,
    payload: CohostPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_creator(event, profile)
    user = _ensure_profile(db, payload.user_id)
    try:
        cohost = crud.add_cohost(
            db, event=event, user=user, added_by=profile, role=payload.role
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"cohost": _serialize_cohost(cohost)}


@app.delete("/api/v1/events/{event_id}/cohosts/{user_id}", status_code=204)
def api_remove_cohost(
    event_id: str,
    user_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    if profile.id != user_id:
        _require_creator(event, profile)
    if not crud.remove_cohost(db, event, user_id):
        raise HTTPException(status_code=404, detail="Co-host not found")
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/invitations", status_code=201)
def api_invite_to_event(
    event_id: str,
    payload: InvitationPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_host(event, profile)
    user = _ensure_profile(db, payload.user_id)
    invitation = crud.invite_to_event(
        db, event=event, user=user, invited_by=profile, message=payload.message
    )
    return {"invitation": _serialize_event_invitation(invitation)}


@app.post("/api/v1/events/{event_id}/invitations/respond")
def api_respond_event_invitation(
    event_id: str,
    payload: InvitationResponsePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    invitation = crud.get_event_invitation(db, event, profile.id)
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation not found")
    try:
        crud.respond_to_invitation(invitation, accept=payload.accept)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    db.flush()
    return {"invitation": _serialize_event_invitation(invitation)}


@app.post("/api/v1/events/{event_id}/section-invites", status_code=201)
def api_invite_section_to_event(
    event_id: str,
    payload: SectionInvitePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id)
    _require_host(event, profile)
    section = _ensure_section(db, payload.section_id)
    if not _is_approved_member(db, section, profile.id):
        raise HTTPException(
            status_code=403, detail="Only section members can invite that section"
        )
    invite = crud.invite_section_to_event(
        db, event=event, section=section, invited_by=profile
    )
    return {
        "section_invite": {
            "event_id": invite.event_id,
            "section_id": invite.section_id,
            "invited_by": invite.invited_by,
            "invited_at": _iso(invite.invited_at),
        }
    }


# -------- Sections --------


def _ensure_section(db: Session, section_id: str) -> Section:
    section = db.get(Section, section_id)
    if not section:
        raise HTTPException(status_code=404, detail="Section not found")
    return section


def _can_view_section(db: Session, section: Section, profile: Profile | None) -> bool:
    if section.is_public:
        return True
    if profile is None:
        return False
    if crud.get_membership(db, section, profile.id) is not None:
        return True
    return crud.get_section_invitation(db, section, profile.id) is not None


def _ensure_visible_section(
    db: Session, section_id: str, profile: Profile | None
) -> Section:
    section = _ensure_section(db, section_id)
    if not _can_view_section(db, section, profile):
        raise HTTPException(status_code=404, detail="Section not found")
    return section


def _require_section_admin(db: Session, section: Section, profile: Profile) -> None:
    if not crud.is_section_admin(db, section, profile.id):
        raise HTTPException(
            status_code=403, detail="Only section admins can do that"
        )


def _require_section_member(db: Session, section: Section, profile: Profile) -> None:
    if not _is_approved_member(db, section, profile.id):
        raise HTTPException(
            status_code=403, detail="Only section members can do that"
        )


@app.get("/api/v1/sections")
def api_list_sections(
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    stmt = select(Section).order_by(Section.name.asc())
    if viewer is not None:
        member_ids = select(SectionMember.section_id).where(
            SectionMember.user_id == viewer.id
        )
        stmt = stmt.where(or_(Section.is_public.is_(True), Section.id.in_(member_ids)))
    else:
        stmt = stmt.where(Section.is_public.is_(True))
    sections = db.scalars(stmt).all()
    return {
        "sections": [
            _serialize_section(
                section,
                membership=crud.get_membership(db, section, viewer.id)
                if viewer
                else None,
            )
            for section in sections
        ]
    }


@app.post("/api/v1/sections", status_code=201)
def api_create_section(
    payload: SectionCreatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    try:
        section = crud.create_section(db, creator=profile, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "section": _serialize_section(
            section, membership=crud.get_membership(db, section, profile.id)
        )
    }


@app.get("/api/v1/sections/{section_id}")
def api_get_section(
    section_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_visible_section(db, section_id, viewer)
    membership = crud.get_membership(db, section, viewer.id) if viewer else None
    return {"section": _serialize_section(section, membership=membership)}


@app.patch("/api/v1/sections/{section_id}")
def api_update_section(
    section_id: str,
    payload: SectionUpdatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    try:
        crud.update_section(db, section, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "section": _serialize_section(
            section, membership=crud.get_membership(db, section, profile.id)
        )
    }


@app.delete("/api/v1/sections/{section_id}", status_code=204)
def api_delete_section(
    section_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    if section.creator_id != profile.id:
        raise HTTPException(
            status_code=403, detail="Only the section creator can delete it"
        )
    crud.delete_section(db, section)
    return Response(status_code=204)


@app.post("/api/v1/sections/{section_id}/image")
def api_upload_section_image(
    section_id: str,
    file: UploadFile = File(...),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    url = _store_image(PROJECT_IMAGES, owner_id=profile.id, file=file)
    crud.update_section(db, section, image_url=url)
    return {"url": url, "section": _serialize_section(section)}


@app.post("/api/v1/sections/{section_id}/join")
def api_join_section(
    section_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_visible_section(db, section_id, profile)
    try:
        membership = crud.join_section(db, section=section, user=profile)
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"membership": _serialize_member(membership)}


@app.delete("/api/v1/sections/{section_id}/membership", status_code=204)
def api_leave_section(
    section_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    try:
        left = crud.leave_section(db, section, profile.id)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    if not left:
        raise HTTPException(status_code=404, detail="You are not a member")
    return Response(status_code=204)


@app.get("/api/v1/sections/{section_id}/members")
def api_list_section_members(
    section_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_visible_section(db, section_id, viewer)
    is_admin = viewer is not None and crud.is_section_admin(db, section, viewer.id)
    if not section.is_public and not (
        viewer and _is_approved_member(db, section, viewer.id)
    ):
        raise HTTPException(status_code=403, detail="Only members can see members")
    hidden = set() if is_admin else crud.hidden_member_ids(db, section)
    approved = [
        m
        for m in section.members
        if m.status == "approved"
        and (m.user_id not in hidden or (viewer and m.user_id == viewer.id))
    ]
    payload: dict[str, Any] = {"members": [_serialize_member(m) for m in approved]}
    if is_admin:
        payload["pending"] = [
            _serialize_member(m) for m in section.members if m.status == "pending"
        ]
    return payload


def _moderate_member(
    db: Session, section_id: str, user_id: str, profile: Profile, status: str
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    membership = crud.get_membership(db, section, user_id)
    if membership is None:
        raise HTTPException(status_code=404, detail="Membership not found")
    crud.set_membership_status(db, membership, status=status, approver=profile)
    logger.info(
        "Section %s membership for %s set to %s by %s",
        section.id,
        user_id,
        status,
        profile.id,
    )
    return {"membership": _serialize_member(membership)}


@app.post("/api/v1/sections/{section_id}/members/{user_id}/approve")
def api_approve_member(
    section_id: str,
    user_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    return _moderate_member(db, section_id, user_id, profile, "approved")


@app.post("/api/v1/sections/{section_id}/members/{user_id}/reject")
def api_reject_member(
    section_id: str,
    user_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    return _moderate_member(db, section_id, user_id, profile, "rejected")


@app.post("/api/v1/sections/{section_id}/invitations", status_code=201)
def api_invite_to_section(
    section_id: str,
    payload: InvitationPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    user = _ensure_profile(db, payload.user_id)
    try:
        invitation = crud.invite_to_section(
            db, section=section, user=user, invited_by=profile, message=payload.message
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"invitation": _serialize_section_invitation(invitation)}


@app.post("/api/v1/sections/{section_id}/invitations/respond")
def api_respond_section_invitation(
    section_id: str,
    payload: InvitationResponsePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    invitation = crud.get_section_invitation(db, section, profile.id)
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation not found")
    membership = None
    try:
        if payload.accept:
            membership = crud.accept_section_invitation(db, invitation, profile)
        else:
            crud.respond_to_invitation(invitation, accept=False)
            db.flush()
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {
        "invitation": _serialize_section_invitation(invitation),
        "membership": _serialize_member(membership) if membership else None,
    }


@app.get("/api/v1/invitations")
def api_my_invitations(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    event_invitations = db.scalars(
        select(EventInvitation)
        .where(
            EventInvitation.user_id == profile.id,
            EventInvitation.status == "pending",
        )
        .order_by(EventInvitation.created_at.desc())
    ).all()
    return {
        "sections": [
            _serialize_section_invitation(i)
            for i in crud.pending_section_invitations(db, profile.id)
        ],
        "events": [_serialize_event_invitation(i) for i in event_invitations],
    }


@app.get("/api/v1/sections/{section_id}/fields")
def api_list_profile_fields(
    section_id: str,
    viewer: Profile | None = Depends(get_optional_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_visible_section(db, section_id, viewer)
    return {
        "fields": [_serialize_field(f) for f in section.profile_fields if f.is_active]
    }


@app.post("/api/v1/sections/{section_id}/fields", status_code=201)
def api_add_profile_field(
    section_id: str,
    payload: ProfileFieldPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    try:
        field = crud.add_profile_field(db, section=section, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"field": _serialize_field(field)}


@app.delete("/api/v1/sections/{section_id}/fields/{field_id}", status_code=204)
def api_remove_profile_field(
    section_id: str,
    field_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_admin(db, section, profile)
    field = db.get(SectionProfileField, field_id)
    if field is None or field.section_id != section.id or not field.is_active:
        raise HTTPException(status_code=404, detail="Field not found")
    crud.deactivate_profile_field(db, field)
    return Response(status_code=204)


@app.get("/api/v1/sections/{section_id}/profile")
def api_get_section_profile(
    section_id: str,
    user_id: str | None = Query(None),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_member(db, section, profile)
    target_id = user_id or profile.id
    if target_id != profile.id and not _is_approved_member(db, section, target_id):
        raise HTTPException(status_code=404, detail="Member not found")
    return {
        "user_id": target_id,
        "values": crud.get_section_profile_data(db, section=section, user_id=target_id),
    }


@app.put("/api/v1/sections/{section_id}/profile")
def api_set_section_profile(
    section_id: str,
    payload: SectionProfilePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_member(db, section, profile)
    try:
        values = crud.set_section_profile_data(
            db, section=section, user=profile, values=payload.values
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"user_id": profile.id, "values": values}


@app.put("/api/v1/sections/{section_id}/visibility")
def api_set_membership_visibility(
    section_id: str,
    payload: VisibilityPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = _ensure_section(db, section_id)
    _require_section_member(db, section, profile)
    row = crud.set_membership_visibility(
        db, section=section, user_id=profile.id, is_visible=payload.is_visible
    )
    return {"section_id": section.id, "is_visible": row.is_visible}


# -------- Channels --------


def _ensure_channel(db: Session, channel_id: str) -> Channel:
    channel = db.get(Channel, channel_id)
    if not channel:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel


def _can_read_channel(db: Session, channel: Channel, profile: Profile) -> bool:
    if crud.get_channel_member(db, channel, profile.id) is not None:
        return True
    if channel.type == "public":
        return True
    if channel.type == "section" and channel.section is not None:
        return channel.section.is_public or _is_approved_member(
            db, channel.section, profile.id
        )
    if channel.type == "event" and channel.event is not None:
        return _can_view_event(db, channel.event, profile)
    return False


def _ensure_readable_channel(db: Session, channel_id: str, profile: Profile) -> Channel:
    channel = _ensure_channel(db, channel_id)
    if not _can_read_channel(db, channel, profile):
        raise HTTPException(status_code=403, detail="You cannot view this channel")
    return channel


def _is_channel_staff(db: Session, channel: Channel, profile: Profile) -> bool:
    member = crud.get_channel_member(db, channel, profile.id)
    return member is not None and member.role in CHANNEL_STAFF_ROLES


@app.get("/api/v1/channel-categories")
def api_list_categories(db: Session = Depends(get_db)):
    categories = db.scalars(
        select(ChannelCategory).order_by(
            ChannelCategory.display_order.asc(), ChannelCategory.name.asc()
        )
    ).all()
    return {"categories": [_serialize_category(c) for c in categories]}


@app.post("/api/v1/channel-categories", status_code=201)
def api_create_category(
    payload: CategoryPayload, request: Request, db: Session = Depends(get_db)
):
    _require_root_access(request, db)
    try:
        category = crud.create_category(db, **payload.model_dump())
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return {"category": _serialize_category(category)}


@app.get("/api/v1/channels")
def api_my_channels(
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    stmt = (
        select(Channel, ChannelMember)
        .join(ChannelMember, ChannelMember.channel_id == Channel.id)
        .where(ChannelMember.user_id == profile.id, Channel.is_archived.is_(False))
        .order_by(func.coalesce(Channel.last_message_at, Channel.created_at).desc())
    )
    rows = db.execute(stmt).all()
    return {
        "channels": [_serialize_channel(channel, member=member) for channel, member in rows]
    }


@app.post("/api/v1/channels", status_code=201)
def api_create_channel(
    payload: ChannelCreatePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    section = event = category = None
    if payload.section_id:
        section = _ensure_section(db, payload.section_id)
        _require_section_member(db, section, profile)
    if payload.event_id:
        event = _ensure_event(db, payload.event_id)
        _require_host(event, profile)
    if payload.category_id:
        category = db.get(ChannelCategory, payload.category_id)
        if category is None:
            raise HTTPException(status_code=404, detail="Category not found")
    try:
        channel = crud.create_channel(
            db,
            creator=profile,
            name=payload.name,
            channel_type=payload.type,
            description=payload.description,
            section=section,
            event=event,
            category=category,
            is_read_only=payload.is_read_only,
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    member = crud.get_channel_member(db, channel, profile.id)
    return {"channel": _serialize_channel(channel, member=member)}


@app.post("/api/v1/channels/direct/{user_id}")
def api_direct_channel(
    user_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    other = _ensure_profile(db, user_id)
    try:
        channel = crud.find_or_create_direct_channel(db, user=profile, other=other)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    member = crud.get_channel_member(db, channel, profile.id)
    return {"channel": _serialize_channel(channel, member=member)}


@app.get("/api/v1/channels/{channel_id}")
def api_get_channel(
    channel_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_readable_channel(db, channel_id, profile)
    member = crud.get_channel_member(db, channel, profile.id)
    return {"channel": _serialize_channel(channel, member=member)}


@app.post("/api/v1/channels/{channel_id}/join")
def api_join_channel(
    channel_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_channel(db, channel_id)
    if channel.type == "private" or not _can_read_channel(db, channel, profile):
        raise HTTPException(status_code=403, detail="You cannot join this channel")
    member = crud.join_channel(db, channel=channel, user=profile)
    return {"channel": _serialize_channel(channel, member=member)}


@app.delete("/api/v1/channels/{channel_id}/membership", status_code=204)
def api_leave_channel(
    channel_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_channel(db, channel_id)
    if not crud.leave_channel(db, channel, profile.id):
        raise HTTPException(status_code=404, detail="You are not a member")
    return Response(status_code=204)


@app.get("/api/v1/channels/{channel_id}/messages")
def api_list_messages(
    channel_id: str,
    after: str | None = Query(None),
    q: str | None = Query(None, max_length=200),
    limit: int = Query(MESSAGE_PAGE_LIMIT, ge=1, le=200),
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_readable_channel(db, channel_id, profile)
    messages = crud.list_messages(
        db, channel, after=_parse_cursor(after), query=q, limit=limit
    )
    return {"messages": [_serialize_message(m) for m in messages]}


@app.post("/api/v1/channels/{channel_id}/messages", status_code=201)
def api_post_message(
    channel_id: str,
    payload: MessagePayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_readable_channel(db, channel_id, profile)
    if channel.is_archived:
        raise HTTPException(status_code=403, detail="This channel is archived")
    if channel.is_read_only and not _is_channel_staff(db, channel, profile):
        raise HTTPException(status_code=403, detail="This channel is read-only")
    if crud.get_channel_member(db, channel, profile.id) is None:
        crud.join_channel(db, channel=channel, user=profile)
    try:
        message = crud.create_message(
            db,
            channel=channel,
            author=profile,
            content=payload.content,
            message_type=payload.message_type,
        )
    except ValueError as exc:
        raise _bad_request(exc) from exc
    serialized = _serialize_message(message)
    # Subscribers may fetch the row as soon as they are notified.
    db.commit()
    hub.publish(channel.id, message_created(serialized))
    return {"message": serialized}


@app.patch("/api/v1/channels/{channel_id}/messages/{message_id}")
def api_edit_message(
    channel_id: str,
    message_id: str,
    payload: MessageEditPayload,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_readable_channel(db, channel_id, profile)
    message = db.get(ChannelMessage, message_id)
    if message is None or message.channel_id != channel.id or message.deleted_at:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.user_id != profile.id:
        raise HTTPException(status_code=403, detail="Only the author can edit it")
    try:
        crud.edit_message(db, message, content=payload.content)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    serialized = _serialize_message(message)
    db.commit()
    hub.publish(channel.id, message_updated(serialized))
    return {"message": serialized}


@app.delete("/api/v1/channels/{channel_id}/messages/{message_id}")
def api_delete_message(
    channel_id: str,
    message_id: str,
    profile: Profile = Depends(get_current_profile),
    db: Session = Depends(get_db),
):
    channel = _ensure_channel(db, channel_id)
    message = db.get(ChannelMessage, message_id)
    if message is None or message.channel_id != channel.id:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.user_id != profile.id and not _is_channel_staff(db, channel, profile):
        raise HTTPException(
            status_code=403, detail="Only the author or a moderator can delete it"
        )
    crud.soft_delete_message(db, message, actor=profile)
    serialized = _serialize_message(message)
    db.commit()
    hub.publish(channel.id, message_deleted(serialized))
    return {"message": serialized}


def _authorize_stream(channel_id: str, token: str | None) -> tuple[int | None, str | None]:
    """Return ``(close_code, user_id)``; a close code means the socket is refused."""
    db = SessionLocal()
    try:
        profile = crud.get_profile_by_token(db, token)
        if profile is None:
            return 4401, None
        channel = db.get(Channel, channel_id)
        if channel is None:
            return 4404, None
        if not _can_read_channel(db, channel, profile):
            return 4403, None
        return None, profile.id
    finally:
        db.close()


@app.websocket("/api/v1/channels/{channel_id}/stream")
async def channel_stream(
    websocket: WebSocket, channel_id: str, token: str | None = Query(None)
):
    close_code, user_id = await run_in_threadpool(_authorize_stream, channel_id, token)
    if close_code is not None:
        await websocket.close(code=close_code)
        return
    # Register before accepting so nothing published after the handshake is missed.
    subscription = hub.subscribe(channel_id, user_id)

    async def forward():
        while True:
            payload = await subscription.queue.get()
            await websocket.send_json(payload)

    async def drain():
        while True:
            await websocket.receive_text()

    tasks: set[asyncio.Task] = set()
    try:
        await websocket.accept()
        tasks = {asyncio.create_task(forward()), asyncio.create_task(drain())}
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "Channel stream %s for user %s ended: %s", channel_id, user_id, exc
                )
    finally:
        for task in tasks:
            task.cancel()
        hub.unsubscribe(subscription)
