"""SQLAlchemy models for Huddle."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    access_token = Column(String(128), nullable=False, unique=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    bio = Column(Text, nullable=True)
    interests = Column(Text, nullable=True)
    phone = Column(String(32), nullable=True)
    profile_picture_url = Column(String(512), nullable=True)
    private = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Section(Base):
    __tablename__ = "sections"

    id = Column(String(36), primary_key=True, default=_uuid)
    creator_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String(512), nullable=True)
    is_public = Column(Boolean, default=True, nullable=False)
    requires_approval = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    creator = relationship("Profile")
    members = relationship(
        "SectionMember", back_populates="section", cascade="all, delete-orphan"
    )
    invitations = relationship(
        "SectionInvitation", back_populates="section", cascade="all, delete-orphan"
    )
    profile_fields = relationship(
        "SectionProfileField",
        back_populates="section",
        cascade="all, delete-orphan",
        order_by="SectionProfileField.display_order",
    )
    events = relationship("Event", back_populates="section")
    channels = relationship(
        "Channel", back_populates="section", cascade="all, delete-orphan"
    )

    @property
    def approved_member_count(self) -> int:
        return sum(1 for m in self.members if m.status == "approved")


class SectionMember(Base):
    __tablename__ = "section_members"
    __table_args__ = (UniqueConstraint("section_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    is_admin = Column(Boolean, default=False, nullable=False)
    status = Column(String(16), default="pending", nullable=False)
    joined_at = Column(DateTime, default=_now, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    approved_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)

    section = relationship("Section", back_populates="members")
    profile = relationship("Profile", foreign_keys=[user_id])


class SectionInvitation(Base):
    __tablename__ = "section_invitations"
    __table_args__ = (UniqueConstraint("section_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    invited_by = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(16), default="pending", nullable=False)
    message = Column(Text, nullable=True)
    invited_at = Column(DateTime, default=_now, nullable=False)
    responded_at = Column(DateTime, nullable=True)

    section = relationship("Section", back_populates="invitations")


class SectionProfileField(Base):
    __tablename__ = "section_profile_fields"
    __table_args__ = (UniqueConstraint("section_id", "field_name"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(64), nullable=False)
    field_label = Column(String(255), nullable=False)
    field_type = Column(String(16), nullable=False)
    field_options = Column(JSON, default=list, nullable=False)
    help_text = Column(Text, nullable=True)
    is_required = Column(Boolean, default=False, nullable=False)
    display_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    section = relationship("Section", back_populates="profile_fields")


class SectionProfileData(Base):
    __tablename__ = "section_profile_data"
    __table_args__ = (UniqueConstraint("user_id", "section_id", "field_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    field_id = Column(
        String(36),
        ForeignKey("section_profile_fields.id", ondelete="CASCADE"),
        nullable=False,
    )
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    field = relationship("SectionProfileField")


class SectionMembershipVisibility(Base):
    __tablename__ = "section_membership_visibility"
    __table_args__ = (UniqueConstraint("section_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    is_visible = Column(Boolean, default=True, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    created_by = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="SET NULL"), nullable=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # ISO timestamp, or a bare calendar date for legacy rows paired with ``time``.
    date = Column(String(64), nullable=False)
    time = Column(String(16), nullable=True)
    starts_at = Column(DateTime, nullable=True, index=True)
    end_time = Column(DateTime, nullable=True)
    location = Column(String(255), nullable=True)
    is_virtual = Column(Boolean, default=False, nullable=False)
    virtual_link = Column(String(512), nullable=True)
    image_url = Column(String(512), nullable=True)
    tags = Column(JSON, default=list, nullable=False)
    published = Column(Boolean, default=True, nullable=False)
    is_private = Column(Boolean, default=False, nullable=False)
    guest_list_visibility = Column(String(16), default="rsvp_only", nullable=False)
    group_name = Column(String(255), nullable=True)
    max_capacity = Column(Integer, nullable=True)
    waitlist_enabled = Column(Boolean, default=False, nullable=False)
    auto_confirm_waitlist = Column(Boolean, default=True, nullable=False)
    rsvp_deadline = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=True, index=True)
    status_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    creator = relationship("Profile")
    section = relationship("Section", back_populates="events")
    rsvps = relationship(
        "EventRSVP", back_populates="event", cascade="all, delete-orphan"
    )
    waitlist_entries = relationship(
        "WaitlistEntry",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="WaitlistEntry.position",
    )
    cohosts = relationship(
        "EventCohost", back_populates="event", cascade="all, delete-orphan"
    )
    invitations = relationship(
        "EventInvitation", back_populates="event", cascade="all, delete-orphan"
    )
    section_invites = relationship(
        "EventSectionInvite", back_populates="event", cascade="all, delete-orphan"
    )
    comments = relationship(
        "EventComment",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventComment.created_at",
    )

    @property
    def going_count(self) -> int:
        return sum(1 for r in self.rsvps if r.status == "going")

    @property
    def maybe_count(self) -> int:
        return sum(1 for r in self.rsvps if r.status == "maybe")

    @property
    def host_ids(self) -> set[str]:
        return {self.created_by, *(c.user_id for c in self.cohosts)}


class EventRSVP(Base):
    __tablename__ = "event_rsvps"
    __table_args__ = (UniqueConstraint("event_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(16), default="going", nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")
    profile = relationship("Profile")


class WaitlistEntry(Base):
    __tablename__ = "event_waitlist"
    __table_args__ = (UniqueConstraint("event_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    position = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    notified_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="waitlist_entries")
    profile = relationship("Profile")


class EventCohost(Base):
    __tablename__ = "event_cohosts"
    __table_args__ = (UniqueConstraint("event_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    added_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    role = Column(String(16), default="cohost", nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="cohosts")
    profile = relationship("Profile", foreign_keys=[user_id])


class EventInvitation(Base):
    __tablename__ = "event_invitations"
    __table_args__ = (UniqueConstraint("event_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    invited_by = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(16), default="pending", nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    responded_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="invitations")


class EventSectionInvite(Base):
    __tablename__ = "event_section_invites"
    __table_args__ = (UniqueConstraint("event_id", "section_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=False
    )
    invited_by = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    invited_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="section_invites")
    section = relationship("Section")


class EventComment(Base):
    """Activity feed entry visible to the event's hosts and RSVPed guests."""

    __tablename__ = "event_comments"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="comments")
    author = relationship("Profile")


class ChannelCategory(Base):
    __tablename__ = "channel_categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    icon = Column(String(50), nullable=True)
    display_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)


class Channel(Base):
    __tablename__ = "channels"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(16), default="public", nullable=False)
    category_id = Column(
        String(36), ForeignKey("channel_categories.id", ondelete="SET NULL"), nullable=True
    )
    section_id = Column(
        String(36), ForeignKey("sections.id", ondelete="CASCADE"), nullable=True
    )
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=True
    )
    is_archived = Column(Boolean, default=False, nullable=False)
    is_read_only = Column(Boolean, default=False, nullable=False)
    created_by = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    created_at = Column(DateTime, default=_now, nullable=False)
    last_message_at = Column(DateTime, nullable=True)

    category = relationship("ChannelCategory")
    section = relationship("Section", back_populates="channels")
    event = relationship("Event")
    members = relationship(
        "ChannelMember", back_populates="channel", cascade="all, delete-orphan"
    )
    messages = relationship(
        "ChannelMessage",
        back_populates="channel",
        cascade="all, delete-orphan",
        order_by="ChannelMessage.created_at",
    )


class ChannelMember(Base):
    __tablename__ = "channel_members"
    __table_args__ = (UniqueConstraint("channel_id", "user_id"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    channel_id = Column(
        String(36), ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), default="member", nullable=False)
    joined_at = Column(DateTime, default=_now, nullable=False)
    last_read_at = Column(DateTime, default=_now, nullable=False)

    channel = relationship("Channel", back_populates="members")
    profile = relationship("Profile")


class ChannelMessage(Base):
    __tablename__ = "channel_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    channel_id = Column(
        String(36), ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False)
    message_type = Column(String(16), default="text", nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)
    edited_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String(36), ForeignKey("profiles.id"), nullable=True)

    channel = relationship("Channel", back_populates="messages")
    author = relationship("Profile", foreign_keys=[user_id])
