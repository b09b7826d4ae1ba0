"""
shared/models/models.py
All SQLAlchemy ORM models for the booking scheduler.
UUID primary keys throughout; JSON columns use JSONB on PostgreSQL.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    TypeDecorator,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base
from config.settings import settings
from shared.utils.time_window import TimeWindow, utcnow


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    EMPLOYEE = "EMPLOYEE"
    ADMIN = "ADMIN"
    PRESIDENT = "PRESIDENT"


class ResourceKind(str, PyEnum):
    ROOM = "ROOM"
    VEHICLE = "VEHICLE"
    SAMPLE_EQUIPMENT = "SAMPLE_EQUIPMENT"


class MeetingType(str, PyEnum):
    IN_PERSON = "IN_PERSON"
    ONLINE = "ONLINE"
    HYBRID = "HYBRID"


class Channel(str, PyEnum):
    EMAIL = "EMAIL"
    PUSH = "PUSH"


class NotificationCategory(str, PyEnum):
    SCHEDULE_CREATED = "SCHEDULE_CREATED"
    SCHEDULE_UPDATED = "SCHEDULE_UPDATED"
    SCHEDULE_DELETED = "SCHEDULE_DELETED"
    SCHEDULE_REMINDER = "SCHEDULE_REMINDER"
    # Emitted by the leave-request workflow, which shares the preference rows
    # and the inbox; this service never plans them itself
    LEAVE_REQUEST = "LEAVE_REQUEST"
    LEAVE_APPROVAL = "LEAVE_APPROVAL"


class ScheduledNotificationStatus(str, PyEnum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DeliveryStatus(str, PyEnum):
    SENT = "SENT"
    FAILED = "FAILED"


# ── Column Types ──────────────────────────────────────────────

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware DateTime that always round-trips as UTC."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTC column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Value Objects ─────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceRef:
    """A piece of shared equipment. Equal only if kind and id both match."""
    kind: ResourceKind
    id: str

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceRef":
        return cls(kind=ResourceKind(data["kind"]), id=str(data["id"]))

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "id": self.id}


@dataclass(frozen=True)
class ReminderSpec:
    offset_minutes: int
    channels: frozenset

    @classmethod
    def from_dict(cls, data: dict) -> "ReminderSpec":
        return cls(
            offset_minutes=int(data["offset_minutes"]),
            channels=frozenset(Channel(c) for c in data["channels"]),
        )

    def to_dict(self) -> dict:
        return {
            "offset_minutes": self.offset_minutes,
            "channels": sorted(c.value for c in self.channels),
        }


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """Adds soft delete capability."""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ── Models ────────────────────────────────────────────────────

class Booking(TimestampMixin, SoftDeleteMixin, Base):
    """
    A reservation of a time window for participants and shared resources.
    Recurring requests are stored as independent rows sharing a series_id.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    series_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="meeting")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Meeting
    meeting_type: Mapped[MeetingType] = mapped_column(
        Enum(MeetingType), nullable=False, default=MeetingType.IN_PERSON
    )
    meet_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Who and what: user UUID strings, {"kind", "id"} dicts, {"offset_minutes", "channels"} dicts
    participants: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    resources: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    reminders: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    scheduled_notifications: Mapped[List["ScheduledNotification"]] = relationship(
        back_populates="booking"
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_window"),
        Index("ix_bookings_start_time", "start_time"),
        Index("ix_bookings_end_time", "end_time"),
        Index("ix_bookings_series_id", "series_id"),
    )

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start_time, self.end_time)

    @property
    def participant_ids(self) -> frozenset:
        return frozenset(uuid.UUID(str(p)) for p in self.participants or [])

    @property
    def resource_refs(self) -> frozenset:
        return frozenset(ResourceRef.from_dict(r) for r in self.resources or [])

    @property
    def reminder_specs(self) -> List[ReminderSpec]:
        return [ReminderSpec.from_dict(r) for r in self.reminders or []]

    def involves(self, user_id: uuid.UUID) -> bool:
        return user_id == self.created_by or user_id in self.participant_ids


class NotificationPreference(TimestampMixin, Base):
    """Per-user delivery settings. Users without a row get the defaults."""
    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)

    # Channels
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Email categories
    email_schedule_created: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_schedule_updated: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_schedule_deleted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_schedule_reminder: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_leave_request: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    email_leave_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Push categories
    push_schedule_created: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_schedule_updated: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_schedule_deleted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_schedule_reminder: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_leave_request: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_leave_approval: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    default_reminder_offset: Mapped[int] = mapped_column(Integer, default=15, nullable=False)

    # Quiet hours (wall-clock, may span midnight)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quiet_hours_start: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    quiet_hours_end: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Delivery addresses handed to the sender
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    push_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @classmethod
    def defaults(cls, user_id: uuid.UUID) -> "NotificationPreference":
        """Transient instance carrying the default settings."""
        toggles = {
            f"{channel.value.lower()}_{category.value.lower()}": True
            for channel in Channel
            for category in NotificationCategory
        }
        return cls(
            user_id=user_id,
            email_enabled=True,
            push_enabled=False,
            default_reminder_offset=settings.DEFAULT_REMINDER_OFFSET_MINUTES,
            quiet_hours_enabled=False,
            quiet_hours_start=None,
            quiet_hours_end=None,
            timezone=None,
            contact_email=None,
            push_token=None,
            **toggles,
        )

    def channel_enabled(self, channel: Channel) -> bool:
        return bool(getattr(self, f"{channel.value.lower()}_enabled"))

    def category_enabled(self, channel: Channel, category: NotificationCategory) -> bool:
        return bool(getattr(self, f"{channel.value.lower()}_{category.value.lower()}"))

    @property
    def quiet_hours(self) -> Optional[tuple]:
        if not self.quiet_hours_enabled or not self.quiet_hours_start or not self.quiet_hours_end:
            return None
        return self.quiet_hours_start, self.quiet_hours_end


class ScheduledNotification(TimestampMixin, Base):
    """
    A planned delivery for one participant of one booking.
    Status: PENDING → CLAIMED → SENT | FAILED, or PENDING/CLAIMED → CANCELLED.
    """
    __tablename__ = "scheduled_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category: Mapped[NotificationCategory] = mapped_column(
        Enum(NotificationCategory),
        nullable=False,
        default=NotificationCategory.SCHEDULE_REMINDER,
    )
    offset_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    due_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[ScheduledNotificationStatus] = mapped_column(
        Enum(ScheduledNotificationStatus),
        nullable=False,
        default=ScheduledNotificationStatus.PENDING,
    )
    notification_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    booking: Mapped["Booking"] = relationship(back_populates="scheduled_notifications")

    __table_args__ = (
        Index("ix_scheduled_notifications_status_due", "status", "due_at"),
        Index("ix_scheduled_notifications_booking_id", "booking_id"),
        Index("ix_scheduled_notifications_user_id", "user_id"),
        # At most one live row per (booking, user, category, offset)
        Index(
            "uq_scheduled_notifications_pending",
            "booking_id",
            "user_id",
            "category",
            "offset_minutes",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    @property
    def channel_set(self) -> frozenset:
        return frozenset(Channel(c) for c in self.channels or [])


class NotificationLog(TimestampMixin, Base):
    """Append-only record of every delivery attempt, one row per channel."""
    __tablename__ = "notification_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    scheduled_notification_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("scheduled_notifications.id"), nullable=True
    )
    channel: Mapped[Channel] = mapped_column(Enum(Channel), nullable=False)
    category: Mapped[NotificationCategory] = mapped_column(Enum(NotificationCategory), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[DeliveryStatus] = mapped_column(Enum(DeliveryStatus), nullable=False)
    suppressed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    suppression_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("ix_notification_logs_user_id_read", "user_id", "is_read"),
        Index("ix_notification_logs_created_at", "created_at"),
    )
