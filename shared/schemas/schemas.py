"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import date, datetime, time
from typing import Annotated, Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    Channel,
    DeliveryStatus,
    MeetingType,
    NotificationCategory,
    ReminderSpec,
    ResourceKind,
    ResourceRef,
    ScheduledNotificationStatus,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Recurrence ────────────────────────────────────────────────
# Closed tagged union: a rule is exactly one of the shapes below,
# so "custom weekdays without weekdays" cannot be expressed.

class EndNever(BaseSchema):
    type: Literal["never"] = "never"


class EndAfterCount(BaseSchema):
    type: Literal["count"] = "count"
    count: int = Field(..., ge=1)


class EndOnDate(BaseSchema):
    type: Literal["until"] = "until"
    until: date


RecurrenceEnd = Annotated[
    Union[EndNever, EndAfterCount, EndOnDate], Field(discriminator="type")
]


class _RecurrenceBase(BaseSchema):
    interval: int = Field(1, ge=1, le=365)
    end: RecurrenceEnd = Field(default_factory=EndNever)


class DailyRecurrence(_RecurrenceBase):
    frequency: Literal["daily"] = "daily"


class WeeklyRecurrence(_RecurrenceBase):
    frequency: Literal["weekly"] = "weekly"


class MonthlyRecurrence(_RecurrenceBase):
    frequency: Literal["monthly"] = "monthly"


class YearlyRecurrence(_RecurrenceBase):
    frequency: Literal["yearly"] = "yearly"


class WeekdaysRecurrence(_RecurrenceBase):
    """Monday to Friday."""
    frequency: Literal["weekdays"] = "weekdays"


class CustomWeekdaysRecurrence(_RecurrenceBase):
    """Chosen weekdays, 0 = Sunday … 6 = Saturday."""
    frequency: Literal["custom_weekdays"] = "custom_weekdays"
    weekdays: Set[Annotated[int, Field(ge=0, le=6)]] = Field(..., min_length=1)


Recurrence = Annotated[
    Union[
        DailyRecurrence,
        WeeklyRecurrence,
        MonthlyRecurrence,
        YearlyRecurrence,
        WeekdaysRecurrence,
        CustomWeekdaysRecurrence,
    ],
    Field(discriminator="frequency"),
]


# ── Booking ───────────────────────────────────────────────────

class ResourceRefSchema(BaseSchema):
    kind: ResourceKind
    id: str = Field(..., min_length=1, max_length=100)

    def to_domain(self) -> ResourceRef:
        return ResourceRef(kind=ResourceKind(self.kind), id=self.id)


class ReminderSpecSchema(BaseSchema):
    offset_minutes: int = Field(..., ge=0, le=60 * 24 * 30)
    channels: Set[Channel] = Field(default_factory=lambda: {Channel.EMAIL}, min_length=1)

    def to_domain(self) -> ReminderSpec:
        return ReminderSpec(
            offset_minutes=self.offset_minutes,
            channels=frozenset(Channel(c) for c in self.channels),
        )


class BookingWriteRequest(BaseSchema):
    """
    Body for create and full update. Naive datetimes are read as
    business-timezone wall-clock time. `reminders=None` means "use the
    creator's default reminder offset".
    """
    title: str = Field(..., min_length=1, max_length=255)
    category: str = Field("meeting", min_length=1, max_length=50)
    notes: Optional[str] = Field(None, max_length=5000)
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    participants: List[uuid.UUID] = Field(default_factory=list)
    resources: List[ResourceRefSchema] = Field(default_factory=list)
    reminders: Optional[List[ReminderSpecSchema]] = None
    meeting_type: MeetingType = MeetingType.IN_PERSON
    meet_link: Optional[str] = Field(None, max_length=500)


class BookingCreateRequest(BookingWriteRequest):
    recurrence: Optional[Recurrence] = None


class BookingUpdateRequest(BookingWriteRequest):
    pass


class BookingResponse(BaseSchema):
    id: uuid.UUID
    series_id: Optional[uuid.UUID]
    category: str
    title: str
    notes: Optional[str]
    start_time: datetime
    end_time: datetime
    is_all_day: bool
    recurrence: Optional[Dict[str, Any]]
    meeting_type: MeetingType
    meet_link: Optional[str]
    participants: List[uuid.UUID]
    resources: List[ResourceRefSchema]
    reminders: List[ReminderSpecSchema]
    created_by: uuid.UUID
    updated_by: Optional[uuid.UUID]
    created_at: datetime
    updated_at: datetime


class ConflictingBookingSchema(BaseSchema):
    id: uuid.UUID
    title: str
    start_time: datetime
    end_time: datetime
    shared_participants: List[uuid.UUID]
    shared_resources: List[ResourceRefSchema]


class OccurrenceConflictSchema(BaseSchema):
    start_time: datetime
    end_time: datetime
    conflicts: List[ConflictingBookingSchema]


class BookingConflictResponse(BaseSchema):
    detail: str = "Booking conflicts with existing bookings"
    code: str = "booking_conflict"
    conflicts: List[OccurrenceConflictSchema]


class BookingCreateResponse(BaseSchema):
    bookings: List[BookingResponse]
    forced: bool = False
    conflicts: List[OccurrenceConflictSchema] = Field(default_factory=list)


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    channel: Channel
    category: NotificationCategory
    subject: str
    content: Optional[str]
    status: DeliveryStatus
    suppressed: bool
    suppression_reason: Optional[str]
    error_message: Optional[str]
    sent_at: Optional[datetime]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime


class ScheduledNotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    category: NotificationCategory
    offset_minutes: int
    channels: List[str]
    due_at: datetime
    status: ScheduledNotificationStatus
    notification_log_id: Optional[uuid.UUID]


class NotificationPreferenceResponse(BaseSchema):
    user_id: uuid.UUID
    email_enabled: bool
    push_enabled: bool
    email_schedule_created: bool
    email_schedule_updated: bool
    email_schedule_deleted: bool
    email_schedule_reminder: bool
    email_leave_request: bool
    email_leave_approval: bool
    push_schedule_created: bool
    push_schedule_updated: bool
    push_schedule_deleted: bool
    push_schedule_reminder: bool
    push_leave_request: bool
    push_leave_approval: bool
    default_reminder_offset: int
    quiet_hours_enabled: bool
    quiet_hours_start: Optional[time]
    quiet_hours_end: Optional[time]
    timezone: Optional[str]
    contact_email: Optional[str]
    has_push_token: bool = False


# Fields a partial update may set back to null
CLEARABLE_PREFERENCE_FIELDS = frozenset(
    {"quiet_hours_start", "quiet_hours_end", "timezone", "contact_email", "push_token"}
)


class NotificationPreferenceUpdate(BaseSchema):
    """Partial update: omitted fields keep their current value."""
    email_enabled: Optional[bool] = None
    push_enabled: Optional[bool] = None
    email_schedule_created: Optional[bool] = None
    email_schedule_updated: Optional[bool] = None
    email_schedule_deleted: Optional[bool] = None
    email_schedule_reminder: Optional[bool] = None
    email_leave_request: Optional[bool] = None
    email_leave_approval: Optional[bool] = None
    push_schedule_created: Optional[bool] = None
    push_schedule_updated: Optional[bool] = None
    push_schedule_deleted: Optional[bool] = None
    push_schedule_reminder: Optional[bool] = None
    push_leave_request: Optional[bool] = None
    push_leave_approval: Optional[bool] = None
    default_reminder_offset: Optional[int] = Field(None, ge=0, le=60 * 24 * 7)
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: Optional[str] = Field(None, max_length=64)
    contact_email: Optional[EmailStr] = None
    push_token: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def reject_null_toggles(self) -> "NotificationPreferenceUpdate":
        nulls = sorted(
            name for name in self.model_fields_set
            if name not in CLEARABLE_PREFERENCE_FIELDS and getattr(self, name) is None
        )
        if nulls:
            raise ValueError(f"{', '.join(nulls)} cannot be null")
        return self


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
