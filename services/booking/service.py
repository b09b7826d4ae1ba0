"""
services/booking/service.py
Booking lifecycle: validate, check conflicts and capacity, persist,
and keep the participants' reminders in step with the booking.

Every check-then-write runs while holding the booking locks for the
affected participants, resources and days, and the transaction is
committed before the locks are released.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from config.settings import settings
from services.booking.capacity import CapacityLimiter
from services.booking.conflicts import Conflict, find_conflicts
from services.booking.exceptions import (
    BookingNotFoundError,
    BookingPermissionError,
    BookingValidationError,
)
from services.booking.locks import lock_keys_for
from services.booking.recurrence import expand
from services.notification.planner import ReminderPlanner
from shared.models.models import Booking, Channel, MeetingType, NotificationCategory, ReminderSpec
from shared.schemas.schemas import BookingCreateRequest, BookingWriteRequest
from shared.utils.time_window import TimeWindow, ensure_utc, local_date, local_day_bounds, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OccurrenceConflict:
    window: TimeWindow
    conflicts: List[Conflict]


@dataclass
class BookingOutcome:
    """
    accepted=False means nothing was written: the caller must show the
    conflicts and resubmit with force=True to book anyway.
    """
    bookings: List[Booking] = field(default_factory=list)
    conflicts: List[OccurrenceConflict] = field(default_factory=list)
    accepted: bool = True
    forced: bool = False


class BookingService:
    def __init__(
        self,
        schedules,
        notifications,
        preferences,
        lock,
        capacity: Optional[CapacityLimiter] = None,
        planner: Optional[ReminderPlanner] = None,
        clock: Callable[[], datetime] = utcnow,
        notify_changes: Optional[bool] = None,
        tz: Optional[ZoneInfo] = None,
    ):
        self.schedules = schedules
        self.notifications = notifications
        self.preferences = preferences
        self.lock = lock
        self.capacity = capacity or CapacityLimiter.from_settings()
        self.planner = planner or ReminderPlanner()
        self.clock = clock
        self.notify_changes = settings.NOTIFY_ON_BOOKING_CHANGES if notify_changes is None else notify_changes
        self.tz = tz or settings.business_tz

    # ── Public operations ─────────────────────────────────────

    async def create(self, data: BookingCreateRequest, actor_id: UUID, force: bool = False) -> BookingOutcome:
        """Create a booking, or one booking per occurrence of a recurrence."""
        window = self._validate(data)
        reminders = await self._resolve_reminders(data.reminders, actor_id, fallback=None)
        candidates = self._expand(data, window, actor_id, reminders)
        now = self.clock()

        async with self.lock.hold(self._lock_keys(candidates)):
            existing = await self._existing_for(candidates)
            conflicts = []
            accepted = []
            for candidate in candidates:
                # Earlier occurrences of the same series count too
                pool = existing + accepted
                found = find_conflicts(candidate, pool)
                if found:
                    conflicts.append(OccurrenceConflict(candidate.window, found))
                self.capacity.check(candidate, pool)
                accepted.append(candidate)

            if conflicts and not force:
                logger.info(
                    f"Booking '{data.title}' by {actor_id} held back: "
                    f"{len(conflicts)} conflicting occurrence(s)"
                )
                return BookingOutcome(conflicts=conflicts, accepted=False)

            for candidate in accepted:
                await self.schedules.insert(candidate)
                await self.notifications.upsert_plan(candidate.id, self.planner.plan(candidate, now))

            if self.notify_changes:
                # One notice per series, not per occurrence
                first = accepted[0]
                await self.notifications.add_notices(
                    self.planner.plan_notice(
                        first, NotificationCategory.SCHEDULE_CREATED, first.participant_ids - {actor_id}, now
                    )
                )
            await self.schedules.commit()

        forced = bool(conflicts)
        logger.info(
            f"Created {len(accepted)} booking(s) '{data.title}' for {actor_id}"
            + (f" (forced past {len(conflicts)} conflict(s))" if forced else "")
        )
        return BookingOutcome(bookings=accepted, conflicts=conflicts, accepted=True, forced=forced)

    async def update(
        self,
        booking_id: UUID,
        data: BookingWriteRequest,
        actor_id: UUID,
        force: bool = False,
        is_admin: bool = False,
    ) -> BookingOutcome:
        """Replace a single booking's fields. Series siblings are left alone."""
        booking = await self._get_for_write(booking_id, actor_id, is_admin)
        window = self._validate(data)
        reminders = await self._resolve_reminders(data.reminders, actor_id, fallback=booking.reminder_specs)
        candidate = self._build(data, window, actor_id, reminders, booking_id=booking.id)
        now = self.clock()

        async with self.lock.hold(self._lock_keys([candidate])):
            existing = await self._existing_for([candidate])
            found = find_conflicts(candidate, existing, exclude_id=booking.id)
            self.capacity.check(candidate, existing, exclude_id=booking.id)
            conflicts = [OccurrenceConflict(candidate.window, found)] if found else []
            if conflicts and not force:
                return BookingOutcome(bookings=[booking], conflicts=conflicts, accepted=False)

            previous_participants = booking.participant_ids
            replan = (
                booking.start_time != candidate.start_time
                or booking.reminders != candidate.reminders
                or booking.participant_ids != candidate.participant_ids
            )
            for attr in (
                "title", "category", "notes", "start_time", "end_time", "is_all_day",
                "participants", "resources", "reminders", "meeting_type", "meet_link",
            ):
                setattr(booking, attr, getattr(candidate, attr))
            booking.updated_by = actor_id
            await self.schedules.update(booking)

            if replan:
                await self.notifications.upsert_plan(booking.id, self.planner.plan(booking, now))
            if self.notify_changes:
                recipients = (previous_participants | booking.participant_ids) - {actor_id}
                await self.notifications.add_notices(
                    self.planner.plan_notice(booking, NotificationCategory.SCHEDULE_UPDATED, recipients, now)
                )
            await self.schedules.commit()

        logger.info(f"Updated booking {booking.id} by {actor_id} (replanned={replan})")
        return BookingOutcome(bookings=[booking], conflicts=conflicts, accepted=True, forced=bool(conflicts))

    async def delete(self, booking_id: UUID, actor_id: UUID, is_admin: bool = False) -> Booking:
        """Soft-delete and cancel every undelivered notification of the booking."""
        booking = await self._get_for_write(booking_id, actor_id, is_admin)
        now = self.clock()

        await self.schedules.delete(booking)
        cancelled = await self.notifications.cancel_for_booking(booking.id)
        if self.notify_changes:
            await self.notifications.add_notices(
                self.planner.plan_notice(
                    booking, NotificationCategory.SCHEDULE_DELETED, booking.participant_ids - {actor_id}, now
                )
            )
        await self.schedules.commit()

        logger.info(f"Deleted booking {booking.id} by {actor_id}; cancelled {cancelled} notification(s)")
        return booking

    async def check(
        self, data: BookingCreateRequest, actor_id: UUID, exclude_id: Optional[UUID] = None
    ) -> List[OccurrenceConflict]:
        """Conflict preview. Writes nothing and takes no locks."""
        window = self._validate(data)
        candidates = self._expand(data, window, actor_id, reminders=[])
        existing = await self._existing_for(candidates)
        report = []
        for candidate in candidates:
            found = find_conflicts(candidate, existing, exclude_id=exclude_id)
            if found:
                report.append(OccurrenceConflict(candidate.window, found))
        return report

    # ── Helpers ───────────────────────────────────────────────

    def _validate(self, data: BookingWriteRequest) -> TimeWindow:
        start = ensure_utc(data.start_time, self.tz)
        end = ensure_utc(data.end_time, self.tz)
        if end <= start:
            raise BookingValidationError("end_time must be after start_time")
        if not data.participants:
            raise BookingValidationError("A booking needs at least one participant")
        return TimeWindow(start, end)

    async def _resolve_reminders(self, requested, actor_id: UUID, fallback) -> List[ReminderSpec]:
        if requested is not None:
            return [r.to_domain() for r in requested]
        if fallback is not None:
            return list(fallback)
        pref = await self.preferences.get(actor_id)
        return [ReminderSpec(pref.default_reminder_offset, frozenset({Channel.EMAIL}))]

    def _build(
        self,
        data: BookingWriteRequest,
        window: TimeWindow,
        actor_id: UUID,
        reminders: List[ReminderSpec],
        booking_id: Optional[UUID] = None,
        series_id: Optional[UUID] = None,
        recurrence: Optional[dict] = None,
    ) -> Booking:
        """Transient Booking; only inserted once every check has passed."""
        participants = list(dict.fromkeys(str(p) for p in data.participants))
        resources = list({r.to_domain(): None for r in data.resources})
        return Booking(
            id=booking_id or uuid.uuid4(),
            series_id=series_id,
            title=data.title,
            category=data.category,
            notes=data.notes,
            start_time=window.start,
            end_time=window.end,
            is_all_day=data.is_all_day,
            recurrence=recurrence,
            participants=participants,
            resources=[r.to_dict() for r in resources],
            reminders=[r.to_dict() for r in reminders],
            meeting_type=MeetingType(data.meeting_type),
            meet_link=data.meet_link,
            created_by=actor_id,
            updated_by=actor_id,
        )

    def _expand(
        self,
        data: BookingCreateRequest,
        window: TimeWindow,
        actor_id: UUID,
        reminders: List[ReminderSpec],
    ) -> List[Booking]:
        rule = getattr(data, "recurrence", None)
        if rule is None:
            return [self._build(data, window, actor_id, reminders)]

        windows = list(expand(rule, window, tz=self.tz))
        if not windows:
            raise BookingValidationError("Recurrence produces no occurrences")
        series_id = uuid.uuid4()
        stored_rule = rule.model_dump(mode="json")
        return [
            self._build(data, w, actor_id, reminders, series_id=series_id, recurrence=stored_rule)
            for w in windows
        ]

    def _lock_keys(self, candidates: List[Booking]) -> set:
        keys = set()
        global_scope = self.capacity.scope == "global"
        for candidate in candidates:
            days = set(candidate.window.local_dates(self.tz))
            days.add(local_date(candidate.window.start, self.tz))
            keys |= lock_keys_for(candidate, sorted(days), include_day_key=global_scope)
        return keys

    async def _existing_for(self, candidates: List[Booking]) -> List[Booking]:
        """One query covering every candidate window and every candidate's start day."""
        first_day_start, _ = local_day_bounds(local_date(candidates[0].window.start, self.tz), self.tz)
        range_start = min([first_day_start] + [c.window.start for c in candidates])
        range_end = max(
            max(local_day_bounds(local_date(c.window.start, self.tz), self.tz)[1], c.window.end)
            for c in candidates
        )
        return await self.schedules.query(range_start, range_end)

    async def _get_for_write(self, booking_id: UUID, actor_id: UUID, is_admin: bool) -> Booking:
        booking = await self.schedules.get(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        if not is_admin and not booking.involves(actor_id):
            raise BookingPermissionError("Only the creator, participants or an admin can modify this booking")
        return booking
