"""
services/notification/planner.py
Compute which notifications a booking needs and when they are due.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Set
from uuid import UUID

from shared.models.models import Channel, NotificationCategory


@dataclass(frozen=True)
class PlannedNotification:
    booking_id: UUID
    user_id: UUID
    category: NotificationCategory
    offset_minutes: int
    channels: frozenset
    due_at: datetime


class ReminderPlanner:
    """
    One reminder per (participant, offset): due_at = start - offset.
    Reminders whose due time has already passed are dropped, so a booking
    created 5 minutes before its start gets no 15-minute reminder.
    """

    def __init__(self, notice_channels: Iterable[Channel] = (Channel.EMAIL, Channel.PUSH)):
        self.notice_channels = frozenset(notice_channels)

    def plan(self, booking, now: datetime) -> List[PlannedNotification]:
        # Duplicate offsets collapse into one reminder with the union of channels
        by_offset: Dict[int, Set[Channel]] = {}
        for spec in booking.reminder_specs:
            by_offset.setdefault(spec.offset_minutes, set()).update(spec.channels)

        start = booking.window.start
        planned = []
        for user_id in sorted(booking.participant_ids, key=str):
            for offset, channels in sorted(by_offset.items()):
                due_at = start - timedelta(minutes=offset)
                if due_at < now or not channels:
                    continue
                planned.append(
                    PlannedNotification(
                        booking_id=booking.id,
                        user_id=user_id,
                        category=NotificationCategory.SCHEDULE_REMINDER,
                        offset_minutes=offset,
                        channels=frozenset(channels),
                        due_at=due_at,
                    )
                )
        return planned

    def plan_notice(
        self,
        booking,
        category: NotificationCategory,
        recipients: Iterable[UUID],
        now: datetime,
    ) -> List[PlannedNotification]:
        """Immediate created/updated/deleted notices."""
        return [
            PlannedNotification(
                booking_id=booking.id,
                user_id=user_id,
                category=category,
                offset_minutes=0,
                channels=self.notice_channels,
                due_at=now,
            )
            for user_id in sorted(set(recipients), key=str)
        ]
