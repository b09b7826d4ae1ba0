"""
services/notification/repository.py
Persistence for scheduled notifications and the delivery log.

Planning methods (upsert_plan, add_notices, cancel_for_booking) only
flush: they run inside the booking transaction. Dispatch methods
(claim_due, mark_*, release_stale_claims) commit, so a claim is visible
to other workers before anything is sent and each item's outcome is
durable on its own.
"""

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.planner import PlannedNotification
from shared.models.models import (
    Booking,
    NotificationCategory,
    NotificationLog,
    ScheduledNotification,
    ScheduledNotificationStatus as Status,
)

LIVE_STATUSES = (Status.PENDING, Status.CLAIMED)


class RequeueOutcome(str, Enum):
    REQUEUED = "REQUEUED"
    NOT_FAILED = "NOT_FAILED"
    SUPERSEDED = "SUPERSEDED"


class SqlScheduledNotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Planning (booking transaction) ───────────────────────

    async def _cancel(self, *conditions, statuses=(Status.PENDING,)) -> int:
        result = await self.session.execute(
            update(ScheduledNotification)
            .where(ScheduledNotification.status.in_(statuses), *conditions)
            .values(status=Status.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def _rows(self, planned: Iterable[PlannedNotification]) -> List[ScheduledNotification]:
        return [
            ScheduledNotification(
                booking_id=p.booking_id,
                user_id=p.user_id,
                category=p.category,
                offset_minutes=p.offset_minutes,
                channels=sorted(c.value for c in p.channels),
                due_at=p.due_at,
                status=Status.PENDING,
            )
            for p in planned
        ]

    async def upsert_plan(
        self, booking_id: UUID, planned: List[PlannedNotification]
    ) -> List[ScheduledNotification]:
        """Replace the booking's pending reminders with `planned`."""
        await self._cancel(
            ScheduledNotification.booking_id == booking_id,
            ScheduledNotification.category == NotificationCategory.SCHEDULE_REMINDER,
        )
        # Cancellation must reach the database before the partial unique index sees new rows
        await self.session.flush()
        rows = self._rows(planned)
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    async def add_notices(self, planned: List[PlannedNotification]) -> List[ScheduledNotification]:
        """Queue change notices; a newer notice supersedes an unsent one of the same kind."""
        for p in planned:
            await self._cancel(
                ScheduledNotification.booking_id == p.booking_id,
                ScheduledNotification.user_id == p.user_id,
                ScheduledNotification.category == p.category,
            )
        await self.session.flush()
        rows = self._rows(planned)
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    async def cancel_for_booking(self, booking_id: UUID) -> int:
        """Cancel everything not yet delivered, including in-flight claims."""
        return await self._cancel(
            ScheduledNotification.booking_id == booking_id, statuses=LIVE_STATUSES
        )

    # ── Dispatch (commits) ───────────────────────────────────

    async def try_claim(self, notification_id: UUID, now: datetime, worker_id: str) -> bool:
        """Compare-and-swap PENDING → CLAIMED. Exactly one caller wins."""
        result = await self.session.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.id == notification_id,
                ScheduledNotification.status == Status.PENDING,
            )
            .values(status=Status.CLAIMED, claimed_at=now, claimed_by=worker_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_due(self, now: datetime, limit: int, worker_id: str) -> List[ScheduledNotification]:
        candidates = await self.session.execute(
            select(ScheduledNotification.id)
            .where(
                ScheduledNotification.status == Status.PENDING,
                ScheduledNotification.due_at <= now,
            )
            .order_by(ScheduledNotification.due_at, ScheduledNotification.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        claimed_ids = [
            notification_id
            for notification_id in candidates.scalars().all()
            if await self.try_claim(notification_id, now, worker_id)
        ]
        await self.session.commit()
        if not claimed_ids:
            return []

        result = await self.session.execute(
            select(ScheduledNotification)
            .where(ScheduledNotification.id.in_(claimed_ids))
            .order_by(ScheduledNotification.due_at, ScheduledNotification.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _finish(self, notification_id: UUID, status: Status, now: datetime, log_id: Optional[UUID]) -> bool:
        # Conditioned on CLAIMED: a booking deleted mid-send keeps its CANCELLED status
        result = await self.session.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.id == notification_id,
                ScheduledNotification.status == Status.CLAIMED,
            )
            .values(status=status, completed_at=now, notification_log_id=log_id)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def mark_sent(self, notification_id: UUID, now: datetime, log_id: Optional[UUID] = None) -> bool:
        return await self._finish(notification_id, Status.SENT, now, log_id)

    async def mark_failed(self, notification_id: UUID, now: datetime, log_id: Optional[UUID] = None) -> bool:
        return await self._finish(notification_id, Status.FAILED, now, log_id)

    async def mark_cancelled(self, notification_id: UUID, now: datetime) -> bool:
        return await self._finish(notification_id, Status.CANCELLED, now, None)

    async def release_stale_claims(self, now: datetime, timeout_seconds: int) -> int:
        """Claims abandoned by a crashed worker become FAILED (never resent automatically)."""
        result = await self.session.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.status == Status.CLAIMED,
                ScheduledNotification.claimed_at < now - timedelta(seconds=timeout_seconds),
            )
            .values(status=Status.FAILED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount

    async def rollback(self) -> None:
        await self.session.rollback()

    # ── Queries / admin ──────────────────────────────────────

    async def get(self, notification_id: UUID) -> Optional[ScheduledNotification]:
        result = await self.session.execute(
            select(ScheduledNotification)
            .where(ScheduledNotification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_booking(self, booking_id: UUID) -> List[ScheduledNotification]:
        result = await self.session.execute(
            select(ScheduledNotification)
            .where(ScheduledNotification.booking_id == booking_id)
            .order_by(ScheduledNotification.due_at, ScheduledNotification.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_for_user(
        self, user_id: UUID, status: Optional[Status] = Status.PENDING, limit: int = 50
    ) -> List[ScheduledNotification]:
        stmt = select(ScheduledNotification).where(ScheduledNotification.user_id == user_id)
        if status is not None:
            stmt = stmt.where(ScheduledNotification.status == status)
        result = await self.session.execute(
            stmt.order_by(ScheduledNotification.due_at).limit(limit)
        )
        return list(result.scalars().all())

    async def is_superseded(self, row: ScheduledNotification, now: datetime) -> bool:
        """
        True when resending `row` no longer matches the booking: it was
        deleted (only its deletion notice survives that), a reminder lapsed or
        lost its offset or its recipient, or a live row with the same key has
        been planned since.
        """
        booking = await self.session.get(Booking, row.booking_id, populate_existing=True)
        if booking is None:
            return True
        if booking.is_deleted and row.category != NotificationCategory.SCHEDULE_DELETED:
            return True
        if row.category == NotificationCategory.SCHEDULE_REMINDER and (
            booking.start_time <= now
            or row.user_id not in booking.participant_ids
            or row.offset_minutes not in {s.offset_minutes for s in booking.reminder_specs}
        ):
            return True

        result = await self.session.execute(
            select(ScheduledNotification.id)
            .where(
                ScheduledNotification.id != row.id,
                ScheduledNotification.booking_id == row.booking_id,
                ScheduledNotification.user_id == row.user_id,
                ScheduledNotification.category == row.category,
                ScheduledNotification.offset_minutes == row.offset_minutes,
                ScheduledNotification.status.in_(LIVE_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def requeue_failed(self, notification_id: UUID, now: datetime) -> RequeueOutcome:
        """Manual retry: FAILED → PENDING, due immediately."""
        row = await self.get(notification_id)
        if row is None or row.status != Status.FAILED:
            return RequeueOutcome.NOT_FAILED
        if await self.is_superseded(row, now):
            return RequeueOutcome.SUPERSEDED

        result = await self.session.execute(
            update(ScheduledNotification)
            .where(
                ScheduledNotification.id == notification_id,
                ScheduledNotification.status == Status.FAILED,
            )
            .values(
                status=Status.PENDING,
                due_at=now,
                claimed_at=None,
                claimed_by=None,
                completed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return RequeueOutcome.REQUEUED if result.rowcount == 1 else RequeueOutcome.NOT_FAILED


class SqlNotificationLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, log: NotificationLog) -> NotificationLog:
        self.session.add(log)
        await self.session.flush()
        return log

    async def list_for_user(
        self, user_id: UUID, unread_only: bool = False, page: int = 1, page_size: int = 20
    ) -> Tuple[List[NotificationLog], int, int]:
        """Returns (items, total, pages), newest first."""
        query = select(NotificationLog).where(NotificationLog.user_id == user_id)
        if unread_only:
            query = query.where(NotificationLog.is_read.is_(False))

        total = await self.session.scalar(
            select(func.count()).select_from(query.subquery())
        ) or 0
        result = await self.session.execute(
            query.order_by(NotificationLog.created_at.desc(), NotificationLog.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        pages = math.ceil(total / page_size) if total else 0
        return list(result.scalars().all()), total, pages

    async def mark_read(self, user_id: UUID, log_id: UUID, now: datetime) -> bool:
        result = await self.session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log_id, NotificationLog.user_id == user_id)
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_all_read(self, user_id: UUID, now: datetime) -> int:
        result = await self.session.execute(
            update(NotificationLog)
            .where(NotificationLog.user_id == user_id, NotificationLog.is_read.is_(False))
            .values(is_read=True, read_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def unread_count(self, user_id: UUID) -> int:
        count = await self.session.scalar(
            select(func.count(NotificationLog.id)).where(
                NotificationLog.user_id == user_id,
                NotificationLog.is_read.is_(False),
            )
        )
        return count or 0
