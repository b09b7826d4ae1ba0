"""
services/notification/dispatcher.py
Fires due notifications. Runs on a fixed tick from Celery beat.

Each tick claims a bounded batch of due PENDING rows with a
compare-and-swap, so several workers can tick concurrently and every
row is handled by exactly one of them. One item failing never stops
the rest of the batch. FAILED is terminal: only an administrator
re-queues a failed row.
"""

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config.settings import settings
from services.notification.preferences import PreferenceFilter
from services.notification.senders import SendError, render_message
from shared.models.models import (
    DeliveryStatus,
    NotificationCategory,
    NotificationLog,
    ScheduledNotification,
)
from shared.utils.time_window import utcnow

logger = logging.getLogger(__name__)

LOCAL_FORMAT = "%Y-%m-%d %H:%M"


def default_worker_id() -> str:
    return settings.WORKER_NAME or f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class DispatchReport:
    claimed: int = 0
    sent: int = 0
    suppressed: int = 0
    failed: int = 0
    cancelled: int = 0


def build_payload(booking, row: ScheduledNotification, tz: ZoneInfo) -> dict:
    window = booking.window
    return {
        "booking_id": str(booking.id),
        "title": booking.title,
        "category": booking.category,
        "start_time": window.start.isoformat(),
        "end_time": window.end.isoformat(),
        "start_local": window.start.astimezone(tz).strftime(LOCAL_FORMAT),
        "end_local": window.end.astimezone(tz).strftime(LOCAL_FORMAT),
        "offset_minutes": row.offset_minutes,
        "meeting_type": booking.meeting_type.value,
        "meet_link": booking.meet_link or "",
        "url": f"{settings.APP_URL}/schedules/{booking.id}",
    }


class NotificationDispatcher:
    def __init__(
        self,
        notifications,
        logs,
        schedules,
        preferences,
        sender,
        batch_size: int = settings.DISPATCH_BATCH_SIZE,
        worker_id: Optional[str] = None,
        preference_filter: Optional[PreferenceFilter] = None,
        tz: Optional[ZoneInfo] = None,
    ):
        self.notifications = notifications
        self.logs = logs
        self.schedules = schedules
        self.preferences = preferences
        self.sender = sender
        self.batch_size = batch_size
        self.worker_id = worker_id or default_worker_id()
        self.filter = preference_filter or PreferenceFilter()
        self.tz = tz or settings.business_tz

    async def tick(self, now: Optional[datetime] = None) -> DispatchReport:
        now = now or utcnow()
        claimed = await self.notifications.claim_due(now, self.batch_size, self.worker_id)
        report = DispatchReport(claimed=len(claimed))
        rows = {row.id: row for row in claimed}
        rolled_back = False

        for row_id in list(rows):
            try:
                # A rollback expires loaded rows; reload before touching them again
                row = await self.notifications.get(row_id) if rolled_back else rows[row_id]
                outcome = await self._deliver(row, now)
            except Exception:
                logger.exception(f"Dispatch of scheduled notification {row_id} crashed")
                await self.notifications.rollback()
                rolled_back = True
                await self.notifications.mark_failed(row_id, now)
                outcome = "failed"
            setattr(report, outcome, getattr(report, outcome) + 1)

        if claimed:
            logger.info(
                f"Dispatch tick by {self.worker_id}: claimed={report.claimed} sent={report.sent} "
                f"suppressed={report.suppressed} failed={report.failed} cancelled={report.cancelled}"
            )
        return report

    async def _deliver(self, row: ScheduledNotification, now: datetime) -> str:
        booking = await self.schedules.get(row.booking_id, include_deleted=True)
        # Reminders for a deleted booking are void; the deletion notice itself still goes out
        if booking is None or (
            booking.is_deleted and row.category != NotificationCategory.SCHEDULE_DELETED
        ):
            await self.notifications.mark_cancelled(row.id, now)
            return "cancelled"

        pref = await self.preferences.get(row.user_id)
        payload = build_payload(booking, row, self.tz)
        subject, content = render_message(row.category, payload)

        failed = False
        delivered = False
        first_log_id = None
        for channel in sorted(row.channel_set, key=lambda c: c.value):
            log = NotificationLog(
                user_id=row.user_id,
                booking_id=booking.id,
                scheduled_notification_id=row.id,
                channel=channel,
                category=row.category,
                subject=subject[:255],
                content=content,
                payload=payload,
                status=DeliveryStatus.SENT,
                suppressed=False,
            )
            reason = self.filter.suppression_reason(pref, channel, row.category, now)
            if reason:
                log.suppressed = True
                log.suppression_reason = reason
                logger.info(f"Suppressed {channel.value} for notification {row.id}: {reason}")
            else:
                try:
                    ack = await self.sender.send(row.user_id, channel, row.category, payload)
                    log.provider_message_id = ack.provider_message_id
                    log.sent_at = now
                    delivered = True
                except SendError as e:
                    log.status = DeliveryStatus.FAILED
                    log.error_message = str(e)
                    failed = True
                    logger.warning(f"{channel.value} send failed for notification {row.id}: {e}")

            await self.logs.add(log)
            first_log_id = first_log_id or log.id

        if failed:
            finished = await self.notifications.mark_failed(row.id, now, first_log_id)
        else:
            finished = await self.notifications.mark_sent(row.id, now, first_log_id)
        if not finished:
            logger.info(f"Notification {row.id} was cancelled while being dispatched")

        if failed:
            return "failed"
        return "sent" if delivered or not row.channel_set else "suppressed"

    async def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        released = await self.notifications.release_stale_claims(now, settings.CLAIM_TIMEOUT_SECONDS)
        if released:
            logger.warning(f"Marked {released} abandoned claim(s) as FAILED")
        return released
