"""
tests/test_dispatcher.py
Dispatch ticks: delivery, preference suppression and per-item failure isolation.
"""

import uuid
from datetime import time, timedelta

import pytest
from sqlalchemy import select

from services.booking.repository import SqlScheduleRepository
from services.notification.dispatcher import NotificationDispatcher
from services.notification.planner import PlannedNotification
from services.notification.preferences import QUIET_HOURS, PreferenceFilter, SqlPreferenceStore
from services.notification.repository import (
    SqlNotificationLogRepository,
    SqlScheduledNotificationRepository,
)
from services.notification.senders import SendAck, SendError
from shared.models.models import (
    Channel,
    DeliveryStatus,
    NotificationCategory,
    NotificationLog,
    NotificationPreference,
    ScheduledNotificationStatus as Status,
)
from tests.conftest import make_booking, utc

NOW = utc(2024, 6, 10, 0, 45)  # 09:45 in Tokyo
START = utc(2024, 6, 10, 1, 0)


class FakeSender:
    def __init__(self, fail_for=(), crash_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)

    async def send(self, user_id, channel, category, payload):
        if user_id in self.crash_for:
            raise RuntimeError("provider SDK blew up")
        if user_id in self.fail_for:
            raise SendError("mailbox unavailable")
        self.sent.append((user_id, channel, category, payload["title"]))
        return SendAck(channel=channel, provider_message_id=f"msg-{len(self.sent)}")


def _dispatcher(db, sender) -> NotificationDispatcher:
    from zoneinfo import ZoneInfo

    tz = ZoneInfo("Asia/Tokyo")
    return NotificationDispatcher(
        notifications=SqlScheduledNotificationRepository(db),
        logs=SqlNotificationLogRepository(db),
        schedules=SqlScheduleRepository(db),
        preferences=SqlPreferenceStore(db),
        sender=sender,
        batch_size=50,
        worker_id="test-worker",
        preference_filter=PreferenceFilter(tz),
        tz=tz,
    )


async def _queue(db, participants, category=NotificationCategory.SCHEDULE_REMINDER, channels=(Channel.EMAIL,)):
    booking = make_booking(START, START + timedelta(hours=1), participants=participants, title="Kickoff")
    db.add(booking)
    await db.flush()
    repo = SqlScheduledNotificationRepository(db)
    rows = await repo.add_notices(
        [
            PlannedNotification(booking.id, user, category, 15, frozenset(channels), NOW)
            for user in participants
        ]
    )
    await db.commit()
    return booking.id, [r.id for r in rows]


async def _logs(db):
    result = await db.execute(select(NotificationLog).execution_options(populate_existing=True))
    return list(result.scalars().all())


# ── Delivery ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_due_reminder_is_sent_and_logged(db):
    user = uuid.uuid4()
    _, [row_id] = await _queue(db, [user])
    sender = FakeSender()

    report = await _dispatcher(db, sender).tick(NOW)

    assert (report.claimed, report.sent) == (1, 1)
    assert sender.sent == [(user, Channel.EMAIL, NotificationCategory.SCHEDULE_REMINDER, "Kickoff")]
    row = await SqlScheduledNotificationRepository(db).get(row_id)
    assert row.status == Status.SENT
    [log] = await _logs(db)
    assert log.status == DeliveryStatus.SENT
    assert log.suppressed is False
    assert log.provider_message_id == "msg-1"
    assert row.notification_log_id == log.id
    assert "Kickoff" in log.subject


@pytest.mark.asyncio
async def test_rows_not_yet_due_are_left_alone(db):
    user = uuid.uuid4()
    _, [row_id] = await _queue(db, [user])

    report = await _dispatcher(db, FakeSender()).tick(NOW - timedelta(minutes=1))

    assert report.claimed == 0
    assert (await SqlScheduledNotificationRepository(db).get(row_id)).status == Status.PENDING


@pytest.mark.asyncio
async def test_second_tick_does_not_resend(db):
    _, _ = await _queue(db, [uuid.uuid4()])
    sender = FakeSender()
    dispatcher = _dispatcher(db, sender)

    await dispatcher.tick(NOW)
    report = await dispatcher.tick(NOW + timedelta(minutes=1))

    assert report.claimed == 0
    assert len(sender.sent) == 1


# ── Suppression ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_quiet_hours_suppress_without_deferral(db):
    user = uuid.uuid4()
    pref = NotificationPreference.defaults(user)
    pref.quiet_hours_enabled = True
    pref.quiet_hours_start = time(9)
    pref.quiet_hours_end = time(10)
    db.add(pref)
    _, [row_id] = await _queue(db, [user])
    sender = FakeSender()

    report = await _dispatcher(db, sender).tick(NOW)

    assert report.suppressed == 1
    assert sender.sent == []
    [log] = await _logs(db)
    assert log.suppressed is True
    assert log.suppression_reason == QUIET_HOURS
    assert log.status == DeliveryStatus.SENT
    # Recorded as handled; never retried later
    assert (await SqlScheduledNotificationRepository(db).get(row_id)).status == Status.SENT


@pytest.mark.asyncio
async def test_disabled_channel_suppressed_other_channel_sent(db):
    user = uuid.uuid4()
    db.add(NotificationPreference.defaults(user))  # push disabled by default
    await _queue(db, [user], channels=(Channel.EMAIL, Channel.PUSH))
    sender = FakeSender()

    report = await _dispatcher(db, sender).tick(NOW)

    assert report.sent == 1
    assert [s[1] for s in sender.sent] == [Channel.EMAIL]
    logs = {log.channel: log for log in await _logs(db)}
    assert logs[Channel.PUSH].suppressed is True
    assert logs[Channel.EMAIL].suppressed is False


# ── Failure isolation ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_failure_marks_only_that_row_failed(db):
    bad, good = uuid.uuid4(), uuid.uuid4()
    _, row_ids = await _queue(db, [bad, good])
    sender = FakeSender(fail_for=[bad])

    report = await _dispatcher(db, sender).tick(NOW)

    assert (report.sent, report.failed) == (1, 1)
    repo = SqlScheduledNotificationRepository(db)
    statuses = {(await repo.get(rid)).user_id: (await repo.get(rid)).status for rid in row_ids}
    assert statuses == {bad: Status.FAILED, good: Status.SENT}
    failed_log = next(log for log in await _logs(db) if log.user_id == bad)
    assert failed_log.status == DeliveryStatus.FAILED
    assert "mailbox unavailable" in failed_log.error_message


@pytest.mark.asyncio
async def test_unexpected_error_does_not_stop_the_batch(db):
    broken, good = uuid.uuid4(), uuid.uuid4()
    _, row_ids = await _queue(db, [broken, good])
    sender = FakeSender(crash_for=[broken])

    report = await _dispatcher(db, sender).tick(NOW)

    assert report.claimed == 2
    assert report.failed == 1
    assert report.sent == 1
    repo = SqlScheduledNotificationRepository(db)
    rows = [await repo.get(rid) for rid in row_ids]
    assert {r.user_id: r.status for r in rows} == {broken: Status.FAILED, good: Status.SENT}


# ── Deleted bookings ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reminder_for_deleted_booking_is_cancelled(db):
    user = uuid.uuid4()
    booking_id, [row_id] = await _queue(db, [user])
    schedules = SqlScheduleRepository(db)
    await schedules.delete(await schedules.get(booking_id))
    await db.commit()
    sender = FakeSender()

    report = await _dispatcher(db, sender).tick(NOW)

    assert report.cancelled == 1
    assert sender.sent == []
    assert (await SqlScheduledNotificationRepository(db).get(row_id)).status == Status.CANCELLED


@pytest.mark.asyncio
async def test_deletion_notice_still_goes_out(db):
    user = uuid.uuid4()
    booking_id, _ = await _queue(db, [user], category=NotificationCategory.SCHEDULE_DELETED)
    schedules = SqlScheduleRepository(db)
    await schedules.delete(await schedules.get(booking_id))
    await db.commit()
    sender = FakeSender()

    report = await _dispatcher(db, sender).tick(NOW)

    assert report.sent == 1
    assert sender.sent[0][2] == NotificationCategory.SCHEDULE_DELETED
