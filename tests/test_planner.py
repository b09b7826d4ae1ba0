"""
tests/test_planner.py
Which reminders a booking needs and when they fall due.
"""

import uuid
from datetime import timedelta

from services.notification.planner import ReminderPlanner
from shared.models.models import Channel, NotificationCategory
from tests.conftest import make_booking, utc

U1, U2 = uuid.uuid4(), uuid.uuid4()
START = utc(2024, 6, 10, 1, 0)


def _reminder(offset, *channels):
    return {"offset_minutes": offset, "channels": [c.value for c in channels]}


def test_one_reminder_per_participant_and_offset():
    booking = make_booking(
        START, START + timedelta(hours=1), participants=[U1, U2],
        reminders=[_reminder(15, Channel.EMAIL), _reminder(60, Channel.PUSH)],
    )
    planned = ReminderPlanner().plan(booking, now=START - timedelta(days=1))

    assert len(planned) == 4
    assert {(p.user_id, p.offset_minutes) for p in planned} == {(U1, 15), (U1, 60), (U2, 15), (U2, 60)}
    fifteen = next(p for p in planned if p.user_id == U1 and p.offset_minutes == 15)
    assert fifteen.due_at == START - timedelta(minutes=15)
    assert fifteen.category == NotificationCategory.SCHEDULE_REMINDER
    assert fifteen.channels == frozenset({Channel.EMAIL})


def test_duplicate_offsets_merge_channels():
    booking = make_booking(
        START, START + timedelta(hours=1), participants=[U1],
        reminders=[_reminder(15, Channel.EMAIL), _reminder(15, Channel.PUSH)],
    )
    planned = ReminderPlanner().plan(booking, now=START - timedelta(days=1))
    assert len(planned) == 1
    assert planned[0].channels == frozenset({Channel.EMAIL, Channel.PUSH})


def test_reminders_already_due_in_the_past_are_skipped():
    booking = make_booking(
        START, START + timedelta(hours=1), participants=[U1],
        reminders=[_reminder(15, Channel.EMAIL), _reminder(0, Channel.EMAIL)],
    )
    planned = ReminderPlanner().plan(booking, now=START - timedelta(minutes=5))
    assert [p.offset_minutes for p in planned] == [0]


def test_reminder_due_exactly_now_is_kept():
    booking = make_booking(
        START, START + timedelta(hours=1), participants=[U1], reminders=[_reminder(15, Channel.EMAIL)]
    )
    planned = ReminderPlanner().plan(booking, now=START - timedelta(minutes=15))
    assert len(planned) == 1


def test_no_reminders_configured():
    booking = make_booking(START, START + timedelta(hours=1), participants=[U1])
    assert ReminderPlanner().plan(booking, now=START - timedelta(days=1)) == []


def test_notices_are_due_immediately_on_both_channels():
    booking = make_booking(START, START + timedelta(hours=1), participants=[U1, U2])
    now = START - timedelta(days=2)
    planned = ReminderPlanner().plan_notice(booking, NotificationCategory.SCHEDULE_CREATED, [U2, U2], now)

    assert len(planned) == 1
    assert planned[0].user_id == U2
    assert planned[0].due_at == now
    assert planned[0].channels == frozenset({Channel.EMAIL, Channel.PUSH})
