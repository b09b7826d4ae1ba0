"""
tasks/notification_tasks.py
Celery beat tasks that drive reminder delivery.

Each run claims due rows before sending, so two workers never deliver
the same scheduled notification. Failures in one row never block the rest.
"""

import asyncio
import logging
from dataclasses import asdict

import pybreaker

from config.database import create_worker_sessionmaker
from config.settings import settings
from services.booking.repository import SqlScheduleRepository
from services.notification.dispatcher import NotificationDispatcher
from services.notification.preferences import SqlPreferenceStore
from services.notification.repository import (
    SqlNotificationLogRepository,
    SqlScheduledNotificationRepository,
)
from services.notification.senders import DeliverySender
from shared.models.models import Channel
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

# Breakers live for the worker process so an outage trips them across ticks
_breakers = {
    channel: pybreaker.CircuitBreaker(
        fail_max=settings.SENDER_BREAKER_FAIL_MAX,
        reset_timeout=settings.SENDER_BREAKER_RESET_SECONDS,
        name=f"notification-{channel.value.lower()}",
    )
    for channel in Channel
}


def _build_dispatcher(session) -> NotificationDispatcher:
    preferences = SqlPreferenceStore(session)
    return NotificationDispatcher(
        notifications=SqlScheduledNotificationRepository(session),
        logs=SqlNotificationLogRepository(session),
        schedules=SqlScheduleRepository(session),
        preferences=preferences,
        sender=DeliverySender(preferences, breakers=_breakers),
        worker_id=settings.WORKER_NAME,
    )


async def _dispatch_once() -> dict:
    engine, Session = create_worker_sessionmaker()
    try:
        async with Session() as session:
            report = await _build_dispatcher(session).tick()
        return asdict(report)
    finally:
        await engine.dispose()


async def _release_once() -> int:
    engine, Session = create_worker_sessionmaker()
    try:
        async with Session() as session:
            return await _build_dispatcher(session).release_stale_claims()
    finally:
        await engine.dispose()


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task
def dispatch_due_reminders():
    """
    Beat task: runs every DISPATCH_INTERVAL_SECONDS.
    Claims up to DISPATCH_BATCH_SIZE due rows and delivers them.
    """
    try:
        return asyncio.run(_dispatch_once())
    except Exception as e:
        logger.exception(f"dispatch_due_reminders failed: {e}")
        return None


@celery_app.task
def release_stale_claims():
    """
    Beat task: runs every 5 minutes.
    A row left CLAIMED longer than CLAIM_TIMEOUT_SECONDS belongs to a dead
    worker; it is marked FAILED so an admin can requeue it.
    """
    try:
        return asyncio.run(_release_once())
    except Exception as e:
        logger.exception(f"release_stale_claims failed: {e}")
        return None
