"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.signals import after_setup_logger, after_setup_task_logger

from config.log_config import configure_logging
from config.settings import settings

celery_app = Celery(
    "booking_scheduler",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.BUSINESS_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dead worker's task is redelivered.
    # Rows it had already claimed are recovered by release-stale-claims.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
    },

    # A tick must not run longer than the beat interval
    task_soft_time_limit=max(settings.DISPATCH_INTERVAL_SECONDS * 4, 60),

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Deliver every reminder and change notice whose due time has passed
    "dispatch-due-reminders": {
        "task": "tasks.notification_tasks.dispatch_due_reminders",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
        "options": {"expires": settings.DISPATCH_INTERVAL_SECONDS},
    },

    # Fail rows claimed by a worker that died mid-delivery
    "release-stale-claims": {
        "task": "tasks.notification_tasks.release_stale_claims",
        "schedule": 300,  # every 5 minutes
    },
}


@after_setup_logger.connect
@after_setup_task_logger.connect
def setup_json_logging(logger, *args, **kwargs):
    configure_logging(logger)
