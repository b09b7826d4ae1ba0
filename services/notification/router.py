"""
services/notification/router.py
Notification inbox, per-user delivery preferences, and the reminder queue.

Delivery itself happens in the Celery dispatcher (tasks/notification_tasks.py);
these endpoints only read the log and edit what the dispatcher consults.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.notification.preferences import SqlPreferenceStore
from services.notification.repository import (
    RequeueOutcome,
    SqlNotificationLogRepository,
    SqlScheduledNotificationRepository,
)
from shared.middleware.auth import TokenData, get_current_user, require_admin
from shared.models.models import NotificationPreference, ScheduledNotificationStatus
from shared.schemas.schemas import (
    MessageResponse,
    NotificationPreferenceResponse,
    NotificationPreferenceUpdate,
    NotificationResponse,
    PaginatedResponse,
    ScheduledNotificationResponse,
)
from shared.utils.time_window import utcnow

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _preference_response(pref: NotificationPreference) -> NotificationPreferenceResponse:
    response = NotificationPreferenceResponse.model_validate(pref)
    response.has_push_token = bool(pref.push_token)
    return response


# ── Inbox ─────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Delivered (and suppressed) notifications for the caller, newest first."""
    items, total, pages = await SqlNotificationLogRepository(db).list_for_user(
        current_user.user_id, unread_only=unread_only, page=page, page_size=page_size
    )
    return PaginatedResponse(
        items=[NotificationResponse.model_validate(n) for n in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.get("/unread-count")
async def unread_count(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await SqlNotificationLogRepository(db).unread_count(current_user.user_id)
    return {"unread_count": count}


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await SqlNotificationLogRepository(db).mark_all_read(current_user.user_id, utcnow())
    await db.commit()
    return MessageResponse(message=f"{updated} notification(s) marked as read")


# ── Preferences ───────────────────────────────────────────────

@router.get("/preferences", response_model=NotificationPreferenceResponse)
async def get_preferences(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Stored preferences, or the defaults if the user never saved any."""
    pref = await SqlPreferenceStore(db).get(current_user.user_id)
    return _preference_response(pref)


@router.put("/preferences", response_model=NotificationPreferenceResponse)
async def update_preferences(
    data: NotificationPreferenceUpdate,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Partial update; omitted fields keep their stored value."""
    changes = data.model_dump(exclude_unset=True)

    pref = await SqlPreferenceStore(db).get_or_create(current_user.user_id)
    for field, value in changes.items():
        setattr(pref, field, value)

    # Validated after merging so a partial update can rely on stored times
    if pref.quiet_hours_enabled and (pref.quiet_hours_start is None or pref.quiet_hours_end is None):
        raise HTTPException(
            status_code=422,
            detail="quiet_hours_start and quiet_hours_end are required when quiet hours are enabled",
        )

    await db.commit()
    return _preference_response(pref)


# ── Reminder queue ────────────────────────────────────────────

@router.get("/scheduled", response_model=List[ScheduledNotificationResponse])
async def list_scheduled(
    status: Optional[ScheduledNotificationStatus] = Query(ScheduledNotificationStatus.PENDING),
    user_id: Optional[UUID] = Query(None, description="Admins only: another user's queue"),
    limit: int = Query(50, ge=1, le=200),
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Queued notifications for the caller, soonest first."""
    target = current_user.user_id
    if user_id is not None and user_id != current_user.user_id:
        if not current_user.is_admin:
            raise HTTPException(status_code=403, detail="Only admins can view other users' queues")
        target = user_id

    rows = await SqlScheduledNotificationRepository(db).list_for_user(target, status=status, limit=limit)
    return [ScheduledNotificationResponse.model_validate(r) for r in rows]


@router.post("/scheduled/{notification_id}/retry", response_model=MessageResponse)
async def retry_scheduled(
    notification_id: UUID,
    admin: TokenData = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Put a FAILED notification back in the queue, due now."""
    outcome = await SqlScheduledNotificationRepository(db).requeue_failed(notification_id, utcnow())
    if outcome == RequeueOutcome.NOT_FAILED:
        raise HTTPException(status_code=404, detail="No failed notification with that id")
    if outcome == RequeueOutcome.SUPERSEDED:
        raise HTTPException(
            status_code=409,
            detail="The booking has changed since this notification failed; it will not be resent",
        )
    await db.commit()
    return MessageResponse(message="Notification requeued")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    found = await SqlNotificationLogRepository(db).mark_read(current_user.user_id, notification_id, utcnow())
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return MessageResponse(message="Marked as read")
