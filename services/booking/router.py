"""
services/booking/router.py
Shared-resource bookings: create (optionally recurring), preview conflicts,
list by range, update and delete.

A booking that conflicts with existing ones is not written unless the
caller resubmits with ?force=true; the 409 body lists every conflict.
Service errors are translated to HTTP responses by the handlers in main.py.
"""

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.locks import BookingLock, get_booking_lock
from services.booking.repository import SqlScheduleRepository
from services.booking.service import BookingService, OccurrenceConflict
from services.notification.preferences import SqlPreferenceStore
from services.notification.repository import SqlScheduledNotificationRepository
from shared.middleware.auth import TokenData, get_current_user
from shared.models.models import ResourceKind, ResourceRef
from shared.schemas.schemas import (
    BookingConflictResponse,
    BookingCreateRequest,
    BookingCreateResponse,
    BookingResponse,
    BookingUpdateRequest,
    ConflictingBookingSchema,
    MessageResponse,
    OccurrenceConflictSchema,
    ResourceRefSchema,
    ScheduledNotificationResponse,
)
from shared.utils.time_window import ensure_utc

router = APIRouter(prefix="/bookings", tags=["Bookings"])

MAX_LIST_RANGE = timedelta(days=92)


# ── Helpers ───────────────────────────────────────────────────

def get_booking_service(
    db: AsyncSession = Depends(get_db),
    lock: BookingLock = Depends(get_booking_lock),
) -> BookingService:
    return BookingService(
        schedules=SqlScheduleRepository(db),
        notifications=SqlScheduledNotificationRepository(db),
        preferences=SqlPreferenceStore(db),
        lock=lock,
    )


def _conflict_schemas(report: List[OccurrenceConflict]) -> List[OccurrenceConflictSchema]:
    return [
        OccurrenceConflictSchema(
            start_time=item.window.start,
            end_time=item.window.end,
            conflicts=[
                ConflictingBookingSchema(
                    id=c.booking.id,
                    title=c.booking.title,
                    start_time=c.booking.start_time,
                    end_time=c.booking.end_time,
                    shared_participants=sorted(c.shared_participants, key=str),
                    shared_resources=[
                        ResourceRefSchema(kind=r.kind, id=r.id)
                        for r in sorted(c.shared_resources, key=lambda r: (r.kind.value, r.id))
                    ],
                )
                for c in item.conflicts
            ],
        )
        for item in report
    ]


def _conflict_response(report: List[OccurrenceConflict]) -> JSONResponse:
    body = BookingConflictResponse(conflicts=_conflict_schemas(report))
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json"))


# ── Create / Preview ──────────────────────────────────────────

@router.post(
    "",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": BookingConflictResponse}},
)
async def create_booking(
    data: BookingCreateRequest,
    force: bool = Query(False, description="Book even if the slot conflicts"),
    current_user: TokenData = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """
    Create a booking. With a recurrence rule, one booking is created per
    occurrence and they share a series_id. All or nothing: a capacity
    violation on any occurrence rejects the whole request.
    """
    outcome = await service.create(data, current_user.user_id, force=force)
    if not outcome.accepted:
        return _conflict_response(outcome.conflicts)

    return BookingCreateResponse(
        bookings=[BookingResponse.model_validate(b) for b in outcome.bookings],
        forced=outcome.forced,
        conflicts=_conflict_schemas(outcome.conflicts),
    )


@router.post("/conflicts", response_model=List[OccurrenceConflictSchema])
async def check_conflicts(
    data: BookingCreateRequest,
    exclude_id: Optional[UUID] = Query(None, description="Booking being edited"),
    current_user: TokenData = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Dry run: report conflicts for a prospective booking without saving."""
    report = await service.check(data, current_user.user_id, exclude_id=exclude_id)
    return _conflict_schemas(report)


# ── Read ──────────────────────────────────────────────────────

@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    start: datetime = Query(...),
    end: datetime = Query(...),
    mine: bool = Query(False, description="Only bookings I created or take part in"),
    participant: Optional[UUID] = Query(None),
    resource_kind: Optional[ResourceKind] = Query(None),
    resource_id: Optional[str] = Query(None),
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    range_start = ensure_utc(start, settings.business_tz)
    range_end = ensure_utc(end, settings.business_tz)
    if range_end <= range_start:
        raise HTTPException(status_code=422, detail="end must be after start")
    if range_end - range_start > MAX_LIST_RANGE:
        raise HTTPException(status_code=422, detail=f"Range may span at most {MAX_LIST_RANGE.days} days")
    if (resource_kind is None) != (resource_id is None):
        raise HTTPException(status_code=422, detail="resource_kind and resource_id go together")

    user_id = current_user.user_id if mine else participant
    resource = ResourceRef(resource_kind, resource_id) if resource_kind else None

    bookings = await SqlScheduleRepository(db).list_visible(
        range_start, range_end, user_id=user_id, resource=resource
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await SqlScheduleRepository(db).get(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/notifications", response_model=List[ScheduledNotificationResponse])
async def list_booking_notifications(
    booking_id: UUID,
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Planned and delivered notifications for one booking."""
    booking = await SqlScheduleRepository(db).get(booking_id, include_deleted=True)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    if not current_user.is_admin and not booking.involves(current_user.user_id):
        raise HTTPException(status_code=403, detail="Not your booking")

    rows = await SqlScheduledNotificationRepository(db).list_for_booking(booking_id)
    return [ScheduledNotificationResponse.model_validate(r) for r in rows]


# ── Update / Delete ───────────────────────────────────────────

@router.put(
    "/{booking_id}",
    response_model=BookingCreateResponse,
    responses={409: {"model": BookingConflictResponse}},
)
async def update_booking(
    booking_id: UUID,
    data: BookingUpdateRequest,
    force: bool = Query(False),
    current_user: TokenData = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """Replace one booking. Other occurrences of its series are unchanged."""
    outcome = await service.update(
        booking_id, data, current_user.user_id, force=force, is_admin=current_user.is_admin
    )
    if not outcome.accepted:
        return _conflict_response(outcome.conflicts)

    return BookingCreateResponse(
        bookings=[BookingResponse.model_validate(b) for b in outcome.bookings],
        forced=outcome.forced,
        conflicts=_conflict_schemas(outcome.conflicts),
    )


@router.delete("/{booking_id}", response_model=MessageResponse)
async def delete_booking(
    booking_id: UUID,
    current_user: TokenData = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    await service.delete(booking_id, current_user.user_id, is_admin=current_user.is_admin)
    return MessageResponse(message="Booking deleted")
