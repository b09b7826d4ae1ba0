"""
services/booking/repository.py
Persistence for bookings. Soft-deleted rows are invisible to queries
but stay loadable by id so notices can still describe them.
"""

from datetime import datetime
from typing import List, Optional, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Booking, ResourceRef
from shared.utils.time_window import utcnow


class ScheduleRepository(Protocol):
    async def query(self, start: datetime, end: datetime) -> List[Booking]: ...
    async def get(self, booking_id: UUID, include_deleted: bool = False) -> Optional[Booking]: ...
    async def insert(self, booking: Booking) -> Booking: ...
    async def update(self, booking: Booking) -> Booking: ...
    async def delete(self, booking: Booking) -> Booking: ...
    async def commit(self) -> None: ...


class SqlScheduleRepository:
    """Writes flush only; the service commits once its checks and writes are done."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def query(self, start: datetime, end: datetime) -> List[Booking]:
        """Live bookings whose window overlaps [start, end)."""
        result = await self.session.execute(
            select(Booking)
            .where(
                Booking.deleted_at.is_(None),
                Booking.start_time < end,
                Booking.end_time > start,
            )
            .order_by(Booking.start_time, Booking.id)
        )
        return list(result.scalars().all())

    async def get(self, booking_id: UUID, include_deleted: bool = False) -> Optional[Booking]:
        stmt = select(Booking).where(Booking.id == booking_id)
        if not include_deleted:
            stmt = stmt.where(Booking.deleted_at.is_(None))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def update(self, booking: Booking) -> Booking:
        await self.session.flush()
        return booking

    async def delete(self, booking: Booking) -> Booking:
        booking.deleted_at = utcnow()
        await self.session.flush()
        return booking

    async def commit(self) -> None:
        """Called by the service before it releases its booking locks."""
        await self.session.commit()

    async def list_visible(
        self,
        start: datetime,
        end: datetime,
        user_id: Optional[UUID] = None,
        resource: Optional[ResourceRef] = None,
    ) -> List[Booking]:
        """
        Range listing for the API. `user_id` keeps bookings the user created
        or takes part in; `resource` keeps bookings holding that resource.
        JSON membership is filtered here to stay portable across databases.
        """
        bookings = await self.query(start, end)
        if user_id is not None:
            bookings = [b for b in bookings if b.involves(user_id)]
        if resource is not None:
            bookings = [b for b in bookings if resource in b.resource_refs]
        return bookings
