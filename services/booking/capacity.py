"""
services/booking/capacity.py
Daily booking caps, counted per local business day.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from config.settings import settings
from services.booking.exceptions import DailyCapacityError
from shared.models.models import ResourceKind
from shared.utils.time_window import local_date


def would_exceed_daily_cap(
    candidate_start: datetime,
    existing_bookings: Iterable,
    cap: int,
    tz: Optional[ZoneInfo] = None,
) -> bool:
    """True when the candidate's business day already holds `cap` bookings."""
    day = local_date(candidate_start, tz)
    count = sum(1 for b in existing_bookings if local_date(b.window.start, tz) == day)
    return count >= cap


class CapacityLimiter:
    """
    Applies the daily cap with a configurable scope.

    "global" counts every booking of the day (one shared budget for the
    whole organisation). "resource" counts, per resource of the candidate,
    only the bookings holding that same resource, against the cap for its
    kind; candidates without resources are not capped in that scope.
    """

    def __init__(
        self,
        default_cap: int,
        scope: str = "global",
        caps_by_kind: Optional[Dict[ResourceKind, int]] = None,
        tz: Optional[ZoneInfo] = None,
    ):
        if scope not in ("global", "resource"):
            raise ValueError(f"Unknown capacity scope: {scope}")
        self.default_cap = default_cap
        self.scope = scope
        self.caps_by_kind = caps_by_kind or {}
        self.tz = tz or settings.business_tz

    @classmethod
    def from_settings(cls) -> "CapacityLimiter":
        return cls(
            default_cap=settings.DAILY_BOOKING_CAP,
            scope=settings.CAPACITY_SCOPE,
            caps_by_kind={
                ResourceKind(kind.upper()): cap
                for kind, cap in settings.DAILY_CAP_BY_RESOURCE_KIND.items()
            },
        )

    def cap_for(self, kind: ResourceKind) -> int:
        return self.caps_by_kind.get(kind, self.default_cap)

    def check(self, candidate, existing_bookings: Iterable, exclude_id: Optional[UUID] = None) -> None:
        """Raise DailyCapacityError if adding `candidate` would break the cap."""
        others = [b for b in existing_bookings if exclude_id is None or b.id != exclude_id]
        start = candidate.window.start

        if self.scope == "global":
            if would_exceed_daily_cap(start, others, self.default_cap, self.tz):
                raise DailyCapacityError(local_date(start, self.tz), self.default_cap)
            return

        for resource in sorted(candidate.resource_refs, key=lambda r: (r.kind.value, r.id)):
            holders = [b for b in others if resource in b.resource_refs]
            cap = self.cap_for(resource.kind)
            if would_exceed_daily_cap(start, holders, cap, self.tz):
                raise DailyCapacityError(local_date(start, self.tz), cap, resource)
