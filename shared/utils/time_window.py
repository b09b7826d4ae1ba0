"""
shared/utils/time_window.py
Half-open time intervals and business-day helpers.

All instants inside the service are timezone-aware UTC. Naive datetimes
coming from clients are read as business-timezone wall-clock time.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from config.settings import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """Normalise to an aware UTC datetime."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz or settings.business_tz)
    return value.astimezone(timezone.utc)


def local_date(instant: datetime, tz: Optional[ZoneInfo] = None) -> date:
    """Calendar date of an instant in the business timezone."""
    return ensure_utc(instant).astimezone(tz or settings.business_tz).date()


def local_day_bounds(day: date, tz: Optional[ZoneInfo] = None) -> Tuple[datetime, datetime]:
    """UTC [start, end) of a local business day."""
    zone = tz or settings.business_tz
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end). Touching windows do not overlap."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end <= self.start:
            raise ValueError("end must be after start")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeWindow") -> bool:
        return overlaps(self, other)

    def contains(self, instant: datetime) -> bool:
        instant = ensure_utc(instant)
        return self.start <= instant < self.end

    def shifted_to(self, start: datetime) -> "TimeWindow":
        """Same duration, new start."""
        return TimeWindow(start, ensure_utc(start) + self.duration)

    def local_dates(self, tz: Optional[ZoneInfo] = None) -> list[date]:
        """Every business day the window touches."""
        first = local_date(self.start, tz)
        last = local_date(self.end - timedelta(microseconds=1), tz)
        return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    return a.start < b.end and b.start < a.end
