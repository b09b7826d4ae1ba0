"""
services/booking/exceptions.py
Booking service errors. Routers translate these to HTTP responses.
"""

class BookingServiceError(Exception):
    """Base exception for booking service errors."""
    pass

class BookingNotFoundError(BookingServiceError):
    """Booking not found (or already deleted)."""
    pass

class BookingValidationError(BookingServiceError):
    """Request is malformed: end before start, no participants, bad recurrence."""
    pass

class BookingPermissionError(BookingServiceError):
    """Caller may not modify this booking."""
    pass

class DailyCapacityError(BookingServiceError):
    """The business day already holds the maximum number of bookings."""

    def __init__(self, day, cap: int, resource=None):
        self.day = day
        self.cap = cap
        self.resource = resource
        scope = f" for {resource.kind.value.lower()} {resource.id}" if resource else ""
        super().__init__(f"Daily booking limit of {cap} reached on {day.isoformat()}{scope}")

class BookingLockTimeout(BookingServiceError):
    """Could not acquire the booking lock in time; safe to retry."""
    pass
