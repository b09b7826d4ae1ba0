"""
services/booking/locks.py
Mutual exclusion around check-then-insert.

Two requests that could conflict (same participant, same resource, or the
same day under a global cap) must not both pass their checks before either
one writes. Callers hold the lock keys for every affected business day while
they query, check and insert inside one database transaction.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Iterable, Protocol

from fastapi import Depends
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_exponential

from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.booking.exceptions import BookingLockTimeout

logger = logging.getLogger(__name__)


class BookingLock(Protocol):
    def hold(self, keys: Iterable[str]) -> "AsyncIterator[None]":
        ...


def lock_keys_for(candidate, days: Iterable[date], include_day_key: bool) -> set:
    keys = set()
    for day in days:
        stamp = day.isoformat()
        if include_day_key:
            keys.add(f"booking_lock:day:{stamp}")
        for participant in candidate.participant_ids:
            keys.add(f"booking_lock:participant:{participant}:{stamp}")
        for resource in candidate.resource_refs:
            keys.add(f"booking_lock:resource:{resource.kind.value}:{resource.id}:{stamp}")
    return keys


class RedisBookingLock:
    """SET NX locks, taken in sorted order and released by token."""

    def __init__(
        self,
        cache: RedisCache,
        ttl_seconds: int = settings.BOOKING_LOCK_TTL_SECONDS,
        wait_seconds: float = settings.BOOKING_LOCK_WAIT_SECONDS,
    ):
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds

    async def _acquire(self, key: str, token: str) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_delay(self.wait_seconds),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            retry=retry_if_result(lambda acquired: acquired is False),
        )
        try:
            await retrying(self.cache.acquire_lock, key, token, self.ttl_seconds)
        except RetryError:
            logger.warning(f"Timed out waiting for booking lock {key}")
            raise BookingLockTimeout(f"Booking lock busy: {key}")

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        token = uuid.uuid4().hex
        held = []
        try:
            # Sorted acquisition keeps two writers from deadlocking on each other
            for key in sorted(set(keys)):
                await self._acquire(key, token)
                held.append(key)
            yield
        finally:
            for key in reversed(held):
                if not await self.cache.release_lock(key, token):
                    logger.warning(f"Booking lock {key} expired before release")


def get_booking_lock(redis=Depends(get_redis)) -> BookingLock:
    """FastAPI dependency."""
    return RedisBookingLock(RedisCache(redis))
