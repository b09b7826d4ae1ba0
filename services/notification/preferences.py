"""
services/notification/preferences.py
Per-user delivery preferences: the send-time filter and the store.

Suppression happens at send time and is never deferred: a reminder that
falls inside quiet hours is recorded as suppressed and not resent later.
"""

from datetime import datetime, time
from typing import Optional, Protocol
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import Channel, NotificationCategory, NotificationPreference

CHANNEL_DISABLED = "channel_disabled"
CATEGORY_DISABLED = "category_disabled"
QUIET_HOURS = "quiet_hours"


def in_quiet_hours(start: time, end: time, at: time) -> bool:
    """[start, end) on the wall clock; start > end wraps past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= at < end
    return at >= start or at < end


class PreferenceFilter:
    def __init__(self, default_tz: Optional[ZoneInfo] = None):
        self.default_tz = default_tz or settings.business_tz

    def suppression_reason(
        self,
        pref: NotificationPreference,
        channel: Channel,
        category: NotificationCategory,
        now: datetime,
    ) -> Optional[str]:
        if not pref.channel_enabled(channel):
            return CHANNEL_DISABLED
        if not pref.category_enabled(channel, category):
            return CATEGORY_DISABLED
        quiet = pref.quiet_hours
        if quiet:
            zone = ZoneInfo(pref.timezone) if pref.timezone else self.default_tz
            local = now.astimezone(zone).time().replace(tzinfo=None)
            if in_quiet_hours(quiet[0], quiet[1], local):
                return QUIET_HOURS
        return None

    def should_suppress(
        self,
        pref: NotificationPreference,
        channel: Channel,
        category: NotificationCategory,
        now: datetime,
    ) -> bool:
        return self.suppression_reason(pref, channel, category, now) is not None


class PreferenceStore(Protocol):
    async def get(self, user_id: UUID) -> NotificationPreference: ...


class SqlPreferenceStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(self, user_id: UUID) -> Optional[NotificationPreference]:
        result = await self.session.execute(
            select(NotificationPreference).where(NotificationPreference.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get(self, user_id: UUID) -> NotificationPreference:
        """Stored preferences, or an unsaved defaults instance."""
        return await self.find(user_id) or NotificationPreference.defaults(user_id)

    async def get_or_create(self, user_id: UUID) -> NotificationPreference:
        pref = await self.find(user_id)
        if pref is None:
            pref = NotificationPreference.defaults(user_id)
            self.session.add(pref)
            await self.session.flush()
        return pref
