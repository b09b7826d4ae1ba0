"""
services/notification/senders.py
Outbound delivery: Resend for email, Firebase Cloud Messaging for push.

The dispatcher only knows the NotificationSender protocol. Each transport
sits behind its own circuit breaker so a provider outage fails fast
instead of stalling a whole dispatch batch.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple
from uuid import UUID

import pybreaker

from config.settings import settings
from shared.models.models import Channel, NotificationCategory

logger = logging.getLogger(__name__)


class SendError(Exception):
    """Delivery through one channel failed. Logged per attempt, never retried automatically."""
    pass


@dataclass(frozen=True)
class SendAck:
    channel: Channel
    provider_message_id: Optional[str] = None


class NotificationSender(Protocol):
    async def send(
        self,
        user_id: UUID,
        channel: Channel,
        category: NotificationCategory,
        payload: dict,
    ) -> SendAck: ...


# ── Templates ─────────────────────────────────────────────────

TEMPLATES = {
    NotificationCategory.SCHEDULE_REMINDER: {
        "subject": "Reminder: {title} at {start_local}",
        "body": "{title} starts in {offset_minutes} minutes ({start_local} – {end_local}).",
    },
    NotificationCategory.SCHEDULE_CREATED: {
        "subject": "New booking: {title}",
        "body": "You were added to {title} on {start_local} – {end_local}.",
    },
    NotificationCategory.SCHEDULE_UPDATED: {
        "subject": "Booking updated: {title}",
        "body": "{title} was changed and now takes place on {start_local} – {end_local}.",
    },
    NotificationCategory.SCHEDULE_DELETED: {
        "subject": "Booking cancelled: {title}",
        "body": "{title} on {start_local} has been cancelled.",
    },
}

DEFAULT_TEMPLATE = {"subject": "{title}", "body": "{title} ({start_local})"}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


def render_message(category: NotificationCategory, payload: dict) -> Tuple[str, str]:
    """(subject, body) for a category and payload."""
    tmpl = TEMPLATES.get(category, DEFAULT_TEMPLATE)
    return _render(tmpl["subject"], **payload), _render(tmpl["body"], **payload)


def _email_html(subject: str, body: str, link: Optional[str]) -> str:
    button = (
        f'<p><a href="{link}" style="color: #2563eb;">Open in scheduler</a></p>' if link else ""
    )
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <h2 style="color: #333;">{subject}</h2>
        <p style="color: #666; line-height: 1.6;">{body}</p>
        {button}
        <p style="color: #999; font-size: 12px; margin-top: 24px;">
            You can change which notifications you receive in your notification settings.
        </p>
    </div>
    """


# ── Default transport ─────────────────────────────────────────

class DeliverySender:
    """
    Looks up the recipient's delivery address in their preferences
    and hands the rendered message to the provider SDK.
    """

    def __init__(self, contacts, breakers: Optional[dict] = None):
        self.contacts = contacts
        self.breakers = breakers or {
            channel: pybreaker.CircuitBreaker(
                fail_max=settings.SENDER_BREAKER_FAIL_MAX,
                reset_timeout=settings.SENDER_BREAKER_RESET_SECONDS,
                name=f"notification-{channel.value.lower()}",
            )
            for channel in Channel
        }

    async def send(
        self,
        user_id: UUID,
        channel: Channel,
        category: NotificationCategory,
        payload: dict,
    ) -> SendAck:
        pref = await self.contacts.get(user_id)
        subject, body = render_message(category, payload)

        if channel == Channel.EMAIL:
            if not pref.contact_email:
                raise SendError(f"No email address for user {user_id}")
            func, args = _send_email, (pref.contact_email, subject, _email_html(subject, body, payload.get("url")))
        elif channel == Channel.PUSH:
            if not pref.push_token:
                raise SendError(f"No push token for user {user_id}")
            data = {"booking_id": payload.get("booking_id"), "category": category.value}
            func, args = _send_fcm, (pref.push_token, subject, body, data)
        else:
            raise SendError(f"Unsupported channel: {channel}")

        breaker = self.breakers[channel]
        try:
            message_id = await asyncio.to_thread(breaker.call, func, *args)
        except pybreaker.CircuitBreakerError:
            raise SendError(f"{channel.value} delivery temporarily disabled (circuit open)")
        except Exception as e:
            raise SendError(f"{channel.value} delivery failed: {e}") from e
        return SendAck(channel=channel, provider_message_id=message_id)


# ── Provider calls (blocking SDKs, run in a worker thread) ────

def _send_email(to_email: str, subject: str, html_body: str) -> Optional[str]:
    """Send transactional email via Resend. Returns the provider message id."""
    import resend

    resend.api_key = settings.RESEND_API_KEY
    response = resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [to_email],
        "subject": subject,
        "html": html_body,
    })
    if isinstance(response, dict):
        return response.get("id")
    return getattr(response, "id", None)


def _send_fcm(fcm_token: str, title: str, body: str, data: Optional[dict] = None) -> str:
    """Send FCM push notification. Returns the FCM message name."""
    import firebase_admin
    from firebase_admin import credentials, messaging

    if not firebase_admin._apps:
        cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)

    message = messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in (data or {}).items() if v is not None},
        token=fcm_token,
        android=messaging.AndroidConfig(priority="high"),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(badge=1, sound="default")
            )
        ),
    )
    return messaging.send(message)
