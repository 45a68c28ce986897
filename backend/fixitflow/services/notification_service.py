"""Notification service — fire-and-forget in-app and email notifications.

Subscription lifecycle operations call :meth:`NotificationService.notify` after
a state change. Delivery problems are logged and swallowed: a failed email must
never fail or roll back the subscription change that triggered it.
"""

import asyncio
import json
import logging
import smtplib
import uuid
from email.message import EmailMessage

from fixitflow.billing.clock import utcnow
from fixitflow.config import settings
from fixitflow.models.user import User
from fixitflow.stores import KeyValueStore, get_store

logger = logging.getLogger(__name__)

TEMPLATES: dict[str, dict[str, str]] = {
    "trial_started": {
        "subject": "Your FixItFlow Premium trial has started",
        "body": (
            "Hi {first_name},\n\n"
            "Your {days}-day Premium trial is active until {end_date}. "
            "Enjoy AI chat, video assistance and all premium guides.\n\n"
            "The FixItFlow team"
        ),
    },
    "subscription_confirmation": {
        "subject": "Welcome to {plan_name}",
        "body": (
            "Hi {first_name},\n\n"
            "Thanks for subscribing to {plan_name}. Your access runs until {end_date}.\n\n"
            "The FixItFlow team"
        ),
    },
    "subscription_renewed": {
        "subject": "Your {plan_name} subscription was renewed",
        "body": (
            "Hi {first_name},\n\n"
            "Your {plan_name} subscription has been renewed until {end_date}.\n\n"
            "The FixItFlow team"
        ),
    },
    "subscription_expiring": {
        "subject": "Your {plan_name} subscription expires in {days} days",
        "body": (
            "Hi {first_name},\n\n"
            "Your {plan_name} access ends on {end_date}. Renew to keep premium features.\n\n"
            "The FixItFlow team"
        ),
    },
    "subscription_expired": {
        "subject": "Your FixItFlow Premium access has ended",
        "body": (
            "Hi {first_name},\n\n"
            "Your premium access ended on {end_date}. You can upgrade again at any time.\n\n"
            "The FixItFlow team"
        ),
    },
    "subscription_cancelled": {
        "subject": "Your FixItFlow subscription was cancelled",
        "body": (
            "Hi {first_name},\n\n"
            "Your subscription has been cancelled and your account is back on the Free plan.\n\n"
            "The FixItFlow team"
        ),
    },
    "payment_failed": {
        "subject": "Payment failed - FixItFlow",
        "body": (
            "Hi {first_name},\n\n"
            "We could not process your payment of {amount}. Please update your billing "
            "details at {retry_url}. Your access stays active while we retry.\n\n"
            "The FixItFlow team"
        ),
    },
    "usage_limit_reached": {
        "subject": "You reached today's {capability} limit",
        "body": (
            "Hi {first_name},\n\n"
            "You have used all {limit} free {capability} for today. "
            "Upgrade to Premium for unlimited access.\n\n"
            "The FixItFlow team"
        ),
    },
}

# Templates that are only shown in-app
IN_APP_ONLY = {"usage_limit_reached"}


class _SafeDict(dict):
    """Leave unknown placeholders visible instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(template_key: str, context: dict) -> tuple[str, str]:
    """Render ``(subject, body)`` for a template key."""
    template = TEMPLATES[template_key]
    values = _SafeDict({k: str(v) for k, v in context.items()})
    return template["subject"].format_map(values), template["body"].format_map(values)


def _send_smtp(message: EmailMessage) -> None:
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as smtp:
        smtp.starttls()
        if settings.smtp_username:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(message)


class NotificationService:
    """Delivers lifecycle notifications to the in-app feed and by email."""

    def __init__(self, store: KeyValueStore | None = None):
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    @staticmethod
    def feed_key(user_id: uuid.UUID | str) -> str:
        return f"notifications:{user_id}"

    async def notify(self, user: User, template_key: str, data: dict | None = None) -> None:
        """Send ``template_key`` to ``user``. Never raises."""
        context = {"first_name": user.first_name or "there", **(data or {})}
        try:
            subject, body = render(template_key, context)
            entry = {
                "id": uuid.uuid4().hex,
                "type": template_key,
                "title": subject,
                "message": body,
                "data": {k: str(v) for k, v in (data or {}).items()},
                "created_at": utcnow().isoformat(),
                "read": False,
            }
            await self.store.push(
                self.feed_key(user.id),
                json.dumps(entry),
                ttl_seconds=settings.notification_ttl_days * 86400,
            )
            if template_key not in IN_APP_ONLY:
                await self._send_email(user.email, subject, body)
            logger.info("Sent %s notification to user %s", template_key, user.id)
        except Exception:
            logger.exception("Failed to deliver %s notification to user %s", template_key, user.id)

    async def _send_email(self, to: str, subject: str, body: str) -> None:
        if not settings.smtp_host:
            logger.info("SMTP not configured; email %r to %s not sent", subject, to)
            return
        message = EmailMessage()
        message["From"] = settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        await asyncio.to_thread(_send_smtp, message)

    async def list_for_user(self, user_id: uuid.UUID, limit: int = 50) -> list[dict]:
        raw = await self.store.list(self.feed_key(user_id), limit=limit)
        return [json.loads(item) for item in raw]


_notifier: NotificationService | None = None


def get_notifier() -> NotificationService:
    """Return the process-wide notification service."""
    global _notifier
    if _notifier is None:
        _notifier = NotificationService()
    return _notifier
