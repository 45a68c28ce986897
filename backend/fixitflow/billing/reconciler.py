"""Webhook reconciler — applies authenticated provider events to subscriptions.

Each event is applied at most once: a row in ``processed_webhook_events`` is
inserted (unique on provider + event id) in the same transaction as the state
change, before any handler runs. A redelivery finds the row and is skipped; a
failed application rolls the row back so the provider's retry is processed.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.errors import UnknownEventError, ValidationError
from fixitflow.billing.plans import get_plan
from fixitflow.billing.providers import get_provider
from fixitflow.billing.providers.base import EventKind, ProviderEvent, ProviderName
from fixitflow.config import settings
from fixitflow.models.subscription import Subscription
from fixitflow.models.user import User
from fixitflow.models.webhook_event import ProcessedWebhookEvent
from fixitflow.services import subscription_service
from fixitflow.services.notification_service import get_notifier

logger = logging.getLogger(__name__)

# Provider-native statuses on update events
_TERMINAL_STATUSES = {"canceled", "cancelled", "expired", "incomplete_expired"}
_LIVE_STATUSES = {"active", "trialing"}


@dataclass
class ReconcileResult:
    provider: str
    event_id: str | None
    event_type: str | None
    status: str  # applied, duplicate, ignored, unmatched, skipped, notified, recorded, rejected
    detail: str | None = None


async def _find_subscription(db: AsyncSession, event: ProviderEvent) -> Subscription | None:
    """Locate the subscription an event refers to: provider object, then our user id, then customer."""
    outcome = event.outcome
    if outcome.object_id:
        subscription = await subscription_service.get_subscription_by_provider_object(
            db, event.provider, outcome.object_id
        )
        if subscription is not None:
            return subscription
    subscription = await subscription_service.get_subscription_for_user_ref(db, outcome.user_ref)
    if subscription is not None:
        return subscription
    if event.provider == ProviderName.STRIPE.value and outcome.customer_id:
        return await subscription_service.get_subscription_by_stripe_customer(db, outcome.customer_id)
    return None


def _is_current_object(subscription: Subscription, event: ProviderEvent) -> bool:
    field = subscription_service.PROVIDER_ID_FIELDS[event.provider]
    return event.outcome.object_id is not None and getattr(subscription, field) == event.outcome.object_id


async def _grant_or_renew(db: AsyncSession, subscription: Subscription, event: ProviderEvent) -> str:
    outcome = event.outcome
    if subscription.status == "active" and _is_current_object(subscription, event) and (
        outcome.plan is None or outcome.plan == subscription.plan
    ):
        if outcome.period_end is not None:
            await subscription_service.renew(db, subscription, outcome.period_end)
        return "applied"
    await subscription_service.grant_paid(db, subscription, outcome)
    return "applied"


async def handle_grant(db: AsyncSession, event: ProviderEvent) -> str:
    subscription = await _find_subscription(db, event)
    if subscription is None:
        logger.warning(
            "No local subscription for %s object %s (event %s)",
            event.provider,
            event.outcome.object_id,
            event.event_id,
        )
        return "unmatched"
    status = event.outcome.status
    if status is not None and status not in _LIVE_STATUSES:
        # incomplete: payment still pending, the later live update grants
        logger.info(
            "Subscription %s provider status %s on %s, not granting", subscription.id, status, event.event_type
        )
        return "skipped"
    await subscription_service.grant_paid(db, subscription, event.outcome)
    return "applied"


async def handle_update(db: AsyncSession, event: ProviderEvent) -> str:
    subscription = await _find_subscription(db, event)
    if subscription is None:
        logger.warning("No local subscription for %s object %s (update)", event.provider, event.outcome.object_id)
        return "unmatched"

    status = event.outcome.status
    if status in _TERMINAL_STATUSES:
        if not _is_current_object(subscription, event):
            return "skipped"
        await subscription_service.cancel(db, subscription, strict=False)
        return "applied"
    if status in _LIVE_STATUSES:
        return await _grant_or_renew(db, subscription, event)

    # past_due, unpaid, suspended: the provider is retrying, access is left as is
    logger.info("Subscription %s provider status %s, no change", subscription.id, status)
    return "skipped"


async def handle_revoke(db: AsyncSession, event: ProviderEvent) -> str:
    if not event.outcome.object_id:
        return "unmatched"
    subscription = await subscription_service.get_subscription_by_provider_object(
        db, event.provider, event.outcome.object_id
    )
    if subscription is None:
        logger.warning("No local subscription for %s object %s (revoke)", event.provider, event.outcome.object_id)
        return "unmatched"
    await subscription_service.cancel(db, subscription, strict=False)
    return "applied"


async def handle_payment_succeeded(db: AsyncSession, event: ProviderEvent) -> str:
    subscription = await _find_subscription(db, event)
    plan = event.outcome.plan or (subscription.plan if subscription else "free")
    if event.payment_id:
        await subscription_service.record_payment(
            db,
            provider=event.provider,
            provider_payment_id=event.payment_id,
            plan=plan,
            amount_cents=event.amount_cents,
            currency=event.currency,
            user_id=subscription.user_id if subscription else None,
            description=f"{get_plan(plan).display_name} subscription payment",
        )
    if subscription is None:
        logger.warning("Payment %s for unknown %s object %s", event.payment_id, event.provider, event.outcome.object_id)
        return "unmatched"
    return await _grant_or_renew(db, subscription, event)


async def handle_payment_failed(db: AsyncSession, event: ProviderEvent) -> str:
    """Notify only. Access is not revoked; the provider's retries are the grace period."""
    subscription = await _find_subscription(db, event)
    if subscription is None:
        logger.warning("Payment failure for unknown %s object %s", event.provider, event.outcome.object_id)
        return "unmatched"

    amount = f"${event.amount_cents / 100:.2f}" if event.amount_cents is not None else "your subscription fee"
    await get_notifier().notify(
        await db.get(User, subscription.user_id),
        "payment_failed",
        {"amount": amount, "retry_url": f"{settings.frontend_url}/subscription"},
    )
    logger.info("Payment failed for subscription %s; user notified", subscription.id)
    return "notified"


async def handle_anonymous_purchase(db: AsyncSession, event: ProviderEvent) -> str:
    """One-time anonymous purchase: revenue only, the token is minted for the buyer's browser."""
    plan = event.outcome.plan or "daily"
    if event.payment_id:
        await subscription_service.record_payment(
            db,
            provider=event.provider,
            provider_payment_id=event.payment_id,
            plan=plan,
            amount_cents=event.amount_cents,
            currency=event.currency,
            description=f"Anonymous {get_plan(plan).display_name} purchase",
        )
    return "recorded"


# Map normalized event kinds to handler functions
EVENT_HANDLERS: dict[EventKind, Callable[[AsyncSession, ProviderEvent], Awaitable[str]]] = {
    EventKind.GRANT: handle_grant,
    EventKind.UPDATE: handle_update,
    EventKind.REVOKE: handle_revoke,
    EventKind.PAYMENT_SUCCEEDED: handle_payment_succeeded,
    EventKind.PAYMENT_FAILED: handle_payment_failed,
    EventKind.ANONYMOUS_PURCHASE: handle_anonymous_purchase,
}


async def apply_event(db: AsyncSession, event: ProviderEvent) -> ReconcileResult:
    """Apply an authenticated event once. The caller owns the transaction."""
    existing = await db.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider == event.provider,
            ProcessedWebhookEvent.event_id == event.event_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        logger.info("Duplicate %s event %s (%s), skipping", event.provider, event.event_id, event.event_type)
        return ReconcileResult(event.provider, event.event_id, event.event_type, "duplicate")

    # Claim the event id first; a concurrent delivery fails on the unique constraint
    ledger = ProcessedWebhookEvent(provider=event.provider, event_id=event.event_id, event_type=event.event_type)
    db.add(ledger)
    await db.flush()

    logger.info("Processing %s event %s (id=%s)", event.provider, event.event_type, event.event_id)
    try:
        outcome = await EVENT_HANDLERS[event.kind](db, event)
    except ValidationError as e:
        # Retrying cannot fix it (e.g. a price id with no plan); acknowledge and keep a record
        logger.warning("Rejected %s event %s: %s", event.provider, event.event_id, e)
        outcome = "rejected"
    ledger.outcome = outcome
    await db.flush()
    return ReconcileResult(event.provider, event.event_id, event.event_type, outcome)


async def handle(
    db: AsyncSession,
    provider_name: str,
    payload: bytes,
    headers: dict[str, str],
) -> ReconcileResult:
    """Verify, dedupe and apply a raw provider webhook.

    Raises:
        ValidationError: unsupported provider name.
        InvalidSignatureError: authenticity check failed; nothing was applied.
        ProviderUnavailableError: the provider could not be reached while
            normalizing the event; the provider should retry.
    """
    provider = get_provider(provider_name)
    try:
        event = await provider.confirm(payload, headers)
    except UnknownEventError as e:
        logger.debug("Unhandled %s webhook event type: %s", provider.name, e.event_type)
        return ReconcileResult(provider.name, None, e.event_type, "ignored")
    return await apply_event(db, event)
