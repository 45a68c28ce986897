"""Subscription service — lifecycle operations on the per-user subscription record.

Every write is a single conditional ``UPDATE ... WHERE version = :seen``
(compare-and-swap). When another writer got there first the operation reloads
the row, re-decides against the fresh state and tries once more; a second lost
race raises :class:`StateConflictError`.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.clock import utcnow
from fixitflow.billing.entitlements import has_premium_access
from fixitflow.billing.errors import (
    AlreadyEntitledError,
    StateConflictError,
    ValidationError,
)
from fixitflow.billing.plans import TRIAL_PLAN, get_paid_plan, get_plan, is_paid_plan
from fixitflow.billing.providers import get_provider
from fixitflow.billing.providers.base import GrantOutcome, ProviderName
from fixitflow.config import settings
from fixitflow.models.payment_record import PaymentRecord
from fixitflow.models.subscription import Subscription
from fixitflow.models.user import User
from fixitflow.services.notification_service import get_notifier

logger = logging.getLogger(__name__)

# Provider name -> correlation column on Subscription
PROVIDER_ID_FIELDS: dict[str, str] = {
    ProviderName.STRIPE.value: "stripe_subscription_id",
    ProviderName.PAYPAL.value: "paypal_subscription_id",
}

_MAX_ATTEMPTS = 2


async def get_or_create_subscription(db: AsyncSession, user: User) -> Subscription:
    """Get existing subscription or create a free-tier one for the user."""
    result = await db.execute(select(Subscription).where(Subscription.user_id == user.id))
    subscription = result.scalar_one_or_none()

    if subscription is not None:
        return subscription

    logger.info("Creating free-tier subscription for user %s", user.id)
    subscription = Subscription(user=user, plan="free", status="active")
    db.add(subscription)
    await db.flush()
    return subscription


async def get_subscription_for_user_ref(db: AsyncSession, user_ref: str | None) -> Subscription | None:
    """Resolve a user id echoed back by a provider (metadata / custom_id)."""
    if not user_ref:
        return None
    try:
        user_id = uuid.UUID(str(user_ref))
    except ValueError:
        logger.warning("Ignoring malformed user reference %r", user_ref)
        return None
    user = await db.get(User, user_id)
    if user is None:
        return None
    return await get_or_create_subscription(db, user)


async def get_subscription_by_stripe_customer(db: AsyncSession, stripe_customer_id: str) -> Subscription | None:
    """Look up subscription by Stripe customer ID (used by webhooks)."""
    result = await db.execute(select(Subscription).where(Subscription.stripe_customer_id == stripe_customer_id))
    return result.scalar_one_or_none()


async def get_subscription_by_provider_object(
    db: AsyncSession, provider: str, object_id: str
) -> Subscription | None:
    """Look up subscription by provider subscription / agreement ID (used by webhooks)."""
    column = getattr(Subscription, PROVIDER_ID_FIELDS[provider])
    result = await db.execute(select(Subscription).where(column == object_id))
    return result.scalar_one_or_none()


async def _owner(db: AsyncSession, subscription: Subscription) -> User:
    return await db.get(User, subscription.user_id)


async def _compare_and_set(db: AsyncSession, subscription: Subscription, changes: dict) -> bool:
    seen = subscription.version
    result = await db.execute(
        update(Subscription)
        .where(Subscription.id == subscription.id, Subscription.version == seen)
        .values(**changes, version=seen + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False
    await db.refresh(subscription)
    return True


async def _transition(
    db: AsyncSession,
    subscription: Subscription,
    decide: Callable[[Subscription], dict | None],
) -> dict | None:
    """Apply ``decide(subscription)`` with compare-and-swap.

    ``decide`` returns the column changes, or None when there is nothing to do.
    Returns the pre-write values of the changed columns, or None for a no-op.
    """
    for attempt in range(_MAX_ATTEMPTS):
        changes = decide(subscription)
        if not changes:
            return None
        before = {key: getattr(subscription, key) for key in changes}
        if await _compare_and_set(db, subscription, changes):
            return before
        logger.info(
            "Concurrent write on subscription %s (attempt %d), reloading",
            subscription.id,
            attempt + 1,
        )
        await db.refresh(subscription)
    raise StateConflictError("Subscription was modified concurrently, please retry")


async def start_trial(db: AsyncSession, user: User) -> Subscription:
    """Start the one-per-account free trial.

    The eligibility check and the write are one conditional UPDATE, so two
    simultaneous requests cannot both succeed.
    """
    subscription = await get_or_create_subscription(db, user)
    await expire_if_past_due(db, subscription)

    now = utcnow()
    end_date = now + timedelta(days=settings.trial_days)
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription.id,
            Subscription.status != "trial",
            Subscription.plan == "free",
            Subscription.trial_used_at.is_(None),
        )
        .values(
            status="trial",
            plan=TRIAL_PLAN,
            start_date=now,
            end_date=end_date,
            trial_used_at=now,
            version=Subscription.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.refresh(subscription)

    if result.rowcount == 0:
        if has_premium_access(subscription, now):
            raise AlreadyEntitledError("You already have premium access")
        raise AlreadyEntitledError("Free trial has already been used on this account")

    logger.info("Started %d-day trial for user %s", settings.trial_days, user.id)
    await get_notifier().notify(
        user,
        "trial_started",
        {"days": settings.trial_days, "end_date": end_date.date().isoformat()},
    )
    return subscription


async def grant_paid(db: AsyncSession, subscription: Subscription, outcome: GrantOutcome) -> Subscription:
    """Activate a paid plan from a confirmed provider outcome.

    Re-applying the same outcome is a no-op and sends nothing. A grant for a
    provider object the user has already cancelled locally is ignored.
    """
    plan = get_paid_plan(outcome.plan or "")
    if plan is None:
        raise ValidationError(f"Cannot grant unknown plan {outcome.plan!r}")
    if outcome.provider not in PROVIDER_ID_FIELDS:
        raise ValidationError(f"Unsupported payment provider: {outcome.provider!r}")

    id_field = PROVIDER_ID_FIELDS[outcome.provider]
    now = utcnow()
    start_date = outcome.period_start or now
    end_date = outcome.period_end or start_date + plan.duration

    def decide(current: Subscription) -> dict | None:
        same_object = outcome.object_id is not None and getattr(current, id_field) == outcome.object_id
        if current.status == "cancelled" and same_object:
            logger.info(
                "Ignoring grant for %s object %s: subscription %s was cancelled",
                outcome.provider,
                outcome.object_id,
                current.id,
            )
            return None
        if (
            current.status == "active"
            and current.plan == plan.name
            and same_object
            and (outcome.period_end is None or (current.end_date is not None and current.end_date >= end_date))
        ):
            return None

        changes = {
            "status": "active",
            "plan": plan.name,
            "start_date": start_date,
            "end_date": end_date,
        }
        for provider, field in PROVIDER_ID_FIELDS.items():
            changes[field] = outcome.object_id if provider == outcome.provider else None
        if outcome.provider == ProviderName.STRIPE.value and outcome.customer_id:
            changes["stripe_customer_id"] = outcome.customer_id
        return changes

    before = await _transition(db, subscription, decide)
    if before is None:
        logger.info("Grant for subscription %s already applied", subscription.id)
        return subscription

    logger.info(
        "Granted %s (%s %s) to subscription %s until %s",
        plan.name,
        outcome.provider,
        outcome.object_id,
        subscription.id,
        end_date,
    )
    is_new_grant = (
        before["status"] != "active" or before["plan"] != plan.name or before[id_field] != outcome.object_id
    )
    await get_notifier().notify(
        await _owner(db, subscription),
        "subscription_confirmation" if is_new_grant else "subscription_renewed",
        {"plan_name": plan.display_name, "end_date": end_date.date().isoformat()},
    )
    return subscription


async def renew(db: AsyncSession, subscription: Subscription, new_end_date: datetime) -> Subscription:
    """Extend an active subscription's term. The plan is unchanged."""

    def decide(current: Subscription) -> dict | None:
        if current.status != "active":
            raise StateConflictError(f"Cannot renew a subscription in status {current.status!r}")
        if current.end_date is not None and new_end_date <= current.end_date:
            return None
        return {"end_date": new_end_date}

    if await _transition(db, subscription, decide) is None:
        return subscription

    logger.info("Renewed subscription %s until %s", subscription.id, new_end_date)
    await get_notifier().notify(
        await _owner(db, subscription),
        "subscription_renewed",
        {"plan_name": get_plan(subscription.plan).display_name, "end_date": new_end_date.date().isoformat()},
    )
    return subscription


def _check_cancellable(subscription: Subscription) -> None:
    if subscription.plan == "free" and subscription.status != "trial":
        raise ValidationError("No active subscription to cancel")


async def cancel(db: AsyncSession, subscription: Subscription, strict: bool = True) -> Subscription:
    """Cancel immediately: back to free, access ends now, auto-renew off.

    Provider ids are kept so a late grant for the same object is recognized
    as stale. With ``strict=False`` (webhooks) a subscription with nothing
    to cancel is left alone instead of raising.
    """
    now = utcnow()

    def decide(current: Subscription) -> dict | None:
        if current.status == "cancelled":
            return None
        if current.plan == "free" and current.status != "trial":
            if strict:
                raise ValidationError("No active subscription to cancel")
            return None
        return {"status": "cancelled", "plan": "free", "end_date": now, "auto_renew": False}

    if await _transition(db, subscription, decide) is None:
        return subscription

    logger.info("Cancelled subscription %s", subscription.id)
    await get_notifier().notify(await _owner(db, subscription), "subscription_cancelled", {})
    return subscription


async def cancel_subscription(db: AsyncSession, user: User) -> Subscription:
    """User-initiated cancellation: revoke at the provider (best effort), then cancel locally."""
    subscription = await get_or_create_subscription(db, user)
    await expire_if_past_due(db, subscription)
    if subscription.status == "cancelled":
        return subscription
    _check_cancellable(subscription)

    provider_name = subscription.provider
    if provider_name is not None and subscription.status == "active":
        object_id = getattr(subscription, PROVIDER_ID_FIELDS[provider_name])
        try:
            await get_provider(provider_name).revoke(object_id)
        except Exception:
            logger.exception(
                "Failed to revoke %s subscription %s; cancelling locally",
                provider_name,
                object_id,
            )

    return await cancel(db, subscription)


async def expire_if_past_due(db: AsyncSession, subscription: Subscription, now: datetime | None = None) -> bool:
    """Demote a lapsed subscription to ``expired``/free. Returns True if it changed."""
    now = now or utcnow()

    def lapsed(current: Subscription) -> bool:
        return current.status in ("active", "trial") and current.end_date is not None and current.end_date < now

    if not lapsed(subscription):
        return False

    def decide(current: Subscription) -> dict | None:
        if not lapsed(current):
            return None
        return {"status": "expired", "plan": "free"}

    before = await _transition(db, subscription, decide)
    if before is None:
        return False

    logger.info("Subscription %s expired (was %s/%s)", subscription.id, before["status"], before["plan"])
    await get_notifier().notify(
        await _owner(db, subscription),
        "subscription_expired",
        {"end_date": subscription.end_date.date().isoformat()},
    )
    return True


async def update_settings(db: AsyncSession, user: User, auto_renew: bool) -> Subscription:
    """Toggle the user-controlled auto-renew flag."""
    subscription = await get_or_create_subscription(db, user)

    def decide(current: Subscription) -> dict | None:
        if current.auto_renew == auto_renew:
            return None
        return {"auto_renew": auto_renew}

    await _transition(db, subscription, decide)
    return subscription


async def record_payment(
    db: AsyncSession,
    *,
    provider: str,
    provider_payment_id: str,
    plan: str,
    amount_cents: int | None,
    currency: str | None = None,
    user_id: uuid.UUID | None = None,
    description: str | None = None,
) -> PaymentRecord | None:
    """Add a payment to the revenue ledger. Returns None if it was already recorded."""
    result = await db.execute(
        select(PaymentRecord).where(
            PaymentRecord.provider == provider,
            PaymentRecord.provider_payment_id == provider_payment_id,
        )
    )
    if result.scalar_one_or_none() is not None:
        logger.info("Payment %s/%s already recorded", provider, provider_payment_id)
        return None

    if amount_cents is None:
        amount_cents = get_plan(plan).price_cents
    record = PaymentRecord(
        user_id=user_id,
        provider=provider,
        provider_payment_id=provider_payment_id,
        plan=plan,
        amount_cents=amount_cents,
        currency=currency or "usd",
        description=description,
    )
    db.add(record)
    await db.flush()
    logger.info("Recorded %s payment %s (%d %s)", provider, provider_payment_id, amount_cents, record.currency)
    return record


async def get_payment_history(db: AsyncSession, user: User, limit: int = 50) -> list[PaymentRecord]:
    result = await db.execute(
        select(PaymentRecord)
        .where(PaymentRecord.user_id == user.id)
        .order_by(PaymentRecord.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def days_remaining(subscription: Subscription, now: datetime | None = None) -> int | None:
    """Whole days left in the current term, or None when there is no term."""
    if subscription.end_date is None or not (is_paid_plan(subscription.plan) or subscription.status == "trial"):
        return None
    now = now or utcnow()
    return max(0, (subscription.end_date - now).days)
