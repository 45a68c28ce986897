"""Stripe adapter — Checkout Sessions, subscription webhooks, cancellation."""

import logging
from datetime import datetime

import stripe
from stripe import StripeClient

from fixitflow.billing.clock import from_timestamp
from fixitflow.billing.errors import (
    InvalidSignatureError,
    ProviderError,
    ProviderUnavailableError,
    UnknownEventError,
    ValidationError,
)
from fixitflow.billing.plans import get_paid_plan, get_plan_by_price_id
from fixitflow.billing.providers.base import (
    CheckoutGrant,
    CheckoutResult,
    EventKind,
    GrantOutcome,
    ProviderEvent,
    ProviderName,
)
from fixitflow.config import settings
from fixitflow.models.user import User

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def get_stripe_client() -> StripeClient:
    """Create a StripeClient instance with async HTTP support."""
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.provider_timeout_seconds),
    )


def _translate(error: stripe.StripeError) -> ProviderError:
    if isinstance(error, _TRANSIENT_ERRORS):
        return ProviderUnavailableError(f"Stripe unavailable: {error}", "stripe")
    return ProviderError(f"Stripe error: {error}", "stripe")


async def create_checkout_session(params: dict) -> stripe.checkout.Session:
    """Create a Stripe Checkout Session."""
    client = get_stripe_client()
    return await client.v1.checkout.sessions.create_async(params=params)


async def get_checkout_session(session_id: str) -> stripe.checkout.Session:
    """Retrieve a Stripe Checkout Session by ID."""
    client = get_stripe_client()
    return await client.v1.checkout.sessions.retrieve_async(session_id)


async def get_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    return await client.v1.subscriptions.retrieve_async(subscription_id)


async def cancel_subscription(subscription_id: str) -> stripe.Subscription:
    """Cancel a Stripe subscription immediately."""
    client = get_stripe_client()
    return await client.v1.subscriptions.cancel_async(subscription_id)


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous)."""
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)


def _get(obj, name: str, default=None):
    """Attribute access that tolerates missing fields on Stripe objects."""
    return getattr(obj, name, default) if obj is not None else default


def _metadata(obj) -> dict:
    return dict(_get(obj, "metadata") or {})


def _get_first_item(stripe_sub: stripe.Subscription):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _get_price_id_from_subscription(stripe_sub: stripe.Subscription) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = _get_first_item(stripe_sub)
    return item.price.id if item else None


def _get_period(stripe_sub: stripe.Subscription) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item.
    """
    item = _get_first_item(stripe_sub)
    start = _get(item, "current_period_start") or _get(stripe_sub, "current_period_start")
    end = _get(item, "current_period_end") or _get(stripe_sub, "current_period_end")
    return from_timestamp(start), from_timestamp(end)


def _invoice_subscription_id(invoice) -> str | None:
    """Subscription ID of an invoice (top-level on older API versions, under parent on basil)."""
    subscription_id = _get(invoice, "subscription")
    if subscription_id:
        return subscription_id
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _get(details, "subscription")


def outcome_from_subscription(stripe_sub: stripe.Subscription) -> GrantOutcome:
    """Normalize a Stripe subscription into a grant outcome."""
    metadata = _metadata(stripe_sub)
    price_id = _get_price_id_from_subscription(stripe_sub)
    plan = get_plan_by_price_id(price_id) if price_id else None
    if plan is None:
        plan = metadata.get("plan")
    period_start, period_end = _get_period(stripe_sub)
    return GrantOutcome(
        provider=ProviderName.STRIPE.value,
        plan=plan,
        object_id=stripe_sub.id,
        user_ref=metadata.get("user_id"),
        customer_id=_get(stripe_sub, "customer"),
        period_start=period_start,
        period_end=period_end,
        status=_get(stripe_sub, "status"),
    )


class StripeProvider:
    """Stripe implementation of :class:`PaymentProvider`."""

    name = ProviderName.STRIPE.value

    async def create_grant(
        self,
        user: User | None,
        plan_name: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutGrant:
        plan = get_paid_plan(plan_name)
        if plan is None:
            raise ValidationError(f"Invalid plan {plan_name!r}. Choose daily, monthly or annual.")

        if user is None:
            # Anonymous buyers pay once for a fixed term and receive a token
            params = {
                "mode": "payment",
                "line_items": [
                    {
                        "price_data": {
                            "currency": "usd",
                            "unit_amount": plan.price_cents,
                            "product_data": {"name": f"FixItFlow {plan.display_name}"},
                        },
                        "quantity": 1,
                    }
                ],
                "metadata": {"plan": plan.name, "anonymous": "true"},
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        else:
            if not plan.stripe_price_id:
                raise ProviderError(f"Stripe price ID not configured for plan {plan.name}", self.name)
            metadata = {"user_id": str(user.id), "plan": plan.name}
            params = {
                "mode": "subscription",
                "line_items": [{"price": plan.stripe_price_id, "quantity": 1}],
                "client_reference_id": str(user.id),
                "metadata": metadata,
                "subscription_data": {"metadata": metadata},
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
            subscription = user.subscription
            if subscription is not None and subscription.stripe_customer_id:
                params["customer"] = subscription.stripe_customer_id
            else:
                params["customer_email"] = user.email

        logger.info(
            "Creating Stripe checkout session (plan=%s, user=%s)",
            plan.name,
            user.id if user else "anonymous",
        )
        try:
            session = await create_checkout_session(params)
        except stripe.StripeError as e:
            logger.error("Stripe checkout error: %s", e)
            raise _translate(e) from e

        return CheckoutGrant(provider=self.name, provider_object_id=session.id, redirect_url=session.url)

    async def confirm(self, payload: bytes, headers: dict[str, str]) -> ProviderEvent:
        sig_header = headers.get("stripe-signature", "")
        try:
            event = construct_webhook_event(payload, sig_header)
        except stripe.SignatureVerificationError as e:
            logger.warning("Stripe webhook signature verification failed")
            raise InvalidSignatureError("Invalid signature", self.name) from e
        except ValueError as e:
            logger.warning("Invalid Stripe webhook payload")
            raise InvalidSignatureError("Invalid payload", self.name) from e
        return await self.parse_event(event)

    async def parse_event(self, event: stripe.Event) -> ProviderEvent:
        """Normalize an authenticated Stripe event."""
        obj = event.data.object
        event_type = event.type

        def build(kind: EventKind, outcome: GrantOutcome, **extra) -> ProviderEvent:
            return ProviderEvent(
                provider=self.name,
                event_id=event.id,
                event_type=event_type,
                kind=kind,
                outcome=outcome,
                **extra,
            )

        try:
            if event_type == "checkout.session.completed":
                metadata = _metadata(obj)
                if _get(obj, "mode") == "payment" and metadata.get("anonymous") == "true":
                    return build(
                        EventKind.ANONYMOUS_PURCHASE,
                        GrantOutcome(provider=self.name, plan=metadata.get("plan"), object_id=obj.id),
                        payment_id=_get(obj, "payment_intent") or obj.id,
                        amount_cents=_get(obj, "amount_total"),
                        currency=_get(obj, "currency"),
                    )
                subscription_id = _get(obj, "subscription")
                if not subscription_id:
                    raise UnknownEventError(f"{event_type} (no subscription)", self.name)
                outcome = outcome_from_subscription(await get_subscription(subscription_id))
                outcome.user_ref = outcome.user_ref or _get(obj, "client_reference_id") or metadata.get("user_id")
                outcome.customer_id = outcome.customer_id or _get(obj, "customer")
                return build(EventKind.GRANT, outcome)

            if event_type == "customer.subscription.created":
                return build(EventKind.GRANT, outcome_from_subscription(obj))

            if event_type == "customer.subscription.updated":
                return build(EventKind.UPDATE, outcome_from_subscription(obj))

            if event_type == "customer.subscription.deleted":
                return build(EventKind.REVOKE, outcome_from_subscription(obj))

            if event_type in ("invoice.payment_succeeded", "invoice.paid"):
                subscription_id = _invoice_subscription_id(obj)
                if not subscription_id:
                    raise UnknownEventError(f"{event_type} (one-time invoice)", self.name)
                outcome = outcome_from_subscription(await get_subscription(subscription_id))
                outcome.customer_id = outcome.customer_id or _get(obj, "customer")
                return build(
                    EventKind.PAYMENT_SUCCEEDED,
                    outcome,
                    payment_id=obj.id,
                    amount_cents=_get(obj, "amount_paid"),
                    currency=_get(obj, "currency"),
                )

            if event_type == "invoice.payment_failed":
                return build(
                    EventKind.PAYMENT_FAILED,
                    GrantOutcome(
                        provider=self.name,
                        plan=None,
                        object_id=_invoice_subscription_id(obj),
                        customer_id=_get(obj, "customer"),
                    ),
                    payment_id=obj.id,
                    amount_cents=_get(obj, "amount_due"),
                    currency=_get(obj, "currency"),
                )
        except stripe.StripeError as e:
            raise _translate(e) from e

        raise UnknownEventError(event_type, self.name)

    async def fetch_checkout(self, checkout_id: str) -> CheckoutResult:
        try:
            session = await get_checkout_session(checkout_id)
            metadata = _metadata(session)
            paid = _get(session, "payment_status") in ("paid", "no_payment_required")
            anonymous = metadata.get("anonymous") == "true"
            outcome = GrantOutcome(provider=self.name, plan=metadata.get("plan"), object_id=None)
            subscription_id = _get(session, "subscription")
            if paid and subscription_id:
                outcome = outcome_from_subscription(await get_subscription(subscription_id))
                outcome.user_ref = outcome.user_ref or _get(session, "client_reference_id")
                outcome.customer_id = outcome.customer_id or _get(session, "customer")
        except stripe.StripeError as e:
            logger.error("Failed to fetch Stripe checkout %s: %s", checkout_id, e)
            raise _translate(e) from e

        return CheckoutResult(
            provider=self.name,
            checkout_id=checkout_id,
            paid=paid,
            anonymous=anonymous,
            outcome=outcome,
            created_at=from_timestamp(_get(session, "created")),
        )

    async def revoke(self, object_id: str) -> None:
        try:
            await cancel_subscription(object_id)
        except stripe.StripeError as e:
            raise _translate(e) from e
        logger.info("Stripe subscription %s cancelled", object_id)
