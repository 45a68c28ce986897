"""Subscription API endpoints — plans, trial, checkout, cancellation, entitlement checks."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.api.deps import Principal, get_current_user, get_db, get_optional_user, get_principal
from fixitflow.api.errors import fail
from fixitflow.billing.clock import utcnow
from fixitflow.billing.dependencies import can_use, describe_usage, enforce_capability
from fixitflow.billing.entitlements import capabilities_for, has_premium_access, is_in_trial, is_premium
from fixitflow.billing.errors import AlreadyEntitledError, BillingError, ValidationError
from fixitflow.billing.plans import PLANS, normalize_plan_name
from fixitflow.billing.providers import ProviderName, get_provider
from fixitflow.billing.tokens import issue_token, try_decode_token
from fixitflow.config import settings
from fixitflow.models.user import User
from fixitflow.schemas.subscription import (
    AccessResponse,
    CheckoutRequest,
    CheckoutResponse,
    NotificationResponse,
    NotificationsListResponse,
    PaymentHistoryResponse,
    PaymentRecordResponse,
    PaymentSuccessRequest,
    PaymentSuccessResponse,
    PlanResponse,
    PlansListResponse,
    SettingsRequest,
    SubscriptionResponse,
    TokenVerifyResponse,
    UsageEntry,
)
from fixitflow.services import subscription_service
from fixitflow.services.notification_service import get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscription", tags=["subscription"])


async def _subscription_response(db: AsyncSession, user: User) -> SubscriptionResponse:
    """Current status with the expiry sweep applied first."""
    subscription = await subscription_service.get_or_create_subscription(db, user)
    now = utcnow()
    await subscription_service.expire_if_past_due(db, subscription, now)

    remaining = subscription_service.days_remaining(subscription, now)
    usage = await describe_usage(db, user, now)
    return SubscriptionResponse(
        plan=normalize_plan_name(subscription.plan),
        status=subscription.status,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        auto_renew=subscription.auto_renew,
        provider=subscription.provider,
        is_premium=is_premium(subscription, now),
        is_in_trial=is_in_trial(subscription, now),
        has_premium_access=has_premium_access(subscription, now),
        trial_available=subscription.trial_used_at is None and subscription.plan == "free",
        days_remaining=remaining,
        expiring_soon=remaining is not None and remaining <= settings.expiry_warning_days,
        features=sorted(capabilities_for(subscription, now)),
        usage={name: UsageEntry(**entry) for name, entry in usage.items()},
    )


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List available plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                price_cents=p.price_cents,
                duration=p.duration_label,
                features=sorted(p.capabilities),
            )
            for p in PLANS.values()
        ]
    )


@router.get("/current", response_model=SubscriptionResponse)
async def get_current_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Get current subscription status, premium flags and today's usage."""
    return await _subscription_response(db, current_user)


@router.post("/trial", response_model=SubscriptionResponse)
async def start_trial(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Start the free premium trial (once per account)."""
    try:
        await subscription_service.start_trial(db, current_user)
    except BillingError as e:
        logger.info("Trial start rejected for user %s: %s", current_user.id, e)
        raise await fail(db, e) from e
    return await _subscription_response(db, current_user)


@router.post("/checkout/session", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> CheckoutResponse:
    """Start a checkout with the chosen provider.

    Signed-in users buy a recurring subscription; anonymous buyers make a
    one-time purchase and receive an entitlement token on success.
    Access is granted later, by the provider webhook.
    """
    try:
        provider = get_provider(body.provider)
        if current_user is not None:
            subscription = await subscription_service.get_or_create_subscription(db, current_user)
            await subscription_service.expire_if_past_due(db, subscription)
            if is_premium(subscription):
                raise AlreadyEntitledError("You already have an active subscription")

        if provider.name == ProviderName.STRIPE.value:
            default_success = (
                f"{settings.frontend_url}/subscription/success"
                f"?session_id={{CHECKOUT_SESSION_ID}}&provider={provider.name}"
            )
        else:
            default_success = f"{settings.frontend_url}/subscription/success?provider={provider.name}"
        success_url = body.success_url or default_success
        cancel_url = body.cancel_url or f"{settings.frontend_url}/pricing"

        grant = await provider.create_grant(current_user, body.plan, success_url, cancel_url)
    except BillingError as e:
        logger.warning("Checkout failed (%s, plan=%s): %s", body.provider, body.plan, e)
        raise await fail(db, e) from e

    return CheckoutResponse(
        provider=grant.provider,
        session_id=grant.provider_object_id,
        checkout_url=grant.redirect_url,
    )


@router.post("/payment-success", response_model=PaymentSuccessResponse)
async def payment_success(
    body: PaymentSuccessRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User | None = Depends(get_optional_user),
) -> PaymentSuccessResponse:
    """Client-reported checkout completion.

    Nothing the client sends is trusted except the checkout id: the outcome is
    re-fetched from the provider. The webhook remains authoritative; this path
    only makes the upgrade visible sooner.
    """
    try:
        provider = get_provider(body.provider)
        result = await provider.fetch_checkout(body.session_id)
        if not result.paid:
            return PaymentSuccessResponse(status="pending")

        outcome = result.outcome
        if result.anonymous:
            plan = outcome.plan if outcome else None
            try:
                token = issue_token(plan or "", result.checkout_id, issued_at=result.created_at)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            entitlement = try_decode_token(token)
            logger.info("Issued anonymous %s token for checkout %s", plan, result.checkout_id)
            return PaymentSuccessResponse(
                status="anonymous",
                plan=plan,
                token=token,
                expires_at=entitlement.expires_at if entitlement else None,
            )

        if current_user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Sign in to complete this subscription",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if outcome is None or (outcome.user_ref and outcome.user_ref != str(current_user.id)):
            raise ValidationError("This checkout does not belong to the signed-in account")

        subscription = await subscription_service.get_or_create_subscription(db, current_user)
        await subscription_service.grant_paid(db, subscription, outcome)
    except BillingError as e:
        logger.warning("Payment confirmation failed for %s %s: %s", body.provider, body.session_id, e)
        raise await fail(db, e) from e

    return PaymentSuccessResponse(
        status="active",
        plan=subscription.plan,
        subscription=await _subscription_response(db, current_user),
    )


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Cancel immediately: premium access ends now and the account returns to Free."""
    try:
        await subscription_service.cancel_subscription(db, current_user)
    except BillingError as e:
        raise await fail(db, e) from e
    return await _subscription_response(db, current_user)


@router.put("/settings", response_model=SubscriptionResponse)
async def update_settings(
    body: SettingsRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Update user-controlled subscription settings (auto-renew)."""
    try:
        await subscription_service.update_settings(db, current_user, body.auto_renew)
    except BillingError as e:
        raise await fail(db, e) from e
    return await _subscription_response(db, current_user)


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> PaymentHistoryResponse:
    """Payments recorded for the current user, newest first."""
    records = await subscription_service.get_payment_history(db, current_user, limit)
    return PaymentHistoryResponse(payments=[PaymentRecordResponse.model_validate(r) for r in records])


@router.get("/verify", response_model=TokenVerifyResponse)
async def verify_token(token: str = Query(default="")) -> TokenVerifyResponse:
    """Decode an anonymous entitlement token. Invalid tokens are reported, not rejected."""
    entitlement = try_decode_token(token)
    if entitlement is None:
        return TokenVerifyResponse(valid=False)

    expired = entitlement.is_expired()
    return TokenVerifyResponse(
        valid=not expired,
        plan=entitlement.plan,
        is_expired=expired,
        expires_at=entitlement.expires_at,
        features=[] if expired else list(entitlement.features),
    )


@router.get("/access/{capability}", response_model=AccessResponse)
async def check_access(
    capability: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> AccessResponse:
    """Check whether the caller (user or token holder) may use a capability. Nothing is consumed."""
    decision = await can_use(db, principal, capability)
    return AccessResponse(
        capability=capability,
        allowed=decision.allowed,
        reason=decision.reason,
        limit=decision.limit,
        used=decision.used,
    )


@router.post("/usage/{capability}", response_model=AccessResponse)
async def consume_capability(
    capability: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
) -> AccessResponse:
    """Use a capability once: 402 with upgrade details when not allowed, else counted against today's allowance."""
    decision = await enforce_capability(db, principal, capability)
    return AccessResponse(
        capability=capability,
        allowed=True,
        reason=decision.reason,
        limit=decision.limit,
        used=decision.used,
    )


@router.get("/notifications", response_model=NotificationsListResponse)
async def list_notifications(
    limit: int = Query(default=50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
) -> NotificationsListResponse:
    """In-app notification feed for the current user, newest first."""
    items = await get_notifier().list_for_user(current_user.id, limit=limit)
    return NotificationsListResponse(notifications=[NotificationResponse(**item) for item in items])
