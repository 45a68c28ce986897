"""Capability gating dependencies — who is asking, and may they use this?"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.auth.dependencies import get_optional_user
from fixitflow.billing.clock import utcnow
from fixitflow.billing.entitlements import (
    Decision,
    evaluate_subscription,
    evaluate_token,
    has_premium_access,
    is_metered,
)
from fixitflow.billing.plans import FREE_DAILY_QUOTAS, PAID_PLAN_NAMES, PLANS, capability_label
from fixitflow.billing.tokens import try_decode_token
from fixitflow.database import get_db
from fixitflow.models.user import User
from fixitflow.services.notification_service import get_notifier
from fixitflow.services.subscription_service import expire_if_past_due, get_or_create_subscription
from fixitflow.stores import get_store

logger = logging.getLogger(__name__)

_USAGE_TTL_SECONDS = 2 * 86400


@dataclass
class Principal:
    """The requester: a registered user, an anonymous token holder, or nobody."""

    user: User | None = None
    token: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.user is None


async def get_principal(
    user: User | None = Depends(get_optional_user),
    x_subscription_token: str | None = Header(default=None),
    subscription_token: str | None = Query(default=None, alias="subscriptionToken"),
) -> Principal:
    """Build the principal from the bearer token or an anonymous entitlement token."""
    return Principal(user=user, token=x_subscription_token or subscription_token)


def _usage_key(user_id: uuid.UUID, capability: str, now: datetime) -> str:
    return f"usage:{user_id}:{capability}:{now.date().isoformat()}"


async def get_usage(user_id: uuid.UUID, capability: str, now: datetime | None = None) -> int:
    value = await get_store().get(_usage_key(user_id, capability, now or utcnow()))
    return int(value) if value else 0


async def record_usage(user_id: uuid.UUID, capability: str, now: datetime | None = None) -> int:
    """Count one use of a metered capability for today. Returns the new total."""
    key = _usage_key(user_id, capability, now or utcnow())
    return await get_store().incr(key, ttl_seconds=_USAGE_TTL_SECONDS)


async def consume_usage(
    user_id: uuid.UUID,
    capability: str,
    limit: int,
    now: datetime | None = None,
) -> Decision:
    """Take one use from today's allowance.

    The counter is incremented first and the increment is undone when it
    lands past ``limit``, so concurrent requests can never overshoot it.
    """
    now = now or utcnow()
    used = await record_usage(user_id, capability, now)
    if used > limit:
        await get_store().incr(_usage_key(user_id, capability, now), -1)
        return Decision(False, "limit_reached", limit=limit, used=limit)
    return Decision(True, "within_limits", limit=limit, used=used)


async def can_use(
    db: AsyncSession,
    principal: Principal,
    capability: str,
    now: datetime | None = None,
) -> Decision:
    """Decide whether ``principal`` may use ``capability`` right now.

    Registered users have the expiry sweep applied first, so a lapsed
    subscription is never read as active.
    """
    now = now or utcnow()
    if principal.user is None:
        return evaluate_token(try_decode_token(principal.token), capability, now)

    subscription = await get_or_create_subscription(db, principal.user)
    await expire_if_past_due(db, subscription, now)

    used = 0
    if is_metered(capability) and not has_premium_access(subscription, now):
        used = await get_usage(principal.user.id, capability, now)
    return evaluate_subscription(subscription, capability, used, now)


async def describe_usage(db: AsyncSession, user: User, now: datetime | None = None) -> dict[str, dict]:
    """Today's usage of each metered capability: ``{used, limit, remaining}`` (limit None = unlimited)."""
    now = now or utcnow()
    subscription = await get_or_create_subscription(db, user)
    premium = has_premium_access(subscription, now)

    usage = {}
    for capability, limit in FREE_DAILY_QUOTAS.items():
        used = await get_usage(user.id, capability, now)
        if premium:
            usage[capability] = {"used": used, "limit": None, "remaining": None}
        else:
            usage[capability] = {"used": used, "limit": limit, "remaining": max(0, limit - used)}
    return usage


def upgrade_detail(capability: str, decision: Decision) -> dict:
    """Structured 402 body the UI renders as an upsell."""
    if decision.reason == "limit_reached":
        message = (
            f"Daily limit reached for {capability_label(capability)} "
            f"({decision.used}/{decision.limit}). Upgrade to Premium for unlimited access."
        )
    elif decision.reason == "expired":
        message = "Your premium access has expired. Purchase a new plan to continue."
    else:
        message = f"{capability_label(capability)} requires a Premium subscription."
    return {
        "message": message,
        "capability": capability,
        "reason": decision.reason,
        "upgrade_required": True,
        "plans": [
            {
                "name": PLANS[name].name,
                "display_name": PLANS[name].display_name,
                "price_cents": PLANS[name].price_cents,
                "duration": PLANS[name].duration_label,
            }
            for name in PAID_PLAN_NAMES
        ],
        "upgrade_url": "/api/v1/subscription/plans",
    }


async def _notify_limit_reached(user: User, capability: str, decision: Decision, now: datetime) -> None:
    marker = f"usage-limit-notice:{user.id}:{capability}:{now.date().isoformat()}"
    if await get_store().add(marker, "1", ttl_seconds=_USAGE_TTL_SECONDS):
        await get_notifier().notify(
            user,
            "usage_limit_reached",
            {"capability": capability_label(capability), "limit": decision.limit},
        )


async def enforce_capability(
    db: AsyncSession,
    principal: Principal,
    capability: str,
    consume: bool = True,
) -> Decision:
    """Raise 402 unless ``principal`` may use ``capability``.

    With ``consume`` a successful call against a free daily allowance is
    counted.
    """
    now = utcnow()
    decision = await can_use(db, principal, capability, now)
    if consume and decision.reason == "within_limits" and principal.user is not None:
        decision = await consume_usage(principal.user.id, capability, decision.limit, now)
    if not decision:
        if decision.reason == "limit_reached" and principal.user is not None:
            await _notify_limit_reached(principal.user, capability, decision, now)
        logger.info(
            "Denied %s for %s (%s)",
            capability,
            principal.user.id if principal.user else "anonymous",
            decision.reason,
        )
        # Keep an inline expiry demotion; the 402 would otherwise roll it back
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=upgrade_detail(capability, decision),
        )
    return decision


def require_capability(capability: str, consume: bool = True):
    """Dependency factory gating a route on ``capability``::

        @router.post("/chat", dependencies=[Depends(require_capability("aiChatDaily"))])
    """

    async def dependency(
        db: AsyncSession = Depends(get_db),
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        await enforce_capability(db, principal, capability, consume)
        return principal

    return dependency
