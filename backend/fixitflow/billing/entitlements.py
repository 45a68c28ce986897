"""Entitlement evaluation — pure functions, no I/O.

Callers load the subscription (and run the expiry sweep) first, then ask
whether a capability is usable right now. Unknown capabilities are always
denied.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from fixitflow.billing.clock import utcnow
from fixitflow.billing.plans import (
    ALL_CAPABILITIES,
    FREE_DAILY_QUOTAS,
    TRIAL_PLAN,
    get_plan,
    is_paid_plan,
)
from fixitflow.billing.tokens import AnonymousEntitlement


class SubscriptionState(Protocol):
    """The subscription fields the evaluator reads."""

    plan: str
    status: str
    end_date: datetime | None


@dataclass(frozen=True)
class Decision:
    """Outcome of a capability check, with the reason for the UI."""

    allowed: bool
    reason: str  # premium, trial, within_limits, limit_reached, premium_required, expired, unknown_capability
    limit: int | None = None
    used: int | None = None

    def __bool__(self) -> bool:
        return self.allowed


def is_premium(subscription: SubscriptionState, now: datetime | None = None) -> bool:
    """Paid tier, active, and not past its end date (if it has one)."""
    now = now or utcnow()
    return (
        is_paid_plan(subscription.plan)
        and subscription.status == "active"
        and (subscription.end_date is None or subscription.end_date > now)
    )


def is_in_trial(subscription: SubscriptionState, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return (
        subscription.status == "trial"
        and subscription.end_date is not None
        and subscription.end_date > now
    )


def has_premium_access(subscription: SubscriptionState, now: datetime | None = None) -> bool:
    now = now or utcnow()
    return is_premium(subscription, now) or is_in_trial(subscription, now)


def capabilities_for(subscription: SubscriptionState, now: datetime | None = None) -> frozenset[str]:
    """Capabilities granted outright by the subscription (metered quotas excluded)."""
    now = now or utcnow()
    if is_premium(subscription, now):
        return get_plan(subscription.plan).capabilities
    if is_in_trial(subscription, now):
        # Trials get the full set of the tier they mirror
        return get_plan(TRIAL_PLAN).capabilities
    return frozenset()


def evaluate_subscription(
    subscription: SubscriptionState,
    capability: str,
    used_today: int = 0,
    now: datetime | None = None,
) -> Decision:
    """Decide whether a registered principal may use ``capability``."""
    if capability not in ALL_CAPABILITIES:
        return Decision(False, "unknown_capability")

    now = now or utcnow()
    if is_premium(subscription, now):
        granted = capability in get_plan(subscription.plan).capabilities
        return Decision(granted, "premium" if granted else "premium_required")
    if is_in_trial(subscription, now):
        granted = capability in get_plan(TRIAL_PLAN).capabilities
        return Decision(granted, "trial" if granted else "premium_required")

    limit = FREE_DAILY_QUOTAS.get(capability)
    if limit is None:
        return Decision(False, "premium_required")
    if used_today >= limit:
        return Decision(False, "limit_reached", limit=limit, used=used_today)
    return Decision(True, "within_limits", limit=limit, used=used_today)


def evaluate_token(
    entitlement: AnonymousEntitlement | None,
    capability: str,
    now: datetime | None = None,
) -> Decision:
    """Decide whether an anonymous token holder may use ``capability``.

    ``None`` means the token was absent or failed to decode.
    """
    if capability not in ALL_CAPABILITIES:
        return Decision(False, "unknown_capability")
    if entitlement is None:
        return Decision(False, "premium_required")
    if entitlement.is_expired(now):
        return Decision(False, "expired")
    if capability in entitlement.features:
        return Decision(True, "premium")
    return Decision(False, "premium_required")


def is_metered(capability: str) -> bool:
    return capability in FREE_DAILY_QUOTAS
