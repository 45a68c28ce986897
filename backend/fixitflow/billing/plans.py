"""Plan definitions — pricing tiers, term lengths, and capability sets."""

from dataclasses import dataclass
from datetime import timedelta

from fixitflow.config import settings

# Gated capabilities and their user-facing labels
PREMIUM_CAPABILITIES: dict[str, str] = {
    "complexGuides": "Complex troubleshooting guides",
    "aiChat": "AI chat support",
    "videoChat": "Video chat assistance",
    "linkedVideos": "Linked video tutorials",
    "prioritySupport": "Priority support",
}

# Metered capabilities: unlimited on paid tiers, daily allowance on free
METERED_CAPABILITIES: dict[str, str] = {
    "aiChatDaily": "Daily AI chat messages",
    "imageUploads": "Image uploads with AI analysis",
    "supportTickets": "Support tickets",
}

ALL_CAPABILITIES: frozenset[str] = frozenset(PREMIUM_CAPABILITIES) | frozenset(METERED_CAPABILITIES)

FREE_DAILY_QUOTAS: dict[str, int] = {
    "aiChatDaily": settings.free_ai_chat_daily,
    "imageUploads": settings.free_image_uploads_daily,
    "supportTickets": settings.free_support_tickets_daily,
}


@dataclass(frozen=True)
class Plan:
    """A purchasable (or free) subscription tier."""

    name: str
    display_name: str
    price_cents: int  # in cents (e.g., 799 = $7.99)
    duration: timedelta | None  # None = no fixed term
    duration_label: str
    capabilities: frozenset[str]
    stripe_price_id: str | None  # None for free tier
    paypal_plan_id: str | None

    @property
    def is_paid(self) -> bool:
        return self.name != "free"


PLANS: dict[str, Plan] = {
    "free": Plan(
        name="free",
        display_name="Free",
        price_cents=0,
        duration=None,
        duration_label="forever",
        capabilities=frozenset(),
        stripe_price_id=None,
        paypal_plan_id=None,
    ),
    "daily": Plan(
        name="daily",
        display_name="Premium Daily",
        price_cents=299,
        duration=timedelta(hours=24),
        duration_label="24 hours",
        capabilities=ALL_CAPABILITIES - {"prioritySupport"},
        stripe_price_id=settings.stripe_daily_price_id or None,
        paypal_plan_id=settings.paypal_daily_plan_id or None,
    ),
    "monthly": Plan(
        name="monthly",
        display_name="Premium Monthly",
        price_cents=799,
        duration=timedelta(days=30),
        duration_label="30 days",
        capabilities=ALL_CAPABILITIES,
        stripe_price_id=settings.stripe_monthly_price_id or None,
        paypal_plan_id=settings.paypal_monthly_plan_id or None,
    ),
    "annual": Plan(
        name="annual",
        display_name="Premium Annual",
        price_cents=5499,
        duration=timedelta(days=365),
        duration_label="365 days",
        capabilities=ALL_CAPABILITIES,
        stripe_price_id=settings.stripe_annual_price_id or None,
        paypal_plan_id=settings.paypal_annual_plan_id or None,
    ),
}

PAID_PLAN_NAMES: tuple[str, ...] = ("daily", "monthly", "annual")

# The tier a free trial mirrors
TRIAL_PLAN = "monthly"

# Older plan table (premium_* keys, prices in cents). Only used to map stored or
# client-supplied legacy names onto the canonical tiers above.
LEGACY_PLANS: dict[str, dict] = {
    "premium_daily": {"plan": "daily", "price_cents": 199, "interval": "day"},
    "premium_monthly": {"plan": "monthly", "price_cents": 499, "interval": "month"},
    "premium_yearly": {"plan": "annual", "price_cents": 3999, "interval": "year"},
}

_LEGACY_ALIASES: dict[str, str] = {
    "premium": TRIAL_PLAN,
    **{name: entry["plan"] for name, entry in LEGACY_PLANS.items()},
}


def normalize_plan_name(plan_name: str | None) -> str:
    """Map legacy plan names onto canonical ones. Unknown names map to free."""
    if not plan_name:
        return "free"
    name = _LEGACY_ALIASES.get(plan_name, plan_name)
    return name if name in PLANS else "free"


def get_plan(plan_name: str | None) -> Plan:
    """Get a plan by (possibly legacy) name. Defaults to free if unknown."""
    return PLANS[normalize_plan_name(plan_name)]


def is_paid_plan(plan_name: str | None) -> bool:
    return normalize_plan_name(plan_name) in PAID_PLAN_NAMES


def get_paid_plan(plan_name: str) -> Plan | None:
    """Resolve a purchasable plan name, or None if it is not one."""
    if plan_name not in PLANS and plan_name not in _LEGACY_ALIASES:
        return None
    plan = get_plan(plan_name)
    return plan if plan.is_paid else None


def get_plan_by_price_id(price_id: str) -> str | None:
    """Reverse lookup: Stripe price ID -> plan name. Returns None if not found."""
    for plan in PLANS.values():
        if plan.stripe_price_id and plan.stripe_price_id == price_id:
            return plan.name
    return None


def get_plan_by_paypal_plan_id(paypal_plan_id: str) -> str | None:
    """Reverse lookup: PayPal plan ID -> plan name. Returns None if not found."""
    for plan in PLANS.values():
        if plan.paypal_plan_id and plan.paypal_plan_id == paypal_plan_id:
            return plan.name
    return None


def capability_label(capability: str) -> str:
    return PREMIUM_CAPABILITIES.get(capability) or METERED_CAPABILITIES.get(capability) or capability
