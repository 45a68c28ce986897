"""Pydantic v2 request/response schemas for subscription endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to start a checkout (registered or anonymous)."""

    plan: str  # "daily", "monthly" or "annual"
    provider: str = "stripe"  # "stripe" or "paypal"
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentSuccessRequest(BaseModel):
    """Client-reported checkout completion. Only the id is used; the outcome is re-fetched."""

    session_id: str = Field(min_length=1)
    provider: str = "stripe"


class SettingsRequest(BaseModel):
    auto_renew: bool


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    price_cents: int
    duration: str
    features: list[str]


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class UsageEntry(BaseModel):
    used: int
    limit: int | None  # None = unlimited
    remaining: int | None


class SubscriptionResponse(BaseModel):
    """Full subscription status + usage for the authenticated user."""

    plan: str
    status: str
    start_date: datetime | None
    end_date: datetime | None
    auto_renew: bool
    provider: str | None
    is_premium: bool
    is_in_trial: bool
    has_premium_access: bool
    trial_available: bool
    days_remaining: int | None
    expiring_soon: bool
    features: list[str]
    usage: dict[str, UsageEntry]


class CheckoutResponse(BaseModel):
    """Where to send the buyer to complete payment."""

    provider: str
    session_id: str
    checkout_url: str | None


class PaymentSuccessResponse(BaseModel):
    """Result of the client-reported success path.

    Registered buyers get their refreshed status; anonymous buyers get a token.
    """

    status: str  # "active", "pending", "anonymous"
    plan: str | None = None
    subscription: SubscriptionResponse | None = None
    token: str | None = None
    expires_at: datetime | None = None


class TokenVerifyResponse(BaseModel):
    """Decoded anonymous entitlement token."""

    valid: bool
    plan: str | None = None
    is_expired: bool | None = None
    expires_at: datetime | None = None
    features: list[str] = []


class AccessResponse(BaseModel):
    """Result of an entitlement check."""

    capability: str
    allowed: bool
    reason: str
    limit: int | None = None
    used: int | None = None


class PaymentRecordResponse(BaseModel):
    provider: str
    provider_payment_id: str
    plan: str
    amount_cents: int
    currency: str
    description: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentHistoryResponse(BaseModel):
    payments: list[PaymentRecordResponse]


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    data: dict[str, str]
    created_at: datetime
    read: bool


class NotificationsListResponse(BaseModel):
    notifications: list[NotificationResponse]


class WebhookResponse(BaseModel):
    status: str  # applied, duplicate, ignored, unmatched, skipped, notified, recorded, rejected
    event_id: str | None = None
