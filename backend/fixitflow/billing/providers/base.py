"""Payment provider protocol.

Every provider exposes the same operations to the engine so that checkout,
webhook reconciliation and cancellation never branch on provider specifics:

- ``create_grant``: start a checkout (does not grant access by itself)
- ``confirm``: verify a webhook's authenticity and normalize it
- ``fetch_checkout``: re-derive a checkout's outcome server-side
- ``revoke``: best-effort cancellation on the provider's side
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from fixitflow.models.user import User


class ProviderName(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"


class EventKind(str, Enum):
    """Normalized webhook event kinds the reconciler dispatches on."""

    GRANT = "grant"
    UPDATE = "update"
    REVOKE = "revoke"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    ANONYMOUS_PURCHASE = "anonymous_purchase"


@dataclass
class CheckoutGrant:
    """A started checkout: where to send the buyer next."""

    provider: str
    provider_object_id: str
    redirect_url: str | None = None


@dataclass
class GrantOutcome:
    """Provider truth about a subscription, ready for ``grant_paid``/``renew``."""

    provider: str
    plan: str | None
    object_id: str | None  # provider subscription / agreement id
    user_ref: str | None = None  # our user id, when the provider echoes it back
    customer_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    status: str | None = None  # provider-native status, for update events


@dataclass
class ProviderEvent:
    """An authenticated, normalized webhook event."""

    provider: str
    event_id: str
    event_type: str
    kind: EventKind
    outcome: GrantOutcome
    payment_id: str | None = None
    amount_cents: int | None = None
    currency: str | None = None


@dataclass
class CheckoutResult:
    """Server-side view of a checkout, for the client-reported success path."""

    provider: str
    checkout_id: str
    paid: bool
    anonymous: bool
    outcome: GrantOutcome | None = None
    created_at: datetime | None = None  # when the checkout was started


class PaymentProvider(Protocol):
    """Interface implemented by each payment provider adapter."""

    name: str

    async def create_grant(
        self,
        user: User | None,
        plan_name: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutGrant: ...

    async def confirm(self, payload: bytes, headers: dict[str, str]) -> ProviderEvent: ...

    async def fetch_checkout(self, checkout_id: str) -> CheckoutResult: ...

    async def revoke(self, object_id: str) -> None: ...
