"""PayPal adapter — Billing Subscriptions REST API over httpx.

Endpoints used:
- POST /v1/oauth2/token                                (client-credentials token, cached)
- POST /v1/billing/subscriptions                       (create, returns approve link)
- GET  /v1/billing/subscriptions/{id}                  (server-side status)
- POST /v1/billing/subscriptions/{id}/cancel           (revoke)
- POST /v1/notifications/verify-webhook-signature      (webhook authenticity)
"""

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

import httpx

from fixitflow.billing.clock import to_naive_utc, utcnow
from fixitflow.billing.errors import (
    InvalidSignatureError,
    ProviderError,
    ProviderUnavailableError,
    UnknownEventError,
    ValidationError,
)
from fixitflow.billing.plans import get_paid_plan, get_plan_by_paypal_plan_id
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

EVENT_KINDS: dict[str, EventKind] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": EventKind.GRANT,
    "BILLING.SUBSCRIPTION.UPDATED": EventKind.UPDATE,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EventKind.UPDATE,
    "BILLING.SUBSCRIPTION.CANCELLED": EventKind.REVOKE,
    "BILLING.SUBSCRIPTION.EXPIRED": EventKind.REVOKE,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": EventKind.PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventKind.PAYMENT_FAILED,
    "PAYMENT.SALE.COMPLETED": EventKind.PAYMENT_SUCCEEDED,
}

# Transmission headers PayPal signs every webhook delivery with
_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _to_cents(amount: dict | None) -> tuple[int | None, str | None]:
    """PayPal money objects carry decimal strings: {"value": "7.99", "currency_code": "USD"}."""
    if not amount:
        return None, None
    raw = amount.get("value", amount.get("total"))
    currency = amount.get("currency_code", amount.get("currency"))
    try:
        cents = int((Decimal(str(raw)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, TypeError):
        cents = None
    return cents, currency.lower() if currency else None


def outcome_from_subscription(resource: dict) -> GrantOutcome:
    """Normalize a PayPal subscription resource into a grant outcome."""
    billing_info = resource.get("billing_info") or {}
    subscriber = resource.get("subscriber") or {}
    plan_id = resource.get("plan_id")
    status = resource.get("status")
    return GrantOutcome(
        provider=ProviderName.PAYPAL.value,
        plan=get_plan_by_paypal_plan_id(plan_id) if plan_id else None,
        object_id=resource.get("id"),
        user_ref=resource.get("custom_id"),
        customer_id=subscriber.get("payer_id"),
        period_start=_parse_time(resource.get("start_time")),
        period_end=_parse_time(billing_info.get("next_billing_time")),
        status=status.lower() if status else None,
    )


class PayPalProvider:
    """PayPal implementation of :class:`PaymentProvider`."""

    name = ProviderName.PAYPAL.value

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires: datetime | None = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=settings.paypal_api_base,
                timeout=settings.provider_timeout_seconds,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _get_access_token(self) -> str:
        """Get or refresh the client-credentials access token."""
        now = utcnow()
        if (
            self._access_token
            and self._access_token_expires
            and now < self._access_token_expires - timedelta(minutes=5)
        ):
            return self._access_token

        if not settings.paypal_client_id or not settings.paypal_client_secret:
            raise ProviderError("PayPal is not configured", self.name)

        response = await self._send(
            "POST",
            "/v1/oauth2/token",
            auth=(settings.paypal_client_id, settings.paypal_client_secret),
            data={"grant_type": "client_credentials"},
        )
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ProviderError("No access token in PayPal auth response", self.name)

        self._access_token = token
        self._access_token_expires = now + timedelta(seconds=int(data.get("expires_in", 3600)))
        logger.info("Obtained PayPal access token")
        return token

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error("PayPal request %s %s failed: %s", method, path, e)
            raise ProviderUnavailableError(f"PayPal unavailable: {e}", self.name) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.error("PayPal %s %s returned %s", method, path, response.status_code)
            raise ProviderUnavailableError(f"PayPal unavailable (HTTP {response.status_code})", self.name)
        if response.status_code >= 400:
            logger.error("PayPal %s %s rejected: %s %s", method, path, response.status_code, response.text)
            raise ProviderError(f"PayPal error (HTTP {response.status_code})", self.name)
        return response

    async def _api(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        return await self._send(method, path, headers=headers, **kwargs)

    async def get_subscription(self, subscription_id: str) -> dict:
        response = await self._api("GET", f"/v1/billing/subscriptions/{subscription_id}")
        return response.json()

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
            raise ValidationError("PayPal checkout requires an account; use Stripe for one-time purchases")
        if not plan.paypal_plan_id:
            raise ProviderError(f"PayPal plan ID not configured for plan {plan.name}", self.name)

        body = {
            "plan_id": plan.paypal_plan_id,
            "custom_id": str(user.id),
            "subscriber": {
                "email_address": user.email,
                "name": {"given_name": user.first_name or "", "surname": user.last_name or ""},
            },
            "application_context": {
                "brand_name": settings.app_name,
                "user_action": "SUBSCRIBE_NOW",
                "return_url": success_url,
                "cancel_url": cancel_url,
            },
        }
        logger.info("Creating PayPal subscription (plan=%s, user=%s)", plan.name, user.id)
        data = (await self._api("POST", "/v1/billing/subscriptions", json=body)).json()

        approve_url = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return CheckoutGrant(provider=self.name, provider_object_id=data["id"], redirect_url=approve_url)

    async def confirm(self, payload: bytes, headers: dict[str, str]) -> ProviderEvent:
        try:
            event = json.loads(payload)
        except ValueError as e:
            logger.warning("Invalid PayPal webhook payload")
            raise InvalidSignatureError("Invalid payload", self.name) from e

        if not settings.paypal_webhook_id:
            raise InvalidSignatureError("PayPal webhook ID not configured", self.name)

        verification = {field: headers.get(header) for field, header in _SIGNATURE_HEADERS.items()}
        if not all(verification.values()):
            logger.warning("PayPal webhook missing transmission headers")
            raise InvalidSignatureError("Missing signature headers", self.name)

        verification["webhook_id"] = settings.paypal_webhook_id
        verification["webhook_event"] = event
        response = await self._api("POST", "/v1/notifications/verify-webhook-signature", json=verification)
        if response.json().get("verification_status") != "SUCCESS":
            logger.warning("PayPal webhook signature verification failed")
            raise InvalidSignatureError("Invalid signature", self.name)

        return await self.parse_event(event)

    async def parse_event(self, event: dict) -> ProviderEvent:
        """Normalize an authenticated PayPal event."""
        event_type = event.get("event_type", "")
        kind = EVENT_KINDS.get(event_type)
        if kind is None:
            raise UnknownEventError(event_type, self.name)

        event_id = event.get("id")
        if not event_id:
            raise ValidationError(f"PayPal {event_type} event has no id")

        resource = event.get("resource") or {}
        if kind == EventKind.PAYMENT_SUCCEEDED:
            subscription_id = resource.get("billing_agreement_id")
            if not subscription_id:
                raise UnknownEventError(f"{event_type} (not a subscription payment)", self.name)
            outcome = outcome_from_subscription(await self.get_subscription(subscription_id))
            amount_cents, currency = _to_cents(resource.get("amount"))
            payment_id = resource.get("id")
        else:
            outcome = outcome_from_subscription(resource)
            last_failed = (resource.get("billing_info") or {}).get("last_failed_payment") or {}
            amount_cents, currency = _to_cents(last_failed.get("amount"))
            payment_id = None

        return ProviderEvent(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            kind=kind,
            outcome=outcome,
            payment_id=payment_id,
            amount_cents=amount_cents,
            currency=currency,
        )

    async def fetch_checkout(self, checkout_id: str) -> CheckoutResult:
        resource = await self.get_subscription(checkout_id)
        return CheckoutResult(
            provider=self.name,
            checkout_id=checkout_id,
            paid=resource.get("status") == "ACTIVE",
            anonymous=False,
            outcome=outcome_from_subscription(resource),
            created_at=_parse_time(resource.get("create_time")),
        )

    async def revoke(self, object_id: str) -> None:
        await self._api(
            "POST",
            f"/v1/billing/subscriptions/{object_id}/cancel",
            json={"reason": "Cancelled by customer"},
        )
        logger.info("PayPal subscription %s cancelled", object_id)
