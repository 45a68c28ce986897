"""Integration tests for the Stripe and PayPal webhook endpoints."""

import hashlib
import hmac
import json
import time
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.clock import utcnow
from fixitflow.billing.providers import register_provider
from fixitflow.billing.providers.paypal_provider import PayPalProvider
from fixitflow.models.payment_record import PaymentRecord
from fixitflow.models.webhook_event import ProcessedWebhookEvent
from fixitflow.services.subscription_service import get_or_create_subscription

_STRIPE = "fixitflow.billing.providers.stripe_provider"
STRIPE_URL = "/api/v1/webhooks/stripe"
PAYPAL_URL = "/api/v1/webhooks/paypal"


class _StripeObj(SimpleNamespace):
    def __getitem__(self, key: str):
        return getattr(self, key)


def _signed_headers(payload: bytes, secret: str = "whsec_test_secret") -> dict[str, str]:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload.decode()}".encode(), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _anonymous_checkout_payload(event_id: str = "evt_anon_api") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_anon_api",
                    "object": "checkout.session",
                    "mode": "payment",
                    "payment_intent": "pi_anon_api",
                    "amount_total": 299,
                    "currency": "usd",
                    "metadata": {"plan": "daily", "anonymous": "true"},
                }
            },
        }
    ).encode()


def _deleted_event(sub_id: str, event_id: str = "evt_deleted_api") -> _StripeObj:
    return _StripeObj(
        id=event_id,
        type="customer.subscription.deleted",
        data=_StripeObj(
            object=_StripeObj(
                id=sub_id,
                customer="cus_api",
                status="canceled",
                metadata={},
                items=_StripeObj(data=[]),
            )
        ),
    )


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestStripeWebhook:
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, db_session: AsyncSession):
        payload = _anonymous_checkout_payload()
        response = await client.post(
            STRIPE_URL, content=payload, headers=_signed_headers(payload, secret="whsec_wrong")
        )

        assert response.status_code == 400
        assert await _count(db_session, ProcessedWebhookEvent) == 0
        assert await _count(db_session, PaymentRecord) == 0

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client: AsyncClient):
        response = await client.post(STRIPE_URL, content=_anonymous_checkout_payload())
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_signed_delivery_and_redelivery(self, client: AsyncClient, db_session: AsyncSession):
        payload = _anonymous_checkout_payload()

        first = await client.post(STRIPE_URL, content=payload, headers=_signed_headers(payload))
        second = await client.post(STRIPE_URL, content=payload, headers=_signed_headers(payload))

        assert first.status_code == 200
        assert first.json() == {"status": "recorded", "event_id": "evt_anon_api"}
        assert second.json() == {"status": "duplicate", "event_id": "evt_anon_api"}
        assert await _count(db_session, PaymentRecord) == 1

    @pytest.mark.asyncio
    async def test_deletion_revokes_access(
        self, client: AsyncClient, db_session: AsyncSession, make_user, auth_headers_for
    ):
        user = await make_user(
            plan="monthly", end_date=utcnow() + timedelta(days=20), stripe_subscription_id="sub_api_del"
        )
        with patch(f"{_STRIPE}.construct_webhook_event", return_value=_deleted_event("sub_api_del")):
            response = await client.post(STRIPE_URL, content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

        assert response.json()["status"] == "applied"
        access = await client.get("/api/v1/subscription/access/aiChat", headers=auth_headers_for(user))
        assert access.json()["allowed"] is False
        subscription = await get_or_create_subscription(db_session, user)
        assert subscription.status == "cancelled"

    @pytest.mark.asyncio
    async def test_unhandled_event_acknowledged(self, client: AsyncClient, db_session: AsyncSession):
        event = _StripeObj(id="evt_other", type="charge.refunded", data=_StripeObj(object=_StripeObj(id="ch_1")))
        with patch(f"{_STRIPE}.construct_webhook_event", return_value=event):
            response = await client.post(STRIPE_URL, content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert await _count(db_session, ProcessedWebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_provider_outage_asks_for_retry(self, client: AsyncClient, db_session: AsyncSession):
        event = _StripeObj(
            id="evt_outage",
            type="checkout.session.completed",
            data=_StripeObj(
                object=_StripeObj(id="cs_1", mode="subscription", subscription="sub_1", metadata={})
            ),
        )
        with (
            patch(f"{_STRIPE}.construct_webhook_event", return_value=event),
            patch(f"{_STRIPE}.get_subscription", new=AsyncMock(side_effect=stripe.APIConnectionError("down"))),
        ):
            response = await client.post(STRIPE_URL, content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

        assert response.status_code == 503
        assert await _count(db_session, ProcessedWebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_concurrent_claim_reported_as_duplicate(self, client: AsyncClient):
        with patch(
            "fixitflow.billing.reconciler.handle",
            new=AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))),
        ):
            response = await client.post(STRIPE_URL, content=b"{}")
        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, client: AsyncClient):
        with patch("fixitflow.billing.reconciler.handle", new=AsyncMock(side_effect=RuntimeError("boom"))):
            response = await client.post(STRIPE_URL, content=b"{}")
        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


PAYPAL_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-ID": "tx-api",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2025-06-01T10:00:00Z",
}


def _paypal_api(verification_status: str = "SUCCESS"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        if request.url.path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": verification_status})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api-m.sandbox.paypal.com")
    register_provider(PayPalProvider(http_client=client))


def _activation(user_id: str, event_id: str = "WH-API-1") -> bytes:
    next_billing = (utcnow() + timedelta(days=30)).replace(microsecond=0).isoformat() + "Z"
    return json.dumps(
        {
            "id": event_id,
            "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": {
                "id": "I-API-SUB",
                "plan_id": "P-MONTHLY",
                "status": "ACTIVE",
                "custom_id": user_id,
                "subscriber": {"payer_id": "PAYER-API"},
                "billing_info": {"next_billing_time": next_billing},
            },
        }
    ).encode()


class TestPayPalWebhook:
    @pytest.mark.asyncio
    async def test_missing_transmission_headers(self, client: AsyncClient):
        _paypal_api()
        response = await client.post(PAYPAL_URL, content=_activation("someone"))
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_failed_verification(self, client: AsyncClient, free_user):
        _paypal_api("FAILURE")
        response = await client.post(PAYPAL_URL, content=_activation(str(free_user.id)), headers=PAYPAL_HEADERS)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_activation_grants_once(
        self, client: AsyncClient, db_session: AsyncSession, free_user, notification_types
    ):
        _paypal_api()
        payload = _activation(str(free_user.id))

        first = await client.post(PAYPAL_URL, content=payload, headers=PAYPAL_HEADERS)
        second = await client.post(PAYPAL_URL, content=payload, headers=PAYPAL_HEADERS)

        assert first.json() == {"status": "applied", "event_id": "WH-API-1"}
        assert second.json()["status"] == "duplicate"
        subscription = await get_or_create_subscription(db_session, free_user)
        await db_session.refresh(subscription)
        assert (subscription.status, subscription.plan, subscription.provider) == ("active", "monthly", "paypal")
        assert subscription.paypal_subscription_id == "I-API-SUB"
        assert await notification_types(free_user) == ["subscription_confirmation"]
