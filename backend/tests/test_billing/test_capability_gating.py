"""Tests for capability gating — principals, daily allowances, 402 upsell bodies."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.clock import utcnow
from fixitflow.billing.dependencies import (
    Principal,
    can_use,
    consume_usage,
    describe_usage,
    enforce_capability,
    get_usage,
    record_usage,
    require_capability,
    upgrade_detail,
)
from fixitflow.billing.entitlements import Decision
from fixitflow.billing.tokens import issue_token
from fixitflow.database import get_db
from fixitflow.services.subscription_service import get_or_create_subscription


class TestCanUse:
    @pytest.mark.asyncio
    async def test_anonymous_with_valid_token(self, db_session: AsyncSession):
        token = issue_token("daily", "cs_1")
        assert (await can_use(db_session, Principal(token=token), "aiChat")).allowed

    @pytest.mark.asyncio
    async def test_anonymous_with_expired_token(self, db_session: AsyncSession):
        token = issue_token("daily", "cs_1", issued_at=utcnow() - timedelta(hours=25))
        decision = await can_use(db_session, Principal(token=token), "aiChat")
        assert not decision.allowed
        assert decision.reason == "expired"

    @pytest.mark.asyncio
    async def test_anonymous_with_garbage_token(self, db_session: AsyncSession):
        decision = await can_use(db_session, Principal(token="eyJ.forged.token"), "aiChat")
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_nobody(self, db_session: AsyncSession):
        assert not (await can_use(db_session, Principal(), "aiChat")).allowed

    @pytest.mark.asyncio
    async def test_unknown_capability_for_every_principal(self, db_session: AsyncSession, make_user):
        premium = await make_user(plan="annual", end_date=utcnow() + timedelta(days=100))
        principals = [
            Principal(),
            Principal(token=issue_token("annual", "cs_2")),
            Principal(user=await make_user()),
            Principal(user=premium),
        ]
        for principal in principals:
            decision = await can_use(db_session, principal, "nonexistent-capability")
            assert not decision.allowed

    @pytest.mark.asyncio
    async def test_lapsed_subscription_expired_inline(self, db_session: AsyncSession, make_user):
        user = await make_user(plan="monthly", end_date=utcnow() - timedelta(minutes=1))

        decision = await can_use(db_session, Principal(user=user), "videoChat")

        assert not decision.allowed
        subscription = await get_or_create_subscription(db_session, user)
        assert subscription.status == "expired"

    @pytest.mark.asyncio
    async def test_free_usage_counts_against_allowance(self, db_session: AsyncSession, make_user):
        user = await make_user()
        now = utcnow()
        for _ in range(5):
            await record_usage(user.id, "aiChatDaily", now)

        decision = await can_use(db_session, Principal(user=user), "aiChatDaily", now)
        assert decision.reason == "limit_reached"
        assert (decision.used, decision.limit) == (5, 5)

    @pytest.mark.asyncio
    async def test_usage_resets_next_day(self, db_session: AsyncSession, make_user):
        user = await make_user()
        today = datetime(2025, 6, 1, 23, 0, 0)
        for _ in range(2):
            await record_usage(user.id, "imageUploads", today)

        assert await get_usage(user.id, "imageUploads", today) == 2
        assert await get_usage(user.id, "imageUploads", today + timedelta(hours=2)) == 0


class TestEnforceCapability:
    @pytest.mark.asyncio
    async def test_consumes_free_allowance(self, db_session: AsyncSession, make_user):
        user = await make_user()
        principal = Principal(user=user)

        first = await enforce_capability(db_session, principal, "supportTickets")
        second = await enforce_capability(db_session, principal, "supportTickets")
        assert (first.used, second.used) == (1, 2)

        with pytest.raises(HTTPException) as exc_info:
            await enforce_capability(db_session, principal, "supportTickets")

        assert exc_info.value.status_code == 402
        detail = exc_info.value.detail
        assert detail["reason"] == "limit_reached"
        assert detail["upgrade_required"] is True
        assert "(2/2)" in detail["message"]

    @pytest.mark.asyncio
    async def test_check_without_consuming(self, db_session: AsyncSession, make_user):
        user = await make_user()
        await enforce_capability(db_session, Principal(user=user), "imageUploads", consume=False)
        assert await get_usage(user.id, "imageUploads") == 0

    @pytest.mark.asyncio
    async def test_premium_usage_not_counted(self, db_session: AsyncSession, make_user):
        user = await make_user(plan="monthly", end_date=utcnow() + timedelta(days=3))
        for _ in range(10):
            decision = await enforce_capability(db_session, Principal(user=user), "aiChatDaily")
            assert decision.reason == "premium"
        assert await get_usage(user.id, "aiChatDaily") == 0

    @pytest.mark.asyncio
    async def test_limit_notice_sent_once(self, db_session: AsyncSession, make_user, notification_types):
        user = await make_user()
        for _ in range(2):
            await record_usage(user.id, "imageUploads")

        for _ in range(3):
            with pytest.raises(HTTPException):
                await enforce_capability(db_session, Principal(user=user), "imageUploads")

        assert await notification_types(user) == ["usage_limit_reached"]

    @pytest.mark.asyncio
    async def test_concurrent_requests_cannot_overshoot_allowance(
        self, db_session: AsyncSession, make_user, notification_types
    ):
        user = await make_user()
        for _ in range(4):
            await record_usage(user.id, "aiChatDaily")

        # Every request read the counter at 4 before any of them consumed
        stale = Decision(True, "within_limits", limit=5, used=4)
        with patch("fixitflow.billing.dependencies.can_use", new=AsyncMock(return_value=stale)):
            results = await asyncio.gather(
                *(enforce_capability(AsyncMock(), Principal(user=user), "aiChatDaily") for _ in range(3)),
                return_exceptions=True,
            )

        allowed = [r for r in results if isinstance(r, Decision)]
        denied = [r for r in results if isinstance(r, HTTPException)]
        assert len(allowed) == 1
        assert allowed[0].used == 5
        assert [e.status_code for e in denied] == [402, 402]
        assert await get_usage(user.id, "aiChatDaily") == 5
        assert await notification_types(user) == ["usage_limit_reached"]

    @pytest.mark.asyncio
    async def test_consume_usage_past_limit_leaves_counter(self, make_user):
        user = await make_user()
        now = utcnow()
        assert (await consume_usage(user.id, "imageUploads", 2, now)).used == 1
        assert (await consume_usage(user.id, "imageUploads", 2, now)).used == 2

        decision = await consume_usage(user.id, "imageUploads", 2, now)

        assert not decision
        assert (decision.reason, decision.used, decision.limit) == ("limit_reached", 2, 2)
        assert await get_usage(user.id, "imageUploads", now) == 2

    @pytest.mark.asyncio
    async def test_premium_required_body(self, db_session: AsyncSession, make_user):
        user = await make_user()
        with pytest.raises(HTTPException) as exc_info:
            await enforce_capability(db_session, Principal(user=user), "videoChat")
        detail = exc_info.value.detail
        assert detail["reason"] == "premium_required"
        assert detail["capability"] == "videoChat"
        assert [plan["name"] for plan in detail["plans"]] == ["daily", "monthly", "annual"]
        assert detail["upgrade_url"] == "/api/v1/subscription/plans"

    def test_expired_message(self):
        detail = upgrade_detail("aiChat", Decision(False, "expired"))
        assert "expired" in detail["message"]


class TestDescribeUsage:
    @pytest.mark.asyncio
    async def test_free_user(self, db_session: AsyncSession, make_user):
        user = await make_user()
        await record_usage(user.id, "aiChatDaily")

        usage = await describe_usage(db_session, user)
        assert usage["aiChatDaily"] == {"used": 1, "limit": 5, "remaining": 4}
        assert usage["imageUploads"] == {"used": 0, "limit": 2, "remaining": 2}

    @pytest.mark.asyncio
    async def test_premium_user_unlimited(self, db_session: AsyncSession, make_user):
        user = await make_user(plan="annual", end_date=utcnow() + timedelta(days=10))
        usage = await describe_usage(db_session, user)
        assert usage["supportTickets"]["limit"] is None


# ---------------------------------------------------------------------------
# require_capability on a route
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def gated_client(db_session: AsyncSession):
    """A tiny app with capability-gated routes, sharing the test DB session."""
    gated = FastAPI()

    @gated.post("/chat", dependencies=[Depends(require_capability("aiChatDaily"))])
    async def chat():
        return {"ok": True}

    @gated.get("/video")
    async def video(principal: Principal = Depends(require_capability("videoChat"))):
        return {"anonymous": principal.is_anonymous}

    async def override_get_db():
        yield db_session
        await db_session.commit()

    gated.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=gated), base_url="http://testserver") as ac:
        yield ac


class TestRequireCapability:
    @pytest.mark.asyncio
    async def test_free_user_hits_daily_limit(self, gated_client: AsyncClient, free_auth_headers):
        for _ in range(5):
            response = await gated_client.post("/chat", headers=free_auth_headers)
            assert response.status_code == 200

        response = await gated_client.post("/chat", headers=free_auth_headers)
        assert response.status_code == 402
        assert response.json()["detail"]["reason"] == "limit_reached"

    @pytest.mark.asyncio
    async def test_token_header_grants_access(self, gated_client: AsyncClient):
        token = issue_token("daily", "cs_route")
        response = await gated_client.get("/video", headers={"X-Subscription-Token": token})
        assert response.status_code == 200
        assert response.json() == {"anonymous": True}

    @pytest.mark.asyncio
    async def test_token_query_param(self, gated_client: AsyncClient):
        token = issue_token("monthly", "cs_route")
        response = await gated_client.get("/video", params={"subscriptionToken": token})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_no_credentials(self, gated_client: AsyncClient):
        response = await gated_client.get("/video")
        assert response.status_code == 402
        assert response.json()["detail"]["upgrade_required"] is True
