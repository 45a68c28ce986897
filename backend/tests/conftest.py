"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite) with all tables
created, an in-process key/value store, and the provider registry reset.
Provider credentials below are fake; provider calls are patched in tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("ENTITLEMENT_TOKEN_SECRET", "test-entitlement-secret")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_DAILY_PRICE_ID", "price_daily_test")
os.environ.setdefault("STRIPE_MONTHLY_PRICE_ID", "price_monthly_test")
os.environ.setdefault("STRIPE_ANNUAL_PRICE_ID", "price_annual_test")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST")
os.environ.setdefault("PAYPAL_DAILY_PLAN_ID", "P-DAILY")
os.environ.setdefault("PAYPAL_MONTHLY_PLAN_ID", "P-MONTHLY")
os.environ.setdefault("PAYPAL_ANNUAL_PLAN_ID", "P-ANNUAL")

import uuid  # noqa: E402
from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402
from datetime import datetime  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from fixitflow.auth.jwt import create_access_token  # noqa: E402
from fixitflow.billing.providers import reset_providers  # noqa: E402
from fixitflow.database import Base, get_db  # noqa: E402
from fixitflow.main import app  # noqa: E402
from fixitflow.models.subscription import Subscription  # noqa: E402
from fixitflow.models.user import User  # noqa: E402
from fixitflow.services.notification_service import get_notifier  # noqa: E402
from fixitflow.stores import MemoryStore, set_store  # noqa: E402

# ---------------------------------------------------------------------------
# Per-test: fresh database, store and provider registry
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine; StaticPool keeps the single connection alive."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session on the per-test database."""
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture(autouse=True)
async def store() -> AsyncGenerator[MemoryStore, None]:
    """Fresh in-process store for usage counters, notification feeds and markers."""
    memory = MemoryStore()
    set_store(memory)
    yield memory
    set_store(None)


@pytest_asyncio.fixture(autouse=True)
async def _reset_providers() -> AsyncGenerator[None, None]:
    reset_providers()
    yield
    reset_providers()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to use the test DB session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: users with subscriptions
# ---------------------------------------------------------------------------


UserFactory = Callable[..., Awaitable[User]]


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession) -> UserFactory:
    """Factory creating a user with a subscription in the given state."""

    async def _make(
        plan: str = "free",
        status: str = "active",
        end_date: datetime | None = None,
        start_date: datetime | None = None,
        trial_used_at: datetime | None = None,
        stripe_customer_id: str | None = None,
        stripe_subscription_id: str | None = None,
        paypal_subscription_id: str | None = None,
        first_name: str = "Test",
    ) -> User:
        unique = uuid.uuid4().hex[:8]
        user = User(
            email=f"user-{unique}@test.com",
            first_name=first_name,
            last_name="User",
            is_active=True,
        )
        db_session.add(user)
        await db_session.flush()

        subscription = Subscription(
            user_id=user.id,
            plan=plan,
            status=status,
            start_date=start_date,
            end_date=end_date,
            trial_used_at=trial_used_at,
            stripe_customer_id=stripe_customer_id,
            stripe_subscription_id=stripe_subscription_id,
            paypal_subscription_id=paypal_subscription_id,
        )
        db_session.add(subscription)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest_asyncio.fixture
async def free_user(make_user: UserFactory) -> User:
    return await make_user()


def _auth_headers(user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers_for() -> Callable[[User], dict[str, str]]:
    """Return a function building Authorization headers for a user."""
    return _auth_headers


@pytest_asyncio.fixture
async def free_auth_headers(free_user: User) -> dict[str, str]:
    """Return Authorization headers for the free-plan test user."""
    return _auth_headers(free_user)


@pytest.fixture
def notification_types() -> Callable[[User], Awaitable[list[str]]]:
    """Return a function listing a user's in-app notification types, oldest first."""

    async def _types(user: User) -> list[str]:
        entries = await get_notifier().list_for_user(user.id)
        return [entry["type"] for entry in reversed(entries)]

    return _types
