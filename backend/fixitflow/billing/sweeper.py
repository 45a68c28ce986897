"""Lifecycle sweeper — demotes lapsed subscriptions and warns before expiry.

The expiry check also runs inline before every entitlement decision, so the
periodic loop is housekeeping only (proactive expired / expiring-soon
notifications). It is started from the app lifespan when
``SWEEPER_INTERVAL_SECONDS`` is greater than zero.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fixitflow.billing.clock import utcnow
from fixitflow.billing.plans import get_plan
from fixitflow.config import settings
from fixitflow.database import async_session_factory
from fixitflow.models.subscription import Subscription
from fixitflow.models.user import User
from fixitflow.services.notification_service import get_notifier
from fixitflow.services.subscription_service import expire_if_past_due
from fixitflow.stores import get_store

logger = logging.getLogger(__name__)

_LIVE_STATUSES = ("active", "trial")


async def sweep_expired(db: AsyncSession, now: datetime | None = None) -> int:
    """Demote every subscription whose term has ended. Returns how many changed."""
    now = now or utcnow()
    result = await db.execute(
        select(Subscription).where(
            Subscription.status.in_(_LIVE_STATUSES),
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        )
    )
    expired = 0
    for subscription in result.scalars().all():
        if await expire_if_past_due(db, subscription, now):
            expired += 1
    if expired:
        logger.info("Sweeper expired %d subscription(s)", expired)
    return expired


async def warn_expiring(db: AsyncSession, now: datetime | None = None) -> int:
    """Send one expiring-soon notification per subscription term. Returns how many were sent."""
    now = now or utcnow()
    horizon = now + timedelta(days=settings.expiry_warning_days)
    result = await db.execute(
        select(Subscription).where(
            Subscription.status.in_(_LIVE_STATUSES),
            Subscription.end_date.is_not(None),
            Subscription.end_date >= now,
            Subscription.end_date <= horizon,
        )
    )

    store = get_store()
    sent = 0
    for subscription in result.scalars().all():
        marker = f"expiry-warning:{subscription.id}:{subscription.end_date.isoformat()}"
        ttl = int((subscription.end_date - now).total_seconds()) + 86400
        if not await store.add(marker, "1", ttl_seconds=ttl):
            continue
        days = max(1, (subscription.end_date - now).days)
        await get_notifier().notify(
            await db.get(User, subscription.user_id),
            "subscription_expiring",
            {
                "plan_name": get_plan(subscription.plan).display_name,
                "days": days,
                "end_date": subscription.end_date.date().isoformat(),
            },
        )
        sent += 1
    return sent


async def run_sweep_once(now: datetime | None = None) -> tuple[int, int]:
    """One sweeper pass in its own session."""
    async with async_session_factory() as db:
        try:
            expired = await sweep_expired(db, now)
            warned = await warn_expiring(db, now)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return expired, warned


async def run_sweeper_loop(interval_seconds: int) -> None:
    """Run the sweeper every ``interval_seconds`` until cancelled."""
    logger.info("Lifecycle sweeper started (every %ds)", interval_seconds)
    while True:
        try:
            await run_sweep_once()
        except Exception:
            logger.exception("Lifecycle sweeper pass failed")
        await asyncio.sleep(interval_seconds)
