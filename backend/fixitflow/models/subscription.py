"""Subscription model — per-user plan, lifecycle status, and provider correlation."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, String, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fixitflow.billing import entitlements
from fixitflow.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's plan tier, status, term, and payment-provider ids."""

    __tablename__ = "subscriptions"

    # One subscription per user (UNIQUE enforces one-to-one)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Plan & status
    plan: Mapped[str] = mapped_column(String(50), nullable=False, default="free", server_default="free")
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active", server_default="active")

    # Term
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    trial_used_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Provider correlation: a provider object maps to at most one subscription
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    paypal_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Compare-and-swap counter for lifecycle writes
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    @property
    def is_premium(self) -> bool:
        return entitlements.is_premium(self)

    @property
    def is_in_trial(self) -> bool:
        return entitlements.is_in_trial(self)

    @property
    def has_premium_access(self) -> bool:
        return entitlements.has_premium_access(self)

    @property
    def provider(self) -> str | None:
        """Name of the payment provider backing this subscription, if any."""
        if self.stripe_subscription_id:
            return "stripe"
        if self.paypal_subscription_id:
            return "paypal"
        return None

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, status={self.status})>"
