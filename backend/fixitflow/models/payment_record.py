"""Payment record model — revenue ledger fed by provider payment events."""

import uuid

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fixitflow.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class PaymentRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A single successful payment. Anonymous purchases have no user_id."""

    __tablename__ = "payment_records"

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan: Mapped[str] = mapped_column(String(50), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_payment_provider_payment"),
    )

    def __repr__(self) -> str:
        return f"<PaymentRecord(provider={self.provider}, id={self.provider_payment_id!r}, amount={self.amount_cents})>"
