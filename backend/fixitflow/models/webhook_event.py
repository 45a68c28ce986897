"""Processed webhook event ledger — dedupes provider redeliveries."""

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fixitflow.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class ProcessedWebhookEvent(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per provider event applied to local state.

    Written in the same transaction as the state change, so a failed
    application leaves no row behind and the provider's retry is processed.
    """

    __tablename__ = "processed_webhook_events"

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False, default="applied")

    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    def __repr__(self) -> str:
        return f"<ProcessedWebhookEvent(provider={self.provider}, event_id={self.event_id!r}, type={self.event_type})>"
