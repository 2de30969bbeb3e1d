"""
Incoming webhook event model.

Durable record of a raw provider event. processed_at is the idempotency gate.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import Boolean, DateTime, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from eventpipe.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class IncomingWebhookEvent(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Raw provider event, unique per (provider, event_id)."""
    __tablename__ = "incoming_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_incoming_webhook_provider_event"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<IncomingWebhookEvent(id={self.id}, provider={self.provider}, type={self.event_type})>"
