"""
Webhook models.

WebhookEndpoint is a tenant-owned delivery target; WebhookDelivery is the
per-(endpoint, event) ledger updated in place on every attempt.
"""
from datetime import datetime
from typing import Any
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from eventpipe.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class WebhookEndpoint(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Tenant-configured URL + signing secret.

    Endpoints are soft-disabled (enabled=False) rather than deleted so their
    delivery history stays intact.
    """
    __tablename__ = "webhook_endpoints"

    org_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    secret: Mapped[str] = mapped_column(String(255), nullable=False)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def subscribes_to(self, event_type: str) -> bool:
        return "*" in self.events or event_type in self.events

    def __repr__(self):
        return f"<WebhookEndpoint(id={self.id}, org_id={self.org_id}, enabled={self.enabled})>"


class WebhookDelivery(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Outbound delivery ledger row.

    At any time exactly one of delivered_at, failed_at or a pending
    next_retry_at describes the state. next_retry_at is informational only;
    the job queue owns rescheduling.
    """
    __tablename__ = "webhook_deliveries"

    endpoint_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    org_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_headers: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def status(self) -> str:
        if self.delivered_at:
            return "delivered"
        if self.failed_at:
            return "failed"
        return "pending"

    def __repr__(self):
        return f"<WebhookDelivery(id={self.id}, event={self.event_type}, attempt={self.attempt_number}, status={self.status})>"
