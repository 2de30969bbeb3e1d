"""
Usage record model.

One row per (org, metric_type, period_start), flushed from Redis counters.
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from eventpipe.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class MetricType(str, enum.Enum):
    """Metered usage metric."""
    API_CALLS = "api_calls"
    ACTIVE_SEATS = "active_seats"


class UsageRecord(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Durable usage quantity for one org/metric/period."""
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("org_id", "metric_type", "period_start", name="uq_usage_org_metric_period"),
    )

    org_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    metric_type: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reported_to_stripe: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stripe_usage_record_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<UsageRecord(org_id={self.org_id}, metric={self.metric_type}, start={self.period_start}, qty={self.quantity})>"
