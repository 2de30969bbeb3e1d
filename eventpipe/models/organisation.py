"""
Organisation model.

Represents a tenant organisation in the multi-tenant system.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column
from eventpipe.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Organisation(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    Organisation model representing a tenant in the system.

    The pipeline reads organisations to snapshot seats and to resolve
    notification recipients; it never creates them.
    """
    __tablename__ = "organisations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self):
        return f"<Organisation(id={self.id}, name={self.name})>"
