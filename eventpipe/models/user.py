"""
User model.

Represents a member of an organisation with a specific role.
"""
from sqlalchemy import String, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
import enum
from eventpipe.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class UserRole(str, enum.Enum):
    """Membership role. Owners receive billing notifications."""
    OWNER = "OWNER"
    MEMBER = "MEMBER"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """
    User model representing a member of an organisation.

    Every user row counts as one active seat of its organisation.
    """
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    org_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("organisations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, native_enum=False),
        nullable=False,
        default=UserRole.MEMBER
    )

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, org_id={self.org_id}, role={self.role})>"
