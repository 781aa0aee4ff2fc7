"""
User model with ULID primary keys.
"""
import enum
from sqlalchemy import String, Boolean, Index, Enum as SQLEnum, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class UserRole(str, enum.Enum):
    """Static role of a console user. Exactly one user may be OWNER."""
    USER = "USER"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


class User(Base, TimestampMixin):
    """
    User model representing console accounts.

    Only ``role`` takes part in permission evaluation; everything else is
    profile data.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole),
        default=UserRole.USER,
        nullable=False,
        index=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        # At most one OWNER row
        Index(
            "uq_users_single_owner",
            "role",
            unique=True,
            sqlite_where=text("role = 'OWNER'"),
            postgresql_where=text("role = 'OWNER'"),
        ),
    )

    @property
    def is_owner(self) -> bool:
        return self.role == UserRole.OWNER

    @property
    def is_admin(self) -> bool:
        """OWNER counts as admin for console-management endpoints."""
        return self.role in (UserRole.ADMIN, UserRole.OWNER)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, role={self.role})>"
