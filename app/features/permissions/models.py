"""
Resource registry, permission groups and audit models.

This module implements the storage side of the dynamic permission layer:
- A three-level resource registry (module -> page -> component)
- Permission groups holding explicit allow/deny entries
- Group membership for users
- An audit log of every permission-related mutation

Rows reference each other by key or foreign key only. There are no ORM
relationships; lookups go through the repository functions.
"""
import enum
from datetime import datetime
from typing import Any, Dict, List
from sqlalchemy import (
    Boolean, DateTime, Enum as SQLEnum, ForeignKey, JSON, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, CreatedAtMixin, TimestampMixin, generate_ulid


# ============================================================================
# Enums
# ============================================================================

class PermissionType(str, enum.Enum):
    """Granularity of a protected resource."""
    MODULE = "MODULE"
    PAGE = "PAGE"
    COMPONENT = "COMPONENT"


class PermissionAction(str, enum.Enum):
    """Verb requested on a resource."""
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    EXECUTE = "EXECUTE"


# ============================================================================
# Resource Registry
# ============================================================================

class PermissionModule(Base, CreatedAtMixin):
    """
    Top-level console area (e.g. ``support``, ``finance``).

    ``allowed_roles`` lists the static roles that see the module without any
    group grant. ADMIN only bypasses group checks for modules listing ADMIN.
    """
    __tablename__ = "permission_modules"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    module_key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    allowed_roles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<PermissionModule(key={self.module_key!r}, roles={self.allowed_roles})>"


class PermissionPage(Base, CreatedAtMixin):
    """A page inside a module. ``page_key`` is unique within its module."""
    __tablename__ = "permission_pages"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    module_key: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    page_key: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    route_path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("module_key", "page_key", name="uq_permission_pages_module_page"),
    )

    @property
    def full_key(self) -> str:
        return f"{self.module_key}.{self.page_key}"

    def __repr__(self) -> str:
        return f"<PermissionPage(key={self.full_key!r})>"


class PermissionComponent(Base, CreatedAtMixin):
    """
    A UI element inside a page.

    ``page_key`` is the composite ``module.page`` key of the owning page.
    """
    __tablename__ = "permission_components"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    page_key: Mapped[str] = mapped_column(String(101), nullable=False, index=True)
    component_key: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    component_type: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("page_key", "component_key", name="uq_permission_components_page_component"),
    )

    def __repr__(self) -> str:
        return f"<PermissionComponent(page={self.page_key!r}, key={self.component_key!r})>"


# ============================================================================
# Groups, Entries and Membership
# ============================================================================

class PermissionGroup(Base, TimestampMixin):
    """Named bundle of permission entries. Inactive groups are ignored by evaluation."""
    __tablename__ = "permission_groups"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<PermissionGroup(id={self.id}, name={self.name!r}, active={self.active})>"


class GroupPermission(Base, CreatedAtMixin):
    """
    One explicit allow (``granted=True``) or deny (``granted=False``) entry.

    The (group, type, resource type, identifier, action) tuple is unique.
    """
    __tablename__ = "group_permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_type: Mapped[PermissionType] = mapped_column(SQLEnum(PermissionType), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_identifier: Mapped[str] = mapped_column(String(101), nullable=False)
    action: Mapped[PermissionAction] = mapped_column(SQLEnum(PermissionAction), nullable=False)
    granted: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "group_id", "permission_type", "resource_type", "resource_identifier", "action",
            name="uq_group_permissions_key",
        ),
    )

    @property
    def permission_key(self) -> str:
        return f"{self.permission_type.value}:{self.resource_type}:{self.resource_identifier}"

    def __repr__(self) -> str:
        verdict = "allow" if self.granted else "deny"
        return f"<GroupPermission(group={self.group_id}, {self.permission_key} {self.action.value} {verdict})>"


class UserGroup(Base):
    """Membership of a user in a permission group."""
    __tablename__ = "user_groups"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    group_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permission_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_by_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_user_groups_user_group"),
    )

    def __repr__(self) -> str:
        return f"<UserGroup(user_id={self.user_id}, group_id={self.group_id})>"


# ============================================================================
# Audit Log
# ============================================================================

class AuditLog(Base, CreatedAtMixin):
    """
    Audit log for tracking permission-related actions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)

    # Context
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
