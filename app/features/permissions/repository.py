"""
Query helpers for the permission tables.

Everything here is a thin ``select`` (or bulk ``delete``) over one table;
services combine them.
"""
from typing import Iterable, List, Optional, Sequence
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import (
    GroupPermission,
    PermissionComponent,
    PermissionGroup,
    PermissionModule,
    PermissionPage,
    UserGroup,
)
from app.features.users.models import User


# ============================================================================
# Users
# ============================================================================

async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


# ============================================================================
# Registry
# ============================================================================

async def get_module(db: AsyncSession, module_key: str) -> Optional[PermissionModule]:
    result = await db.execute(select(PermissionModule).where(PermissionModule.module_key == module_key))
    return result.scalar_one_or_none()


async def get_page(db: AsyncSession, module_key: str, page_key: str) -> Optional[PermissionPage]:
    result = await db.execute(
        select(PermissionPage).where(
            PermissionPage.module_key == module_key,
            PermissionPage.page_key == page_key,
        )
    )
    return result.scalar_one_or_none()


async def get_component(db: AsyncSession, page_key: str, component_key: str) -> Optional[PermissionComponent]:
    result = await db.execute(
        select(PermissionComponent).where(
            PermissionComponent.page_key == page_key,
            PermissionComponent.component_key == component_key,
        )
    )
    return result.scalar_one_or_none()


async def list_all_modules(db: AsyncSession) -> Sequence[PermissionModule]:
    result = await db.execute(select(PermissionModule).order_by(PermissionModule.module_key))
    return result.scalars().all()


async def list_all_pages(db: AsyncSession) -> Sequence[PermissionPage]:
    result = await db.execute(
        select(PermissionPage).order_by(PermissionPage.module_key, PermissionPage.page_key)
    )
    return result.scalars().all()


async def list_all_components(db: AsyncSession) -> Sequence[PermissionComponent]:
    result = await db.execute(
        select(PermissionComponent).order_by(PermissionComponent.page_key, PermissionComponent.component_key)
    )
    return result.scalars().all()


async def list_pages_in_modules(db: AsyncSession, module_keys: Iterable[str]) -> Sequence[PermissionPage]:
    keys = list(module_keys)
    if not keys:
        return []
    result = await db.execute(select(PermissionPage).where(PermissionPage.module_key.in_(keys)))
    return result.scalars().all()


async def list_components_in_pages(db: AsyncSession, page_keys: Iterable[str]) -> Sequence[PermissionComponent]:
    keys = list(page_keys)
    if not keys:
        return []
    result = await db.execute(select(PermissionComponent).where(PermissionComponent.page_key.in_(keys)))
    return result.scalars().all()


async def count_pages(db: AsyncSession, module_key: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(PermissionPage).where(PermissionPage.module_key == module_key)
    )
    return result.scalar_one()


async def count_components(db: AsyncSession, page_key: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(PermissionComponent).where(PermissionComponent.page_key == page_key)
    )
    return result.scalar_one()


# ============================================================================
# Groups and Entries
# ============================================================================

async def get_group(db: AsyncSession, group_id: str) -> Optional[PermissionGroup]:
    result = await db.execute(select(PermissionGroup).where(PermissionGroup.id == group_id))
    return result.scalar_one_or_none()


async def get_group_by_name(db: AsyncSession, name: str) -> Optional[PermissionGroup]:
    result = await db.execute(select(PermissionGroup).where(PermissionGroup.name == name))
    return result.scalar_one_or_none()


async def get_entry(db: AsyncSession, permission_id: str) -> Optional[GroupPermission]:
    result = await db.execute(select(GroupPermission).where(GroupPermission.id == permission_id))
    return result.scalar_one_or_none()


async def find_entry(
    db: AsyncSession,
    group_id: str,
    permission_type,
    resource_type: str,
    resource_identifier: str,
    action,
) -> Optional[GroupPermission]:
    """Look up the entry occupying a unique (group, key, action) slot."""
    result = await db.execute(
        select(GroupPermission).where(
            GroupPermission.group_id == group_id,
            GroupPermission.permission_type == permission_type,
            GroupPermission.resource_type == resource_type,
            GroupPermission.resource_identifier == resource_identifier,
            GroupPermission.action == action,
        )
    )
    return result.scalar_one_or_none()


async def list_entries_for_group(db: AsyncSession, group_id: str) -> Sequence[GroupPermission]:
    result = await db.execute(
        select(GroupPermission)
        .where(GroupPermission.group_id == group_id)
        .order_by(GroupPermission.created_at, GroupPermission.id)
    )
    return result.scalars().all()


async def list_entries_for_groups(db: AsyncSession, group_ids: Iterable[str]) -> Sequence[GroupPermission]:
    ids = list(group_ids)
    if not ids:
        return []
    result = await db.execute(select(GroupPermission).where(GroupPermission.group_id.in_(ids)))
    return result.scalars().all()


async def count_entries(db: AsyncSession, group_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(GroupPermission).where(GroupPermission.group_id == group_id)
    )
    return result.scalar_one()


async def delete_entries_for_key(
    db: AsyncSession, permission_type, resource_type: str, resource_identifier: str
) -> int:
    """Delete every group entry targeting one registry key; the caller commits."""
    result = await db.execute(
        delete(GroupPermission).where(
            GroupPermission.permission_type == permission_type,
            GroupPermission.resource_type == resource_type,
            GroupPermission.resource_identifier == resource_identifier,
        )
    )
    return result.rowcount


# ============================================================================
# Membership
# ============================================================================

async def get_membership(db: AsyncSession, group_id: str, user_id: str) -> Optional[UserGroup]:
    result = await db.execute(
        select(UserGroup).where(UserGroup.group_id == group_id, UserGroup.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def list_memberships_for_group(db: AsyncSession, group_id: str) -> Sequence[UserGroup]:
    result = await db.execute(
        select(UserGroup).where(UserGroup.group_id == group_id).order_by(UserGroup.assigned_at, UserGroup.id)
    )
    return result.scalars().all()


async def list_member_ids(db: AsyncSession, group_id: str) -> List[str]:
    result = await db.execute(select(UserGroup.user_id).where(UserGroup.group_id == group_id))
    return list(result.scalars().all())


async def count_members(db: AsyncSession, group_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(UserGroup).where(UserGroup.group_id == group_id)
    )
    return result.scalar_one()


async def list_groups_for_user(db: AsyncSession, user_id: str, active_only: bool = False) -> Sequence[PermissionGroup]:
    query = (
        select(PermissionGroup)
        .join(UserGroup, UserGroup.group_id == PermissionGroup.id)
        .where(UserGroup.user_id == user_id)
        .order_by(PermissionGroup.name)
    )
    if active_only:
        query = query.where(PermissionGroup.active.is_(True))
    result = await db.execute(query)
    return result.scalars().all()
