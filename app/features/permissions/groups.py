"""
Permission group management.

Groups own permission entries and memberships. Every mutation that can
change what a user is allowed to do invalidates that user's cached
permission set.
"""
from typing import Optional, Sequence, Tuple
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions import repository
from app.features.permissions.cache import PermissionCache
from app.features.permissions.evaluator import PermissionEvaluator, build_descriptor
from app.features.permissions.exceptions import (
    ComponentNotFound,
    CreatorAccessViolation,
    DuplicateKey,
    GroupNotFound,
    ModuleNotFound,
    NameConflict,
    PageNotFound,
    PermissionNotFound,
    UserAlreadyInGroup,
    UserNotInGroup,
)
from app.features.permissions.models import (
    GroupPermission,
    PermissionAction,
    PermissionGroup,
    PermissionType,
    UserGroup,
)
from app.features.permissions.roles import StaticRoleGate, UserRoleSource
from app.features.permissions.schemas import (
    GroupCreate,
    GroupDetailResponse,
    GroupResponse,
    GroupUpdate,
    PermissionEntryCreate,
    PermissionEntryUpdate,
    ResourceDescriptor,
)
from app.utils import get_logger

log = get_logger(__name__)


class GroupService:
    """
    Group, entry and membership operations for one database session.

    Args:
        db: Async session; each mutating call commits
        cache: Optional permission cache to invalidate on changes
        evaluator: Evaluator used for creator-access validation
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[PermissionCache] = None,
        evaluator: Optional[PermissionEvaluator] = None,
    ):
        self.db = db
        self.evaluator = evaluator or PermissionEvaluator(db, cache)
        self.roles = UserRoleSource(db)
        self.gate = StaticRoleGate()

    # ========================================================================
    # Groups
    # ========================================================================

    async def create_group(self, data: GroupCreate, creator_id: str) -> PermissionGroup:
        """
        Raises:
            UserNotFound: unknown creator
            NameConflict: a group with this name exists
        """
        await self.roles.get_user(creator_id)
        if await repository.get_group_by_name(self.db, data.name) is not None:
            raise NameConflict(f"Group with name '{data.name}' already exists")

        group = PermissionGroup(
            name=data.name,
            description=data.description,
            active=data.active,
            created_by_id=creator_id,
        )
        self.db.add(group)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise NameConflict(f"Group with name '{data.name}' already exists")
        await self.db.refresh(group)

        log.info("Created permission group %s (%s) by %s", group.id, group.name, creator_id)
        return group

    async def get_group(self, group_id: str) -> PermissionGroup:
        group = await repository.get_group(self.db, group_id)
        if group is None:
            raise GroupNotFound(group_id)
        return group

    async def list_groups(
        self, skip: int = 0, limit: int = 100, active: Optional[bool] = None
    ) -> Tuple[Sequence[PermissionGroup], int]:
        query = select(PermissionGroup)
        count_query = select(func.count()).select_from(PermissionGroup)
        if active is not None:
            query = query.where(PermissionGroup.active.is_(active))
            count_query = count_query.where(PermissionGroup.active.is_(active))

        total = (await self.db.execute(count_query)).scalar_one()
        result = await self.db.execute(query.order_by(PermissionGroup.name).offset(skip).limit(limit))
        return result.scalars().all(), total

    async def describe_group(self, group_id: str) -> GroupDetailResponse:
        group = await self.get_group(group_id)
        return GroupDetailResponse(
            **GroupResponse.model_validate(group).model_dump(),
            permission_count=await repository.count_entries(self.db, group_id),
            member_count=await repository.count_members(self.db, group_id),
        )

    async def update_group(self, group_id: str, data: GroupUpdate) -> PermissionGroup:
        group = await self.get_group(group_id)

        if data.name is not None and data.name != group.name:
            if await repository.get_group_by_name(self.db, data.name) is not None:
                raise NameConflict(f"Group with name '{data.name}' already exists")
            group.name = data.name
        if data.description is not None:
            group.description = data.description

        activity_changed = data.active is not None and data.active != group.active
        if activity_changed:
            group.active = data.active

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise NameConflict(f"Group with name '{data.name}' already exists")
        await self.db.refresh(group)

        if activity_changed:
            await self._invalidate_members(group_id)
        log.info("Updated permission group %s", group_id)
        return group

    async def delete_group(self, group_id: str) -> None:
        """Delete a group together with its entries and memberships."""
        group = await self.get_group(group_id)
        member_ids = await repository.list_member_ids(self.db, group_id)

        await self.db.execute(delete(GroupPermission).where(GroupPermission.group_id == group_id))
        await self.db.execute(delete(UserGroup).where(UserGroup.group_id == group_id))
        await self.db.delete(group)
        await self.db.commit()

        await self.evaluator.invalidate_users(member_ids)
        log.info("Deleted permission group %s (%d members affected)", group_id, len(member_ids))

    # ========================================================================
    # Permission entries
    # ========================================================================

    async def add_permission(self, group_id: str, data: PermissionEntryCreate, actor_id: str) -> GroupPermission:
        """
        Add an allow or deny entry to a group.

        Raises:
            GroupNotFound: unknown group
            InvalidPermissionKey: malformed key
            ModuleNotFound, PageNotFound, ComponentNotFound: unregistered resource
            DuplicateKey: the group already has an entry for this key and action
            CreatorAccessViolation: the actor does not hold the access being granted
        """
        await self.get_group(group_id)
        descriptor = build_descriptor(data.permission_type, data.resource_type, data.resource_identifier)
        await self._ensure_registered(descriptor)

        existing = await repository.find_entry(
            self.db, group_id, descriptor.permission_type, descriptor.resource_type,
            descriptor.resource_identifier, data.action,
        )
        if existing is not None:
            raise DuplicateKey(self._duplicate_message(descriptor, data.action))

        if data.granted:
            await self._validate_creator_access(actor_id, descriptor, data.action)

        entry = GroupPermission(
            group_id=group_id,
            permission_type=descriptor.permission_type,
            resource_type=descriptor.resource_type,
            resource_identifier=descriptor.resource_identifier,
            action=data.action,
            granted=data.granted,
        )
        self.db.add(entry)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateKey(self._duplicate_message(descriptor, data.action))
        await self.db.refresh(entry)

        await self._invalidate_members(group_id)
        log.info(
            "Added %s %s %s to group %s",
            "grant" if entry.granted else "deny", descriptor.key, data.action.value, group_id,
        )
        return entry

    async def update_permission(
        self, permission_id: str, data: PermissionEntryUpdate, actor_id: str
    ) -> GroupPermission:
        """Apply a partial update; the resulting entry is validated like a new one."""
        entry = await self._get_entry(permission_id)

        descriptor = build_descriptor(
            data.permission_type or entry.permission_type,
            data.resource_type or entry.resource_type,
            data.resource_identifier or entry.resource_identifier,
        )
        action = data.action or entry.action
        granted = entry.granted if data.granted is None else data.granted

        await self._ensure_registered(descriptor)
        occupant = await repository.find_entry(
            self.db, entry.group_id, descriptor.permission_type, descriptor.resource_type,
            descriptor.resource_identifier, action,
        )
        if occupant is not None and occupant.id != entry.id:
            raise DuplicateKey(self._duplicate_message(descriptor, action))

        if granted:
            await self._validate_creator_access(actor_id, descriptor, action)

        entry.permission_type = descriptor.permission_type
        entry.resource_type = descriptor.resource_type
        entry.resource_identifier = descriptor.resource_identifier
        entry.action = action
        entry.granted = granted
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateKey(self._duplicate_message(descriptor, action))
        await self.db.refresh(entry)

        await self._invalidate_members(entry.group_id)
        log.info("Updated permission entry %s", permission_id)
        return entry

    async def remove_permission(self, permission_id: str) -> None:
        entry = await self._get_entry(permission_id)
        group_id = entry.group_id
        await self.db.delete(entry)
        await self.db.commit()

        await self._invalidate_members(group_id)
        log.info("Removed permission entry %s from group %s", permission_id, group_id)

    async def get_group_permissions(self, group_id: str) -> Sequence[GroupPermission]:
        await self.get_group(group_id)
        return await repository.list_entries_for_group(self.db, group_id)

    async def get_permission(self, permission_id: str) -> GroupPermission:
        return await self._get_entry(permission_id)

    # ========================================================================
    # Membership
    # ========================================================================

    async def assign_user(self, group_id: str, user_id: str, assigned_by: Optional[str] = None) -> UserGroup:
        """
        Raises:
            GroupNotFound, UserNotFound: unknown group or user
            UserAlreadyInGroup: membership exists
        """
        await self.get_group(group_id)
        await self.roles.get_user(user_id)
        if await repository.get_membership(self.db, group_id, user_id) is not None:
            raise UserAlreadyInGroup(user_id, group_id)

        membership = UserGroup(user_id=user_id, group_id=group_id, assigned_by_id=assigned_by)
        self.db.add(membership)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise UserAlreadyInGroup(user_id, group_id)
        await self.db.refresh(membership)

        await self.evaluator.invalidate_user(user_id)
        log.info("Assigned user %s to group %s", user_id, group_id)
        return membership

    async def remove_user(self, group_id: str, user_id: str) -> None:
        await self.get_group(group_id)
        membership = await repository.get_membership(self.db, group_id, user_id)
        if membership is None:
            raise UserNotInGroup(user_id, group_id)

        await self.db.delete(membership)
        await self.db.commit()

        await self.evaluator.invalidate_user(user_id)
        log.info("Removed user %s from group %s", user_id, group_id)

    async def list_members(self, group_id: str) -> Sequence[UserGroup]:
        await self.get_group(group_id)
        return await repository.list_memberships_for_group(self.db, group_id)

    async def list_groups_for_user(self, user_id: str) -> Sequence[PermissionGroup]:
        await self.roles.get_user(user_id)
        return await repository.list_groups_for_user(self.db, user_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_entry(self, permission_id: str) -> GroupPermission:
        entry = await repository.get_entry(self.db, permission_id)
        if entry is None:
            raise PermissionNotFound(permission_id)
        return entry

    async def _ensure_registered(self, descriptor: ResourceDescriptor) -> None:
        module_key = descriptor.resource_type
        if await repository.get_module(self.db, module_key) is None:
            raise ModuleNotFound(module_key)
        if descriptor.permission_type == PermissionType.MODULE:
            return

        page_key = descriptor.resource_identifier.split(".", 1)[0]
        if await repository.get_page(self.db, module_key, page_key) is None:
            raise PageNotFound(f"{module_key}.{page_key}")
        if descriptor.permission_type == PermissionType.PAGE:
            return

        component_key = descriptor.resource_identifier.split(".", 1)[1]
        if await repository.get_component(self.db, f"{module_key}.{page_key}", component_key) is None:
            raise ComponentNotFound(f"{module_key}.{descriptor.resource_identifier}")

    async def _validate_creator_access(
        self, actor_id: str, descriptor: ResourceDescriptor, action: PermissionAction
    ) -> None:
        """A non-owner may only grant access they hold, on modules open to their role."""
        actor = await self.roles.get_user(actor_id)
        if self.gate.is_owner(actor):
            return

        module = await repository.get_module(self.db, descriptor.resource_type)
        if not self.gate.role_listed(actor.role, module):
            log.warning("Creator access violation: %s cannot grant on module %s", actor_id, descriptor.resource_type)
            raise CreatorAccessViolation(
                f"Role {actor.role.value} may not grant permissions on module '{descriptor.resource_type}'"
            )

        if not await self.evaluator.has_permission(
            actor_id, descriptor.permission_type, descriptor.resource_type, descriptor.resource_identifier, action
        ):
            log.warning("Creator access violation: %s lacks %s %s", actor_id, descriptor.key, action.value)
            raise CreatorAccessViolation(
                f"Cannot grant {action.value} on {descriptor.key} without holding it"
            )

    async def _invalidate_members(self, group_id: str) -> None:
        await self.evaluator.invalidate_users(await repository.list_member_ids(self.db, group_id))

    @staticmethod
    def _duplicate_message(descriptor: ResourceDescriptor, action: PermissionAction) -> str:
        return f"Group already has an entry for {descriptor.key} {action.value}"
