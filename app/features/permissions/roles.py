"""
Static role layer.

Roles are checked before any group lookup and can only ever grant: OWNER
sees everything, ADMIN sees the modules whose ``allowed_roles`` list ADMIN.
"""
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions import repository
from app.features.permissions.exceptions import UserNotFound
from app.features.permissions.models import PermissionModule
from app.features.users.models import User, UserRole


class UserRoleSource:
    """Reads users and their static role from the users table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user(self, user_id: str) -> User:
        user = await repository.get_user(self.db, user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def get_role(self, user_id: str) -> UserRole:
        return (await self.get_user(user_id)).role

    async def is_owner(self, user_id: str) -> bool:
        return await self.get_role(user_id) == UserRole.OWNER


class StaticRoleGate:
    """Pure role checks; takes already-loaded users and modules."""

    @staticmethod
    def is_owner(user: User) -> bool:
        return user.role == UserRole.OWNER

    @staticmethod
    def role_listed(role: UserRole, module: Optional[PermissionModule]) -> bool:
        """True if ``module.allowed_roles`` names ``role``. An empty list names nobody."""
        if module is None:
            return False
        return role.value in (module.allowed_roles or [])

    @classmethod
    def is_admin_eligible(cls, user: User, module: Optional[PermissionModule]) -> bool:
        """
        Whether the user's role alone grants access to ``module``.

        OWNER is always eligible. ADMIN is eligible only for modules that
        explicitly list ADMIN. USER is never eligible.
        """
        if cls.is_owner(user):
            return True
        return user.role == UserRole.ADMIN and cls.role_listed(UserRole.ADMIN, module)

    @classmethod
    def can_see_module(cls, user: User, module: PermissionModule) -> bool:
        """Module visibility for navigation: OWNER sees all, others need their role listed."""
        return cls.is_owner(user) or cls.role_listed(user.role, module)
