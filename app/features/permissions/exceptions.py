"""
Typed errors raised by the permission services.

Each error carries the HTTP status and a stable error code; ``app.main``
registers a single handler that renders them as JSON.
"""
from fastapi import status


class PermissionException(Exception):
    """Base class for every permission-layer error."""
    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "permission_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class GroupNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "group_not_found"

    def __init__(self, group_id: str):
        super().__init__(f"Permission group not found: {group_id}")
        self.group_id = group_id


class PermissionNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "permission_not_found"

    def __init__(self, permission_id: str):
        super().__init__(f"Permission entry not found: {permission_id}")
        self.permission_id = permission_id


class UserNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "user_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class ModuleNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "module_not_found"

    def __init__(self, module: str):
        super().__init__(f"Module not found: {module}")


class PageNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "page_not_found"

    def __init__(self, page: str):
        super().__init__(f"Page not found: {page}")


class ComponentNotFound(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "component_not_found"

    def __init__(self, component: str):
        super().__init__(f"Component not found: {component}")


class NameConflict(PermissionException):
    """A group name or registry key is already taken."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "name_conflict"


class DuplicateKey(PermissionException):
    """The group already holds an entry for this (key, action) tuple."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "duplicate_permission"


class UserAlreadyInGroup(PermissionException):
    status_code = status.HTTP_409_CONFLICT
    error_code = "user_already_in_group"

    def __init__(self, user_id: str, group_id: str):
        super().__init__(f"User {user_id} is already a member of group {group_id}")


class UserNotInGroup(PermissionException):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "user_not_in_group"

    def __init__(self, user_id: str, group_id: str):
        super().__init__(f"User {user_id} is not a member of group {group_id}")


class CreatorAccessViolation(PermissionException):
    """An actor tried to grant access they do not hold themselves."""
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "creator_access_violation"


class RegistryConflict(PermissionException):
    """A registry entry cannot be removed while dependents reference it."""
    status_code = status.HTTP_409_CONFLICT
    error_code = "registry_conflict"


class InvalidPermissionKey(PermissionException):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "invalid_permission_key"
