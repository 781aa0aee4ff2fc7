"""
FastAPI dependencies for permission evaluation, services and audit logging.

Route protection is explicit: a route depends on ``require_permission(...)``,
which evaluates the check for the authenticated user and returns that user.
"""
from typing import Any, Dict, Optional, Union
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.permissions.cache import PermissionCache, PermissionCacheClient
from app.features.permissions.evaluator import PermissionEvaluator
from app.features.permissions.groups import GroupService
from app.features.permissions.models import AuditLog, PermissionAction, PermissionType
from app.features.permissions.registry import RegistryService
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.utils import get_logger

log = get_logger(__name__)


# ============================================================================
# Service providers
# ============================================================================

def get_permission_cache() -> Optional[PermissionCache]:
    return PermissionCacheClient.get_cache()


async def get_evaluator(
    db: AsyncSession = Depends(get_db),
    cache: Optional[PermissionCache] = Depends(get_permission_cache),
) -> PermissionEvaluator:
    return PermissionEvaluator(db, cache)


async def get_group_service(
    db: AsyncSession = Depends(get_db),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
) -> GroupService:
    return GroupService(db, evaluator=evaluator)


async def get_registry_service(
    db: AsyncSession = Depends(get_db),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
) -> RegistryService:
    return RegistryService(db, evaluator=evaluator)


# ============================================================================
# Route guards
# ============================================================================

def require_permission(
    permission_type: Union[PermissionType, str],
    resource_type: str,
    resource_identifier: str,
    action: Union[PermissionAction, str] = PermissionAction.READ,
):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.delete("/support/chat/messages/{message_id}")
        async def delete_message(
            user: User = Depends(require_permission("COMPONENT", "support", "chat.delete_message", "WRITE"))
        ):
            pass

    Args:
        permission_type: MODULE, PAGE or COMPONENT
        resource_type: Module key
        resource_identifier: Module key, page key or ``page.component``
        action: Requested action

    Returns:
        Dependency function that returns the current user if the check passes

    Raises:
        HTTPException: 403 if the check is denied
    """
    async def permission_dependency(
        current_user: User = Depends(get_current_user),
        evaluator: PermissionEvaluator = Depends(get_evaluator),
    ) -> User:
        if not await evaluator.has_permission(
            current_user.id, permission_type, resource_type, resource_identifier, action
        ):
            log.info(
                "Denied %s on %s:%s:%s for user %s",
                action, permission_type, resource_type, resource_identifier, current_user.id,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {PermissionAction(action).value} on {resource_type}/{resource_identifier}",
            )
        return current_user

    return permission_dependency


def require_module_access(module_key: str, action: Union[PermissionAction, str] = PermissionAction.READ):
    """Shorthand for a MODULE-level ``require_permission``."""
    return require_permission(PermissionType.MODULE, module_key, module_key, action)


def ensure_self_or_admin(current_user: User, user_id: str) -> None:
    """Users may inspect themselves; inspecting others takes ADMIN or OWNER."""
    if current_user.id != user_id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required to inspect other users",
        )


# ============================================================================
# Audit log
# ============================================================================

async def create_audit_log(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "assign", "check")
        resource_type: Type of resource (e.g., "group", "group_permission", "module")
        resource_id: ID or key of the resource
        details: Additional details
        ip_address: Client IP address
        user_agent: Client user agent

    Returns:
        Created AuditLog object
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=ip_address,
        user_agent=user_agent
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    log.info(f"Audit: user={user_id} action={action} resource={resource_type}:{resource_id}")

    return audit_log


async def audit_request(
    request: Request,
    db: AsyncSession,
    user: User,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """``create_audit_log`` with actor, client IP and user agent taken from the request."""
    return await create_audit_log(
        db=db,
        user_id=user.id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
