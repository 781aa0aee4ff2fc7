"""
Permission API routes.

Provides endpoints for permission checks, effective permissions, group
management, group entries, membership and the audit log.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.core.limiter import limiter
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User
from app.features.permissions.evaluator import PermissionEvaluator, build_descriptor, split_page_key
from app.features.permissions.groups import GroupService
from app.features.permissions.models import AuditLog, PermissionAction, PermissionType
from app.features.permissions.schemas import (
    AssignUserToGroup,
    AuditLogListResponse,
    AuditLogResponse,
    EffectivePermissionSet,
    GroupCreate,
    GroupDetailResponse,
    GroupResponse,
    GroupUpdate,
    ListResponse,
    MembershipResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionEntryCreate,
    PermissionEntryResponse,
    PermissionEntryUpdate,
)
from app.features.permissions.dependencies import (
    audit_request,
    ensure_self_or_admin,
    get_evaluator,
    get_group_service,
    require_module_access,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

# Console module guarding the audit log
AUDIT_MODULE_KEY = "admin"


# ============================================================================
# Permission Check Routes
# ============================================================================

async def _check(
    evaluator: PermissionEvaluator,
    user_id: str,
    permission_type: PermissionType,
    resource_type: str,
    resource_identifier: str,
    action: PermissionAction,
) -> PermissionCheckResponse:
    decision = await evaluator.explain(user_id, permission_type, resource_type, resource_identifier, action)
    return PermissionCheckResponse(
        has_permission=decision.allowed,
        user_id=user_id,
        permission_type=permission_type,
        resource_type=resource_type,
        resource_identifier=resource_identifier,
        action=action,
        decided_by=decision.decided_by,
        message=decision.reason,
    )


@router.post("/check", response_model=PermissionCheckResponse)
@limiter.limit(config.RATE_LIMIT)
async def check_permission(
    request: Request,
    check: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    """Check a permission for the current user, or for another user (admin only)."""
    user_id = check.user_id or current_user.id
    ensure_self_or_admin(current_user, user_id)

    result = await _check(
        evaluator, user_id, check.permission_type, check.resource_type, check.resource_identifier, check.action
    )

    if config.AUDIT_PERMISSION_CHECKS:
        await audit_request(
            request, db, current_user,
            action="check",
            resource_type="permission",
            resource_id=build_descriptor(check.permission_type, check.resource_type, check.resource_identifier).key,
            details=result.model_dump(mode="json"),
        )
    return result


@router.get("/check/module/{module_key}", response_model=PermissionCheckResponse)
async def check_module_access(
    module_key: str,
    action: PermissionAction = PermissionAction.READ,
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    return await _check(evaluator, current_user.id, PermissionType.MODULE, module_key, module_key, action)


@router.get("/check/page/{module_key}/{page_key}", response_model=PermissionCheckResponse)
async def check_page_access(
    module_key: str,
    page_key: str,
    action: PermissionAction = PermissionAction.READ,
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    return await _check(evaluator, current_user.id, PermissionType.PAGE, module_key, page_key, action)


@router.get("/check/component/{page_key}/{component_key}", response_model=PermissionCheckResponse)
async def check_component_access(
    page_key: str,
    component_key: str,
    action: PermissionAction = PermissionAction.READ,
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    """``page_key`` is the composite ``module.page`` key (e.g. ``support.chat``)."""
    module_key, page = split_page_key(page_key)
    return await _check(
        evaluator, current_user.id, PermissionType.COMPONENT, module_key, f"{page}.{component_key}", action
    )


# ============================================================================
# Effective Permission Routes
# ============================================================================

@router.get("/me", response_model=EffectivePermissionSet)
async def get_my_permissions(
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    """Everything the current user can do, for the frontend to gate navigation."""
    return await evaluator.get_user_permissions(current_user.id)


@router.get("/users/{user_id}/permissions", response_model=EffectivePermissionSet)
async def get_user_permissions(
    user_id: str,
    evaluator: PermissionEvaluator = Depends(get_evaluator),
    current_user: User = Depends(get_current_user)
):
    ensure_self_or_admin(current_user, user_id)
    return await evaluator.get_user_permissions(user_id)


@router.get("/users/{user_id}/groups", response_model=List[GroupResponse])
async def get_user_groups(
    user_id: str,
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_user)
):
    ensure_self_or_admin(current_user, user_id)
    return await service.list_groups_for_user(user_id)


# ============================================================================
# Group Routes
# ============================================================================

@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    """Create a permission group (admin only)."""
    db_group = await service.create_group(group, current_user.id)
    await audit_request(
        request, db, current_user,
        action="create",
        resource_type="group",
        resource_id=db_group.id,
        details=group.model_dump(mode="json"),
    )
    return db_group


@router.get("/groups", response_model=ListResponse[GroupResponse])
async def list_groups(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    active: Optional[bool] = None,
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    groups, total = await service.list_groups(skip=skip, limit=limit, active=active)
    return ListResponse[GroupResponse](
        items=[GroupResponse.model_validate(g) for g in groups],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/groups/{group_id}", response_model=GroupDetailResponse)
async def get_group(
    group_id: str,
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.describe_group(group_id)


@router.put("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_group = await service.update_group(group_id, group_update)
    await audit_request(
        request, db, current_user,
        action="update",
        resource_type="group",
        resource_id=group_id,
        details=group_update.model_dump(mode="json", exclude_unset=True),
    )
    return db_group


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    group_name = (await service.get_group(group_id)).name
    await service.delete_group(group_id)
    await audit_request(
        request, db, current_user,
        action="delete",
        resource_type="group",
        resource_id=group_id,
        details={"name": group_name},
    )


# ============================================================================
# Group Permission Entry Routes
# ============================================================================

@router.get("/groups/{group_id}/permissions", response_model=List[PermissionEntryResponse])
async def list_group_permissions(
    group_id: str,
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.get_group_permissions(group_id)


@router.post(
    "/groups/{group_id}/permissions",
    response_model=PermissionEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_group_permission(
    group_id: str,
    entry: PermissionEntryCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    """Add an allow or deny entry. Non-owners may only grant access they hold."""
    db_entry = await service.add_permission(group_id, entry, current_user.id)
    await audit_request(
        request, db, current_user,
        action="grant" if db_entry.granted else "deny",
        resource_type="group_permission",
        resource_id=db_entry.id,
        details={"group_id": group_id, **entry.model_dump(mode="json")},
    )
    return db_entry


@router.put("/entries/{permission_id}", response_model=PermissionEntryResponse)
async def update_group_permission(
    permission_id: str,
    entry_update: PermissionEntryUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_entry = await service.update_permission(permission_id, entry_update, current_user.id)
    await audit_request(
        request, db, current_user,
        action="update",
        resource_type="group_permission",
        resource_id=permission_id,
        details=entry_update.model_dump(mode="json", exclude_unset=True),
    )
    return db_entry


@router.delete("/entries/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_permission(
    permission_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    entry = PermissionEntryResponse.model_validate(await service.get_permission(permission_id))
    await service.remove_permission(permission_id)
    await audit_request(
        request, db, current_user,
        action="revoke",
        resource_type="group_permission",
        resource_id=permission_id,
        details=entry.model_dump(mode="json"),
    )


# ============================================================================
# Membership Routes
# ============================================================================

@router.get("/groups/{group_id}/members", response_model=List[MembershipResponse])
async def list_group_members(
    group_id: str,
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.list_members(group_id)


@router.post(
    "/groups/{group_id}/members",
    response_model=MembershipResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_group_member(
    group_id: str,
    assignment: AssignUserToGroup,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    membership = await service.assign_user(group_id, assignment.user_id, current_user.id)
    await audit_request(
        request, db, current_user,
        action="assign",
        resource_type="group_member",
        resource_id=group_id,
        details={"user_id": assignment.user_id},
    )
    return membership


@router.delete("/groups/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_member(
    group_id: str,
    user_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: GroupService = Depends(get_group_service),
    current_user: User = Depends(get_current_admin_user)
):
    await service.remove_user(group_id, user_id)
    await audit_request(
        request, db, current_user,
        action="unassign",
        resource_type="group_member",
        resource_id=group_id,
        details={"user_id": user_id},
    )


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_module_access(AUDIT_MODULE_KEY))
):
    """List audit logs with optional filtering (requires access to the admin module)."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    logs = (await db.execute(stmt)).scalars().all()

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        pages=(total + limit - 1) // limit,
    )
