"""
Resource registry API routes.

Reads are open to any authenticated user; writes and maintenance need ADMIN
or OWNER and are written to the audit log.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User, UserRole
from app.features.permissions.dependencies import audit_request, get_registry_service
from app.features.permissions.registry import RegistryService, parse_registry_csv
from app.features.permissions.schemas import (
    BulkComponentCreate,
    BulkComponentDelete,
    BulkComponentUpdate,
    BulkModuleCreate,
    BulkModuleDelete,
    BulkModuleUpdate,
    BulkPageCreate,
    BulkPageDelete,
    BulkPageUpdate,
    BulkResult,
    CleanupResult,
    ComponentCreate,
    ComponentResponse,
    ComponentUpdate,
    ConflictResolution,
    ExportFormat,
    ListResponse,
    ModuleCreate,
    ModuleResponse,
    ModuleUpdate,
    PageCreate,
    PageResponse,
    PageUpdate,
    RegistryExport,
    RegistryHealthReport,
    RegistryImportRequest,
    RegistryImportResult,
    RegistryValidationResult,
)
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _page(items, total: int, skip: int, limit: int, schema) -> ListResponse:
    return ListResponse(items=[schema.model_validate(i) for i in items], total=total, skip=skip, limit=limit)


# ============================================================================
# Module Routes
# ============================================================================

@router.get("/modules", response_model=ListResponse[ModuleResponse])
async def list_modules(
    q: Optional[str] = Query(None, description="Search key, name and description"),
    role: Optional[UserRole] = Query(None, description="Only modules listing this role"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    if q:
        items, total = await service.search_modules(q, skip, limit)
    elif role:
        items, total = await service.filter_modules_by_role(role, skip, limit)
    else:
        items, total = await service.list_modules(skip, limit)
    return _page(items, total, skip, limit, ModuleResponse)


@router.get("/available-modules", response_model=List[ModuleResponse])
async def list_available_modules(
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    """Modules the current user's role may see in navigation."""
    return await service.get_available_modules(current_user.id)


@router.post("/modules", response_model=ModuleResponse, status_code=status.HTTP_201_CREATED)
async def create_module(
    module: ModuleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_module = await service.create_module(module)
    await audit_request(
        request, db, current_user, action="create", resource_type="module",
        resource_id=db_module.module_key, details=module.model_dump(mode="json"),
    )
    return db_module


@router.get("/modules/{module_key}", response_model=ModuleResponse)
async def get_module(
    module_key: str,
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_module(module_key)


@router.get("/modules/{module_key}/pages", response_model=List[PageResponse])
async def get_module_pages(
    module_key: str,
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_module_pages(module_key)


@router.put("/modules/{module_key}", response_model=ModuleResponse)
async def update_module(
    module_key: str,
    module_update: ModuleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_module = await service.update_module(module_key, module_update)
    await audit_request(
        request, db, current_user, action="update", resource_type="module",
        resource_id=module_key, details=module_update.model_dump(mode="json", exclude_unset=True),
    )
    return db_module


@router.delete("/modules/{module_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_module(
    module_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    await service.delete_module(module_key)
    await audit_request(request, db, current_user, action="delete", resource_type="module", resource_id=module_key)


# ============================================================================
# Page Routes
# ============================================================================

@router.get("/pages", response_model=ListResponse[PageResponse])
async def list_pages(
    q: Optional[str] = Query(None, description="Search key, name, route and description"),
    module_key: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    if q:
        items, total = await service.search_pages(q, skip, limit)
    elif module_key:
        items, total = await service.filter_pages_by_module(module_key, skip, limit)
    else:
        items, total = await service.list_pages(skip, limit)
    return _page(items, total, skip, limit, PageResponse)


@router.post("/pages", response_model=PageResponse, status_code=status.HTTP_201_CREATED)
async def create_page(
    page: PageCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_page = await service.create_page(page)
    await audit_request(
        request, db, current_user, action="create", resource_type="page",
        resource_id=db_page.full_key, details=page.model_dump(mode="json"),
    )
    return db_page


@router.get("/pages/{module_key}/{page_key}", response_model=PageResponse)
async def get_page(
    module_key: str,
    page_key: str,
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_page(module_key, page_key)


@router.get("/pages/{module_key}/{page_key}/components", response_model=List[ComponentResponse])
async def get_page_components(
    module_key: str,
    page_key: str,
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_page_components(f"{module_key}.{page_key}")


@router.put("/pages/{module_key}/{page_key}", response_model=PageResponse)
async def update_page(
    module_key: str,
    page_key: str,
    page_update: PageUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_page = await service.update_page(module_key, page_key, page_update)
    await audit_request(
        request, db, current_user, action="update", resource_type="page",
        resource_id=db_page.full_key, details=page_update.model_dump(mode="json", exclude_unset=True),
    )
    return db_page


@router.delete("/pages/{module_key}/{page_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_page(
    module_key: str,
    page_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    await service.delete_page(module_key, page_key)
    await audit_request(
        request, db, current_user, action="delete", resource_type="page", resource_id=f"{module_key}.{page_key}",
    )


# ============================================================================
# Component Routes
# ============================================================================

@router.get("/components", response_model=ListResponse[ComponentResponse])
async def list_components(
    q: Optional[str] = Query(None, description="Search key, name and description"),
    page_key: Optional[str] = Query(None, description="Composite 'module.page' key"),
    component_type: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    if q:
        items, total = await service.search_components(q, skip, limit)
    elif page_key:
        items, total = await service.filter_components_by_page(page_key, skip, limit)
    elif component_type:
        items, total = await service.filter_components_by_type(component_type, skip, limit)
    else:
        items, total = await service.list_components(skip, limit)
    return _page(items, total, skip, limit, ComponentResponse)


@router.post("/components", response_model=ComponentResponse, status_code=status.HTTP_201_CREATED)
async def create_component(
    component: ComponentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_component = await service.create_component(component)
    await audit_request(
        request, db, current_user, action="create", resource_type="component",
        resource_id=f"{component.page_key}.{component.component_key}", details=component.model_dump(mode="json"),
    )
    return db_component


@router.get("/components/{page_key}/{component_key}", response_model=ComponentResponse)
async def get_component(
    page_key: str,
    component_key: str,
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_user)
):
    return await service.get_component(page_key, component_key)


@router.put("/components/{page_key}/{component_key}", response_model=ComponentResponse)
async def update_component(
    page_key: str,
    component_key: str,
    component_update: ComponentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    db_component = await service.update_component(page_key, component_key, component_update)
    await audit_request(
        request, db, current_user, action="update", resource_type="component",
        resource_id=f"{page_key}.{component_key}",
        details=component_update.model_dump(mode="json", exclude_unset=True),
    )
    return db_component


@router.delete("/components/{page_key}/{component_key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_component(
    page_key: str,
    component_key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    await service.delete_component(page_key, component_key)
    await audit_request(
        request, db, current_user, action="delete", resource_type="component",
        resource_id=f"{page_key}.{component_key}",
    )


# ============================================================================
# Maintenance Routes
# ============================================================================

@router.get("/validate", response_model=RegistryValidationResult)
async def validate_registry(
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.validate_registry()


@router.get("/health", response_model=RegistryHealthReport)
async def registry_health(
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.check_health()


@router.post("/cleanup", response_model=CleanupResult)
async def cleanup_registry(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    """Remove orphaned pages and components. Safe to run repeatedly."""
    result = await service.cleanup_orphans()
    if result.removed:
        await audit_request(
            request, db, current_user, action="cleanup", resource_type="registry",
            details=result.model_dump(mode="json"),
        )
    return result


# ============================================================================
# Bulk Routes
# ============================================================================

async def _audit_bulk(request: Request, db: AsyncSession, user: User, action: str, resource_type: str, result: BulkResult):
    await audit_request(
        request, db, user, action=f"bulk_{action}", resource_type=resource_type,
        details={
            "total": result.total_count,
            "succeeded": result.success_count,
            "failed": result.failure_count,
        },
    )
    return result


@router.post("/bulk/modules", response_model=BulkResult[ModuleResponse])
async def bulk_create_modules(
    payload: BulkModuleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_create_modules(payload.items)
    return await _audit_bulk(request, db, current_user, "create", "module", result)


@router.put("/bulk/modules", response_model=BulkResult[ModuleResponse])
async def bulk_update_modules(
    payload: BulkModuleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_update_modules(payload.items)
    return await _audit_bulk(request, db, current_user, "update", "module", result)


@router.post("/bulk/modules/delete", response_model=BulkResult[str])
async def bulk_delete_modules(
    payload: BulkModuleDelete,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_delete_modules(payload.module_keys)
    return await _audit_bulk(request, db, current_user, "delete", "module", result)


@router.post("/bulk/pages", response_model=BulkResult[PageResponse])
async def bulk_create_pages(
    payload: BulkPageCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_create_pages(payload.items)
    return await _audit_bulk(request, db, current_user, "create", "page", result)


@router.put("/bulk/pages", response_model=BulkResult[PageResponse])
async def bulk_update_pages(
    payload: BulkPageUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_update_pages(payload.items)
    return await _audit_bulk(request, db, current_user, "update", "page", result)


@router.post("/bulk/pages/delete", response_model=BulkResult[str])
async def bulk_delete_pages(
    payload: BulkPageDelete,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_delete_pages(payload.pages)
    return await _audit_bulk(request, db, current_user, "delete", "page", result)


@router.post("/bulk/components", response_model=BulkResult[ComponentResponse])
async def bulk_create_components(
    payload: BulkComponentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_create_components(payload.items)
    return await _audit_bulk(request, db, current_user, "create", "component", result)


@router.put("/bulk/components", response_model=BulkResult[ComponentResponse])
async def bulk_update_components(
    payload: BulkComponentUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_update_components(payload.items)
    return await _audit_bulk(request, db, current_user, "update", "component", result)


@router.post("/bulk/components/delete", response_model=BulkResult[str])
async def bulk_delete_components(
    payload: BulkComponentDelete,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.bulk_delete_components(payload.components)
    return await _audit_bulk(request, db, current_user, "delete", "component", result)


# ============================================================================
# Export / Import Routes
# ============================================================================

@router.get("/export", response_model=RegistryExport)
async def export_registry(
    export_format: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    return await service.export_registry(export_format, current_user.id)


@router.get("/export.csv")
async def export_registry_csv(
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    """Download the registry as a CSV file that ``/import/csv`` accepts."""
    export = await service.export_registry(ExportFormat.CSV, current_user.id)
    return Response(
        content=export.csv,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="permission-registry.csv"'},
    )


@router.post("/import", response_model=RegistryImportResult)
async def import_registry(
    payload: RegistryImportRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    result = await service.import_registry(payload, current_user.id)
    await audit_request(
        request, db, current_user, action="import", resource_type="registry",
        details=result.model_dump(mode="json", exclude={"errors"}),
    )
    return result


@router.post("/import/csv", response_model=RegistryImportResult)
async def import_registry_csv(
    request: Request,
    file: UploadFile = File(..., description="CSV file in the /export.csv layout"),
    conflict_resolution: ConflictResolution = ConflictResolution.SKIP,
    validate_before_import: bool = True,
    db: AsyncSession = Depends(get_db),
    service: RegistryService = Depends(get_registry_service),
    current_user: User = Depends(get_current_admin_user)
):
    """
    Import registry entries from a CSV upload.

    Row errors abort the import before anything is written.
    """
    if not file.filename or not file.filename.endswith(".csv"):
        raise HTTPException(status_code=400, detail="File must be a CSV (.csv)")

    content = await file.read()
    try:
        text_content = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded")

    data, row_errors = parse_registry_csv(text_content)
    if row_errors:
        log.info("CSV registry import rejected: %d row error(s)", len(row_errors))
        return RegistryImportResult(
            success=False,
            errors=row_errors,
            message=f"Import aborted: {len(row_errors)} invalid row(s)",
        )

    result = await service.import_registry(
        RegistryImportRequest(
            data=data,
            conflict_resolution=conflict_resolution,
            validate_before_import=validate_before_import,
        ),
        current_user.id,
    )
    await audit_request(
        request, db, current_user, action="import_csv", resource_type="registry",
        details={"filename": file.filename, **result.model_dump(mode="json", exclude={"errors"})},
    )
    return result
