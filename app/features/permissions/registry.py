"""
Resource registry: modules, pages and components.

Keys are only valid targets for permission entries once registered here.
Pages reference their module by ``module_key`` and components reference
their page by the composite ``module.page`` key. Deletes are refused while
dependents exist and remove the group entries targeting the deleted key;
rows orphaned by out-of-band edits are reported by
``validate_registry``/``check_health`` and removed by ``cleanup_orphans``.
"""
import csv
from collections import defaultdict
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions import repository
from app.features.permissions.cache import PermissionCache
from app.features.permissions.evaluator import PermissionEvaluator
from app.features.permissions.exceptions import (
    ComponentNotFound,
    InvalidPermissionKey,
    ModuleNotFound,
    NameConflict,
    PageNotFound,
    PermissionException,
    RegistryConflict,
)
from app.features.permissions.models import (
    PermissionComponent,
    PermissionModule,
    PermissionPage,
    PermissionType,
)
from app.features.permissions.roles import StaticRoleGate, UserRoleSource
from app.features.permissions.schemas import (
    KEY_PATTERN,
    BulkFailure,
    BulkResult,
    CleanupResult,
    ComponentBase,
    ComponentCreate,
    ComponentRef,
    ComponentResponse,
    ComponentUpdate,
    ComponentUpdateItem,
    ConflictResolution,
    ExportFormat,
    ExportMetadata,
    HealthStatus,
    IssueSeverity,
    ModuleBase,
    ModuleCreate,
    ModuleResponse,
    ModuleUpdate,
    ModuleUpdateItem,
    PageBase,
    PageCreate,
    PageRef,
    PageResponse,
    PageUpdate,
    PageUpdateItem,
    RegistryData,
    RegistryExport,
    RegistryHealthReport,
    RegistryImportData,
    RegistryImportRequest,
    RegistryImportResult,
    RegistryIssue,
    RegistryValidationResult,
    RemovedResource,
)
from app.features.users.models import UserRole
from app.utils import get_logger

log = get_logger(__name__)

ItemT = TypeVar("ItemT")
ResponseT = TypeVar("ResponseT", bound=BaseModel)

CSV_COLUMNS = [
    "kind", "module_key", "page_key", "component_key", "name",
    "route_path", "component_type", "allowed_roles", "description",
]
CSV_ROLE_SEPARATOR = ";"

ISSUE_ORPHANED_PAGE = "ORPHANED_PAGE"
ISSUE_ORPHANED_COMPONENT = "ORPHANED_COMPONENT"
ISSUE_INVALID_PAGE_KEY = "INVALID_PAGE_KEY_FORMAT"
ISSUE_DUPLICATE_ROUTE = "DUPLICATE_ROUTE"


def parse_composite_page_key(page_key: str) -> Optional[Tuple[str, str]]:
    """Return ``(module_key, page_key)`` for a well-formed ``module.page`` key, else None."""
    parts = page_key.split(".")
    if len(parts) != 2 or not all(KEY_PATTERN.match(p) for p in parts):
        return None
    return parts[0], parts[1]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistryService:
    """
    Registry reads, writes and maintenance for one database session.

    Any mutation flushes every cached permission set, because registry
    changes can alter what every user sees.
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
    # Existence and lookups
    # ========================================================================

    async def module_exists(self, module_key: str) -> bool:
        return await repository.get_module(self.db, module_key) is not None

    async def page_exists(self, module_key: str, page_key: str) -> bool:
        return await repository.get_page(self.db, module_key, page_key) is not None

    async def component_exists(self, page_key: str, component_key: str) -> bool:
        return await repository.get_component(self.db, page_key, component_key) is not None

    async def get_module(self, module_key: str) -> PermissionModule:
        module = await repository.get_module(self.db, module_key)
        if module is None:
            raise ModuleNotFound(module_key)
        return module

    async def get_page(self, module_key: str, page_key: str) -> PermissionPage:
        page = await repository.get_page(self.db, module_key, page_key)
        if page is None:
            raise PageNotFound(f"{module_key}.{page_key}")
        return page

    async def get_component(self, page_key: str, component_key: str) -> PermissionComponent:
        component = await repository.get_component(self.db, page_key, component_key)
        if component is None:
            raise ComponentNotFound(f"{page_key}.{component_key}")
        return component

    async def get_module_pages(self, module_key: str) -> Sequence[PermissionPage]:
        await self.get_module(module_key)
        return await repository.list_pages_in_modules(self.db, [module_key])

    async def get_page_components(self, page_key: str) -> Sequence[PermissionComponent]:
        """``page_key`` is the composite ``module.page`` key."""
        parsed = parse_composite_page_key(page_key)
        if parsed is None:
            raise InvalidPermissionKey(f"Page key must be 'module.page', got '{page_key}'")
        await self.get_page(*parsed)
        return await repository.list_components_in_pages(self.db, [page_key])

    async def get_available_modules(self, user_id: str) -> List[PermissionModule]:
        """Modules the user's static role may see. OWNER sees every module."""
        user = await self.roles.get_user(user_id)
        modules = await repository.list_all_modules(self.db)
        return [m for m in modules if self.gate.can_see_module(user, m)]

    # ========================================================================
    # Listing, search and filter
    # ========================================================================

    async def _paginate(self, query, skip: int, limit: int) -> Tuple[Sequence[Any], int]:
        total = (await self.db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
        result = await self.db.execute(query.offset(skip).limit(limit))
        return result.scalars().all(), total

    async def list_modules(self, skip: int = 0, limit: int = 100):
        return await self._paginate(select(PermissionModule).order_by(PermissionModule.module_key), skip, limit)

    async def list_pages(self, skip: int = 0, limit: int = 100):
        query = select(PermissionPage).order_by(PermissionPage.module_key, PermissionPage.page_key)
        return await self._paginate(query, skip, limit)

    async def list_components(self, skip: int = 0, limit: int = 100):
        query = select(PermissionComponent).order_by(PermissionComponent.page_key, PermissionComponent.component_key)
        return await self._paginate(query, skip, limit)

    async def search_modules(self, query_text: str, skip: int = 0, limit: int = 100):
        pattern = f"%{query_text}%"
        query = (
            select(PermissionModule)
            .where(or_(
                PermissionModule.module_key.ilike(pattern),
                PermissionModule.name.ilike(pattern),
                PermissionModule.description.ilike(pattern),
            ))
            .order_by(PermissionModule.module_key)
        )
        return await self._paginate(query, skip, limit)

    async def filter_modules_by_role(self, role: UserRole, skip: int = 0, limit: int = 100):
        # allowed_roles is a JSON list; filter in Python to stay database-agnostic
        modules = [m for m in await repository.list_all_modules(self.db) if role.value in (m.allowed_roles or [])]
        return modules[skip:skip + limit], len(modules)

    async def search_pages(self, query_text: str, skip: int = 0, limit: int = 100):
        pattern = f"%{query_text}%"
        query = (
            select(PermissionPage)
            .where(or_(
                PermissionPage.page_key.ilike(pattern),
                PermissionPage.name.ilike(pattern),
                PermissionPage.route_path.ilike(pattern),
                PermissionPage.description.ilike(pattern),
            ))
            .order_by(PermissionPage.module_key, PermissionPage.page_key)
        )
        return await self._paginate(query, skip, limit)

    async def filter_pages_by_module(self, module_key: str, skip: int = 0, limit: int = 100):
        query = (
            select(PermissionPage)
            .where(PermissionPage.module_key == module_key)
            .order_by(PermissionPage.page_key)
        )
        return await self._paginate(query, skip, limit)

    async def search_components(self, query_text: str, skip: int = 0, limit: int = 100):
        pattern = f"%{query_text}%"
        query = (
            select(PermissionComponent)
            .where(or_(
                PermissionComponent.component_key.ilike(pattern),
                PermissionComponent.name.ilike(pattern),
                PermissionComponent.description.ilike(pattern),
            ))
            .order_by(PermissionComponent.page_key, PermissionComponent.component_key)
        )
        return await self._paginate(query, skip, limit)

    async def filter_components_by_page(self, page_key: str, skip: int = 0, limit: int = 100):
        query = (
            select(PermissionComponent)
            .where(PermissionComponent.page_key == page_key)
            .order_by(PermissionComponent.component_key)
        )
        return await self._paginate(query, skip, limit)

    async def filter_components_by_type(self, component_type: str, skip: int = 0, limit: int = 100):
        query = (
            select(PermissionComponent)
            .where(func.upper(PermissionComponent.component_type) == component_type.upper())
            .order_by(PermissionComponent.page_key, PermissionComponent.component_key)
        )
        return await self._paginate(query, skip, limit)

    # ========================================================================
    # Modules
    # ========================================================================

    async def create_module(self, data: ModuleCreate) -> PermissionModule:
        if await self.module_exists(data.module_key):
            raise NameConflict(f"Module with key '{data.module_key}' already exists")
        module = PermissionModule(
            module_key=data.module_key,
            name=data.name,
            description=data.description,
            allowed_roles=[r.value for r in data.allowed_roles],
        )
        self.db.add(module)
        await self._commit(f"Module with key '{data.module_key}' already exists")
        await self.db.refresh(module)
        log.info("Registered module %s", module.module_key)
        return module

    async def update_module(self, module_key: str, data: ModuleUpdate) -> PermissionModule:
        module = await self.get_module(module_key)
        if data.name is not None:
            module.name = data.name
        if data.description is not None:
            module.description = data.description
        if data.allowed_roles is not None:
            module.allowed_roles = [r.value for r in data.allowed_roles]
        await self._commit()
        await self.db.refresh(module)
        log.info("Updated module %s", module_key)
        return module

    async def delete_module(self, module_key: str) -> None:
        module = await self.get_module(module_key)
        dependents = await repository.count_pages(self.db, module_key)
        if dependents:
            raise RegistryConflict(
                f"Cannot delete module with key: {module_key} because it has {dependents} dependent page(s). "
                "Delete pages first."
            )
        await self._drop_entries(PermissionType.MODULE, module_key, module_key)
        await self.db.delete(module)
        await self._commit()
        log.info("Deleted module %s", module_key)

    # ========================================================================
    # Pages
    # ========================================================================

    async def create_page(self, data: PageCreate) -> PermissionPage:
        await self.get_module(data.module_key)
        if await self.page_exists(data.module_key, data.page_key):
            raise NameConflict(f"Page with key '{data.module_key}.{data.page_key}' already exists")
        page = PermissionPage(
            module_key=data.module_key,
            page_key=data.page_key,
            name=data.name,
            route_path=data.route_path,
            description=data.description,
        )
        self.db.add(page)
        await self._commit(f"Page with key '{data.module_key}.{data.page_key}' already exists")
        await self.db.refresh(page)
        log.info("Registered page %s", page.full_key)
        return page

    async def update_page(self, module_key: str, page_key: str, data: PageUpdate) -> PermissionPage:
        page = await self.get_page(module_key, page_key)
        if data.name is not None:
            page.name = data.name
        if data.route_path is not None:
            page.route_path = data.route_path
        if data.description is not None:
            page.description = data.description
        await self._commit()
        await self.db.refresh(page)
        log.info("Updated page %s.%s", module_key, page_key)
        return page

    async def delete_page(self, module_key: str, page_key: str) -> None:
        page = await self.get_page(module_key, page_key)
        full_key = f"{module_key}.{page_key}"
        dependents = await repository.count_components(self.db, full_key)
        if dependents:
            raise RegistryConflict(
                f"Cannot delete page with key: {full_key} because it has {dependents} dependent component(s). "
                "Delete components first."
            )
        await self._drop_entries(PermissionType.PAGE, module_key, page_key)
        await self.db.delete(page)
        await self._commit()
        log.info("Deleted page %s", full_key)

    # ========================================================================
    # Components
    # ========================================================================

    async def create_component(self, data: ComponentCreate) -> PermissionComponent:
        parsed = parse_composite_page_key(data.page_key)
        if parsed is None:
            raise InvalidPermissionKey(f"Page key must be in format 'module.page', got '{data.page_key}'")
        await self.get_page(*parsed)
        if await self.component_exists(data.page_key, data.component_key):
            raise NameConflict(f"Component with key '{data.page_key}.{data.component_key}' already exists")

        component = PermissionComponent(
            page_key=data.page_key,
            component_key=data.component_key,
            name=data.name,
            component_type=data.component_type,
            description=data.description,
        )
        self.db.add(component)
        await self._commit(f"Component with key '{data.page_key}.{data.component_key}' already exists")
        await self.db.refresh(component)
        log.info("Registered component %s.%s", component.page_key, component.component_key)
        return component

    async def update_component(self, page_key: str, component_key: str, data: ComponentUpdate) -> PermissionComponent:
        component = await self.get_component(page_key, component_key)
        if data.name is not None:
            component.name = data.name
        if data.component_type is not None:
            component.component_type = data.component_type
        if data.description is not None:
            component.description = data.description
        await self._commit()
        await self.db.refresh(component)
        log.info("Updated component %s.%s", page_key, component_key)
        return component

    async def delete_component(self, page_key: str, component_key: str) -> None:
        component = await self.get_component(page_key, component_key)
        await self._drop_component_entries(component)
        await self.db.delete(component)
        await self._commit()
        log.info("Deleted component %s.%s", page_key, component_key)

    async def _drop_entries(self, permission_type: PermissionType, resource_type: str, resource_identifier: str) -> int:
        """Remove group entries for a key being deleted so a re-registered key starts clean."""
        removed = await repository.delete_entries_for_key(self.db, permission_type, resource_type, resource_identifier)
        if removed:
            log.info(
                "Removing %d group entries for %s:%s:%s",
                removed, permission_type.value, resource_type, resource_identifier,
            )
        return removed

    async def _drop_component_entries(self, component: PermissionComponent) -> int:
        parsed = parse_composite_page_key(component.page_key)
        if parsed is None:
            return 0
        module_key, page_key = parsed
        return await self._drop_entries(
            PermissionType.COMPONENT, module_key, f"{page_key}.{component.component_key}",
        )

    async def _commit(self, conflict_message: Optional[str] = None) -> None:
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise NameConflict(conflict_message or "Registry key already exists")
        await self.evaluator.invalidate_all()

    # ========================================================================
    # Validation, health and cleanup
    # ========================================================================

    async def _load_all(self):
        return (
            await repository.list_all_modules(self.db),
            await repository.list_all_pages(self.db),
            await repository.list_all_components(self.db),
        )

    @staticmethod
    def _find_orphans(
        modules: Sequence[PermissionModule],
        pages: Sequence[PermissionPage],
        components: Sequence[PermissionComponent],
    ) -> Tuple[List[PermissionPage], List[PermissionComponent], List[PermissionComponent]]:
        """Return (orphaned pages, malformed components, orphaned components)."""
        module_keys = {m.module_key for m in modules}
        orphaned_pages = [p for p in pages if p.module_key not in module_keys]
        live_pages = {p.full_key for p in pages if p.module_key in module_keys}

        malformed, orphaned_components = [], []
        for component in components:
            if parse_composite_page_key(component.page_key) is None:
                malformed.append(component)
            elif component.page_key not in live_pages:
                orphaned_components.append(component)
        return orphaned_pages, malformed, orphaned_components

    @staticmethod
    def _duplicate_routes(pages: Sequence[PermissionPage]) -> Dict[str, List[str]]:
        by_route: Dict[str, List[str]] = defaultdict(list)
        for page in pages:
            if page.route_path:
                by_route[page.route_path].append(page.full_key)
        return {route: keys for route, keys in sorted(by_route.items()) if len(keys) > 1}

    async def validate_registry(self) -> RegistryValidationResult:
        """Report structural problems. Only ERROR issues make the registry invalid."""
        modules, pages, components = await self._load_all()
        orphaned_pages, malformed, orphaned_components = self._find_orphans(modules, pages, components)

        issues: List[RegistryIssue] = []
        for page in orphaned_pages:
            issues.append(RegistryIssue(
                issue_type=ISSUE_ORPHANED_PAGE,
                severity=IssueSeverity.ERROR,
                resource_key=page.full_key,
                message=f"Page '{page.full_key}' references missing module '{page.module_key}'",
            ))
        for component in malformed:
            issues.append(RegistryIssue(
                issue_type=ISSUE_INVALID_PAGE_KEY,
                severity=IssueSeverity.ERROR,
                resource_key=f"{component.page_key}.{component.component_key}",
                message=f"Component page key '{component.page_key}' is not in format 'module.page'",
            ))
        for component in orphaned_components:
            issues.append(RegistryIssue(
                issue_type=ISSUE_ORPHANED_COMPONENT,
                severity=IssueSeverity.ERROR,
                resource_key=f"{component.page_key}.{component.component_key}",
                message=f"Component '{component.component_key}' references missing page '{component.page_key}'",
            ))
        for route, keys in self._duplicate_routes(pages).items():
            issues.append(RegistryIssue(
                issue_type=ISSUE_DUPLICATE_ROUTE,
                severity=IssueSeverity.WARNING,
                resource_key=route,
                message=f"Route '{route}' is shared by pages: {', '.join(keys)}",
            ))

        errors = sum(1 for i in issues if i.severity == IssueSeverity.ERROR)
        return RegistryValidationResult(
            is_valid=errors == 0,
            issues=issues,
            error_count=errors,
            warning_count=len(issues) - errors,
            validated_at=_utcnow(),
        )

    async def check_health(self) -> RegistryHealthReport:
        modules, pages, components = await self._load_all()
        orphaned_pages, malformed, orphaned_components = self._find_orphans(modules, pages, components)
        duplicates = self._duplicate_routes(pages)

        orphan_count = len(orphaned_pages) + len(malformed) + len(orphaned_components)
        if orphan_count:
            status = HealthStatus.UNHEALTHY
            message = f"Registry has {orphan_count} orphaned record(s); run cleanup"
        elif duplicates:
            status = HealthStatus.DEGRADED
            message = f"Registry has {len(duplicates)} duplicate route path(s)"
        else:
            status = HealthStatus.HEALTHY
            message = "Registry is healthy"

        return RegistryHealthReport(
            status=status,
            total_modules=len(modules),
            total_pages=len(pages),
            total_components=len(components),
            orphaned_pages=[p.full_key for p in orphaned_pages],
            orphaned_components=[f"{c.page_key}.{c.component_key}" for c in malformed + orphaned_components],
            duplicate_routes=list(duplicates),
            message=message,
            checked_at=_utcnow(),
        )

    async def cleanup_orphans(self) -> CleanupResult:
        """
        Remove orphaned pages, then components left without a valid page.

        Running it twice in a row removes nothing the second time.
        """
        modules, pages, components = await self._load_all()
        orphaned_pages, malformed, orphaned_components = self._find_orphans(modules, pages, components)

        removed: List[RemovedResource] = []
        for page in orphaned_pages:
            removed.append(RemovedResource(
                resource_type=PermissionType.PAGE,
                resource_key=page.full_key,
                reason=f"Module '{page.module_key}' does not exist",
            ))
            await self._drop_entries(PermissionType.PAGE, page.module_key, page.page_key)
            await self.db.delete(page)
        for component in malformed:
            removed.append(RemovedResource(
                resource_type=PermissionType.COMPONENT,
                resource_key=f"{component.page_key}.{component.component_key}",
                reason="Invalid page key format",
            ))
            await self.db.delete(component)
        for component in orphaned_components:
            removed.append(RemovedResource(
                resource_type=PermissionType.COMPONENT,
                resource_key=f"{component.page_key}.{component.component_key}",
                reason=f"Page '{component.page_key}' does not exist",
            ))
            await self._drop_component_entries(component)
            await self.db.delete(component)

        if removed:
            await self._commit()
            log.warning("Registry cleanup removed %d orphaned record(s)", len(removed))

        removed_pages = len(orphaned_pages)
        removed_components = len(malformed) + len(orphaned_components)
        return CleanupResult(
            removed=removed,
            removed_pages=removed_pages,
            removed_components=removed_components,
            message=(
                f"Removed {removed_pages} page(s) and {removed_components} component(s)"
                if removed else "No orphaned records found"
            ),
        )

    # ========================================================================
    # Bulk operations
    # ========================================================================

    async def _bulk(
        self,
        items: Sequence[ItemT],
        operation: Callable[[ItemT], Awaitable[Any]],
        identify: Callable[[ItemT], str],
        to_response: Optional[Callable[[Any], ResponseT]] = None,
    ) -> BulkResult:
        """Apply ``operation`` to each item independently, collecting failures."""
        successful: List[Any] = []
        failures: List[BulkFailure] = []
        for index, item in enumerate(items):
            try:
                result = await operation(item)
            except PermissionException as e:
                failures.append(BulkFailure(
                    index=index,
                    resource_identifier=identify(item),
                    error=e.message,
                    error_type=type(e).__name__,
                ))
                continue
            successful.append(to_response(result) if to_response else identify(item))

        log.info("Bulk operation: %d succeeded, %d failed", len(successful), len(failures))
        return BulkResult(
            total_count=len(items),
            success_count=len(successful),
            failure_count=len(failures),
            successful_items=successful,
            failures=failures,
        )

    async def bulk_create_modules(self, items: Sequence[ModuleCreate]) -> BulkResult:
        return await self._bulk(items, self.create_module, lambda i: i.module_key, ModuleResponse.model_validate)

    async def bulk_update_modules(self, items: Sequence[ModuleUpdateItem]) -> BulkResult:
        return await self._bulk(
            items,
            lambda i: self.update_module(i.module_key, i),
            lambda i: i.module_key,
            ModuleResponse.model_validate,
        )

    async def bulk_delete_modules(self, module_keys: Sequence[str]) -> BulkResult:
        return await self._bulk(module_keys, self.delete_module, lambda k: k)

    async def bulk_create_pages(self, items: Sequence[PageCreate]) -> BulkResult:
        return await self._bulk(
            items, self.create_page, lambda i: f"{i.module_key}.{i.page_key}", PageResponse.model_validate,
        )

    async def bulk_update_pages(self, items: Sequence[PageUpdateItem]) -> BulkResult:
        return await self._bulk(
            items,
            lambda i: self.update_page(i.module_key, i.page_key, i),
            lambda i: f"{i.module_key}.{i.page_key}",
            PageResponse.model_validate,
        )

    async def bulk_delete_pages(self, pages: Sequence[PageRef]) -> BulkResult:
        return await self._bulk(
            pages,
            lambda p: self.delete_page(p.module_key, p.page_key),
            lambda p: f"{p.module_key}.{p.page_key}",
        )

    async def bulk_create_components(self, items: Sequence[ComponentCreate]) -> BulkResult:
        return await self._bulk(
            items,
            self.create_component,
            lambda i: f"{i.page_key}.{i.component_key}",
            ComponentResponse.model_validate,
        )

    async def bulk_update_components(self, items: Sequence[ComponentUpdateItem]) -> BulkResult:
        return await self._bulk(
            items,
            lambda i: self.update_component(i.page_key, i.component_key, i),
            lambda i: f"{i.page_key}.{i.component_key}",
            ComponentResponse.model_validate,
        )

    async def bulk_delete_components(self, components: Sequence[ComponentRef]) -> BulkResult:
        return await self._bulk(
            components,
            lambda c: self.delete_component(c.page_key, c.component_key),
            lambda c: f"{c.page_key}.{c.component_key}",
        )

    # ========================================================================
    # Export / import
    # ========================================================================

    async def export_registry(self, export_format: ExportFormat, user_id: Optional[str] = None) -> RegistryExport:
        modules, pages, components = await self._load_all()
        data = RegistryData(
            modules=[ModuleBase.model_validate(m, from_attributes=True) for m in modules],
            pages=[PageBase.model_validate(p, from_attributes=True) for p in pages],
            components=[ComponentBase.model_validate(c, from_attributes=True) for c in components],
        )
        metadata = ExportMetadata(
            exported_at=_utcnow(),
            exported_by=user_id,
            module_count=len(modules),
            page_count=len(pages),
            component_count=len(components),
        )
        log.info(
            "Exported registry as %s (%d modules, %d pages, %d components)",
            export_format.value, len(modules), len(pages), len(components),
        )
        if export_format == ExportFormat.CSV:
            return RegistryExport(format=export_format, csv=registry_to_csv(data), metadata=metadata)
        return RegistryExport(format=export_format, data=data, metadata=metadata)

    async def import_registry(self, request: RegistryImportRequest, user_id: Optional[str] = None) -> RegistryImportResult:
        """
        Import modules, then pages, then components.

        With ``validate_before_import`` every reference is checked against the
        database plus the payload first and any problem aborts the import
        before anything is written.
        """
        data = request.data
        if request.validate_before_import:
            problems = await self._validate_import(data)
            if problems:
                log.warning("Registry import by %s aborted: %d problem(s)", user_id, len(problems))
                return RegistryImportResult(
                    success=False,
                    errors=problems,
                    message=f"Import aborted: {len(problems)} validation error(s)",
                )

        resolution = request.conflict_resolution
        errors: List[str] = []
        skipped = 0
        imported_modules = imported_pages = imported_components = 0
        processed: Set[str] = set()

        for item in data.modules:
            if self._repeated(processed, f"module:{item.module_key}", errors):
                skipped += 1
                continue
            existing = await repository.get_module(self.db, item.module_key)
            if existing is None:
                self.db.add(PermissionModule(
                    module_key=item.module_key,
                    name=item.name,
                    description=item.description,
                    allowed_roles=[r.value for r in item.allowed_roles],
                ))
            elif resolution == ConflictResolution.SKIP:
                skipped += 1
                continue
            else:
                self._apply_module(existing, item, resolution)
            imported_modules += 1
        await self.db.flush()

        for item in data.pages:
            if self._repeated(processed, f"page:{item.module_key}.{item.page_key}", errors):
                skipped += 1
                continue
            if await repository.get_module(self.db, item.module_key) is None:
                errors.append(f"Page '{item.module_key}.{item.page_key}': module '{item.module_key}' not found")
                skipped += 1
                continue
            existing = await repository.get_page(self.db, item.module_key, item.page_key)
            if existing is None:
                self.db.add(PermissionPage(
                    module_key=item.module_key,
                    page_key=item.page_key,
                    name=item.name,
                    route_path=item.route_path,
                    description=item.description,
                ))
            elif resolution == ConflictResolution.SKIP:
                skipped += 1
                continue
            else:
                self._apply_page(existing, item, resolution)
            imported_pages += 1
        await self.db.flush()

        for item in data.components:
            if self._repeated(processed, f"component:{item.page_key}.{item.component_key}", errors):
                skipped += 1
                continue
            parsed = parse_composite_page_key(item.page_key)
            if parsed is None or await repository.get_page(self.db, *parsed) is None:
                errors.append(f"Component '{item.page_key}.{item.component_key}': page '{item.page_key}' not found")
                skipped += 1
                continue
            existing = await repository.get_component(self.db, item.page_key, item.component_key)
            if existing is None:
                self.db.add(PermissionComponent(
                    page_key=item.page_key,
                    component_key=item.component_key,
                    name=item.name,
                    component_type=item.component_type,
                    description=item.description,
                ))
            elif resolution == ConflictResolution.SKIP:
                skipped += 1
                continue
            else:
                self._apply_component(existing, item, resolution)
            imported_components += 1

        await self._commit()
        log.info(
            "Registry import by %s (%s): %d modules, %d pages, %d components, %d skipped",
            user_id, resolution.value, imported_modules, imported_pages, imported_components, skipped,
        )
        return RegistryImportResult(
            success=not errors,
            imported_modules=imported_modules,
            imported_pages=imported_pages,
            imported_components=imported_components,
            skipped_count=skipped,
            errors=errors,
            message=(
                f"Imported {imported_modules} module(s), {imported_pages} page(s), "
                f"{imported_components} component(s); skipped {skipped}"
            ),
        )

    async def _validate_import(self, data: RegistryImportData) -> List[str]:
        problems: List[str] = []
        modules, pages, _ = await self._load_all()

        known_modules: Set[str] = {m.module_key for m in modules}
        known_pages: Set[str] = {p.full_key for p in pages}
        seen: Set[str] = set()

        for item in data.modules:
            if item.module_key in seen:
                problems.append(f"Duplicate module '{item.module_key}' in import")
            seen.add(item.module_key)
            known_modules.add(item.module_key)

        seen.clear()
        for item in data.pages:
            full_key = f"{item.module_key}.{item.page_key}"
            if full_key in seen:
                problems.append(f"Duplicate page '{full_key}' in import")
            seen.add(full_key)
            if item.module_key not in known_modules:
                problems.append(f"Page '{full_key}' references unknown module '{item.module_key}'")
            known_pages.add(full_key)

        seen.clear()
        for item in data.components:
            full_key = f"{item.page_key}.{item.component_key}"
            if full_key in seen:
                problems.append(f"Duplicate component '{full_key}' in import")
            seen.add(full_key)
            if parse_composite_page_key(item.page_key) is None:
                problems.append(f"Component '{full_key}' has invalid page key format '{item.page_key}'")
            elif item.page_key not in known_pages:
                problems.append(f"Component '{full_key}' references unknown page '{item.page_key}'")
        return problems

    @staticmethod
    def _repeated(processed: Set[str], key: str, errors: List[str]) -> bool:
        if key in processed:
            errors.append(f"Duplicate {key.replace(':', ' ', 1)} in import")
            return True
        processed.add(key)
        return False

    @staticmethod
    def _apply_module(module: PermissionModule, item: ModuleCreate, resolution: ConflictResolution) -> None:
        roles = [r.value for r in item.allowed_roles]
        if resolution == ConflictResolution.OVERWRITE:
            module.name, module.description, module.allowed_roles = item.name, item.description, roles
            return
        module.name = item.name
        if item.description is not None:
            module.description = item.description
        if roles:
            module.allowed_roles = roles

    @staticmethod
    def _apply_page(page: PermissionPage, item: PageCreate, resolution: ConflictResolution) -> None:
        if resolution == ConflictResolution.OVERWRITE:
            page.name, page.route_path, page.description = item.name, item.route_path, item.description
            return
        page.name = item.name
        if item.route_path is not None:
            page.route_path = item.route_path
        if item.description is not None:
            page.description = item.description

    @staticmethod
    def _apply_component(component: PermissionComponent, item: ComponentCreate, resolution: ConflictResolution) -> None:
        if resolution == ConflictResolution.OVERWRITE:
            component.name = item.name
            component.component_type = item.component_type
            component.description = item.description
            return
        component.name = item.name
        if item.component_type is not None:
            component.component_type = item.component_type
        if item.description is not None:
            component.description = item.description


# ============================================================================
# CSV helpers
# ============================================================================

def registry_to_csv(data: RegistryData) -> str:
    """One row per registry entry; components split their ``module.page`` key across columns."""
    buffer = StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    for module in data.modules:
        writer.writerow({
            "kind": PermissionType.MODULE.value,
            "module_key": module.module_key,
            "name": module.name,
            "allowed_roles": CSV_ROLE_SEPARATOR.join(r.value for r in module.allowed_roles),
            "description": module.description or "",
        })
    for page in data.pages:
        writer.writerow({
            "kind": PermissionType.PAGE.value,
            "module_key": page.module_key,
            "page_key": page.page_key,
            "name": page.name,
            "route_path": page.route_path or "",
            "description": page.description or "",
        })
    for component in data.components:
        module_key, _, page_key = component.page_key.rpartition(".")
        writer.writerow({
            "kind": PermissionType.COMPONENT.value,
            "module_key": module_key,
            "page_key": page_key,
            "component_key": component.component_key,
            "name": component.name,
            "component_type": component.component_type or "",
            "description": component.description or "",
        })
    return buffer.getvalue()


def parse_registry_csv(text_content: str) -> Tuple[RegistryImportData, List[str]]:
    """
    Parse a CSV produced by ``registry_to_csv``.

    Returns:
        The parsed import payload and a list of row errors (row numbers count
        the header as row 1).
    """
    reader = csv.DictReader(StringIO(text_content))
    missing = [c for c in ("kind", "module_key", "name") if c not in (reader.fieldnames or [])]
    if missing:
        return RegistryImportData(), [f"Missing required column(s): {', '.join(missing)}"]

    data = RegistryImportData()
    errors: List[str] = []
    for row_number, row in enumerate(reader, start=2):
        kind = (row.get("kind") or "").strip().upper()
        values = {k: (v or "").strip() or None for k, v in row.items() if k}
        try:
            if kind == PermissionType.MODULE.value:
                roles = [r for r in (values.get("allowed_roles") or "").split(CSV_ROLE_SEPARATOR) if r]
                data.modules.append(ModuleCreate(
                    module_key=values.get("module_key") or "",
                    name=values.get("name") or "",
                    description=values.get("description"),
                    allowed_roles=roles,
                ))
            elif kind == PermissionType.PAGE.value:
                data.pages.append(PageCreate(
                    module_key=values.get("module_key") or "",
                    page_key=values.get("page_key") or "",
                    name=values.get("name") or "",
                    route_path=values.get("route_path"),
                    description=values.get("description"),
                ))
            elif kind == PermissionType.COMPONENT.value:
                module_key = values.get("module_key")
                page_key = values.get("page_key") or ""
                data.components.append(ComponentCreate(
                    page_key=f"{module_key}.{page_key}" if module_key else page_key,
                    component_key=values.get("component_key") or "",
                    name=values.get("name") or "",
                    component_type=values.get("component_type"),
                    description=values.get("description"),
                ))
            else:
                errors.append(f"Row {row_number}: unknown kind '{row.get('kind')}'")
        except ValidationError as e:
            details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            errors.append(f"Row {row_number}: {details}")
    return data, errors
