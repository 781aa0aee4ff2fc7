"""Tests for RegistryService and the registry CSV helpers."""

import pytest

from app.features.permissions import repository
from app.features.permissions.evaluator import PermissionEvaluator
from app.features.permissions.exceptions import (
    InvalidPermissionKey,
    ModuleNotFound,
    NameConflict,
    PageNotFound,
    RegistryConflict,
)
from app.features.permissions.models import PermissionComponent, PermissionPage
from app.features.permissions.registry import (
    RegistryService,
    parse_composite_page_key,
    parse_registry_csv,
)
from app.features.permissions.schemas import (
    ComponentCreate,
    ConflictResolution,
    ExportFormat,
    HealthStatus,
    IssueSeverity,
    ModuleCreate,
    ModuleUpdate,
    PageCreate,
    PageRef,
    RegistryImportData,
    RegistryImportRequest,
)
from app.features.users.models import UserRole


@pytest.fixture
def service(db, mock_cache):
    return RegistryService(db, cache=mock_cache)


def test_parse_composite_page_key():
    assert parse_composite_page_key("support.chat") == ("support", "chat")
    assert parse_composite_page_key("support") is None
    assert parse_composite_page_key("support.chat.extra") is None
    assert parse_composite_page_key("Support.chat") is None


class TestRegistryWrites:

    @pytest.mark.asyncio
    async def test_create_module_page_component(self, service):
        await service.create_module(ModuleCreate(module_key="reports", name="Reports", allowed_roles=[UserRole.ADMIN]))
        page = await service.create_page(PageCreate(module_key="reports", page_key="overview", name="Overview"))
        component = await service.create_component(
            ComponentCreate(page_key="reports.overview", component_key="export_csv", name="Export")
        )

        assert page.full_key == "reports.overview"
        assert component.page_key == "reports.overview"
        assert await service.component_exists("reports.overview", "export_csv")
        assert [c.component_key for c in await service.get_page_components("reports.overview")] == ["export_csv"]

    @pytest.mark.asyncio
    async def test_duplicate_module(self, service, registry):
        with pytest.raises(NameConflict):
            await service.create_module(ModuleCreate(module_key="support", name="Support again"))

    @pytest.mark.asyncio
    async def test_page_requires_module(self, service, registry):
        with pytest.raises(ModuleNotFound):
            await service.create_page(PageCreate(module_key="reports", page_key="overview", name="Overview"))

    @pytest.mark.asyncio
    async def test_component_requires_page(self, service, registry):
        with pytest.raises(PageNotFound):
            await service.create_component(
                ComponentCreate(page_key="support.archive", component_key="restore", name="Restore")
            )

    @pytest.mark.asyncio
    async def test_component_page_key_format(self, service, registry):
        with pytest.raises(InvalidPermissionKey):
            await service.create_component(
                ComponentCreate(page_key="support", component_key="restore", name="Restore")
            )

    @pytest.mark.asyncio
    async def test_module_delete_blocked_by_pages(self, service, registry):
        with pytest.raises(RegistryConflict) as exc_info:
            await service.delete_module("support")
        assert "2 dependent page(s)" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_page_delete_blocked_by_components(self, service, registry):
        with pytest.raises(RegistryConflict):
            await service.delete_page("support", "chat")

    @pytest.mark.asyncio
    async def test_delete_bottom_up(self, service, registry):
        await service.delete_component("support.tickets", "close_ticket")
        await service.delete_page("support", "tickets")
        assert not await service.page_exists("support", "tickets")

    @pytest.mark.asyncio
    async def test_delete_removes_group_entries(self, db, service, registry, alice, make_group, add_entry):
        group = await make_group("Support Team", alice)
        group_id = group.id
        await add_entry(group, "COMPONENT", "support", "tickets.close_ticket", "EXECUTE")
        await add_entry(group, "PAGE", "support", "tickets", "READ", granted=False)
        await add_entry(group, "PAGE", "support", "chat", "READ")

        await service.delete_component("support.tickets", "close_ticket")
        await service.delete_page("support", "tickets")

        entries = await repository.list_entries_for_group(db, group_id)
        assert [(e.permission_type.value, e.resource_identifier) for e in entries] == [("PAGE", "chat")]

    @pytest.mark.asyncio
    async def test_reregistered_module_starts_clean(self, db, service, registry, alice, make_group, add_entry):
        group = await make_group("Portfolio", alice)
        await add_entry(group, "MODULE", "portfolio", "portfolio", "READ")
        evaluator = PermissionEvaluator(db)
        assert await evaluator.has_module_access(alice.id, "portfolio")

        await service.delete_module("portfolio")
        await service.create_module(ModuleCreate(module_key="portfolio", name="Portfolio"))

        assert not await evaluator.has_module_access(alice.id, "portfolio")
        assert await repository.count_entries(db, group.id) == 0

    @pytest.mark.asyncio
    async def test_mutation_flushes_cache(self, service, registry, mock_cache):
        await service.update_module("support", ModuleUpdate(allowed_roles=[UserRole.OWNER]))

        mock_cache.invalidate_all.assert_awaited_once()
        assert (await service.get_module("support")).allowed_roles == ["OWNER"]


class TestRegistryReads:

    @pytest.mark.asyncio
    async def test_available_modules_by_role(self, service, registry, owner, admin, alice):
        assert [m.module_key for m in await service.get_available_modules(owner.id)] == [
            "admin", "finance", "portfolio", "support",
        ]
        assert [m.module_key for m in await service.get_available_modules(admin.id)] == [
            "admin", "finance", "support",
        ]
        assert await service.get_available_modules(alice.id) == []

    @pytest.mark.asyncio
    async def test_list_and_paginate(self, service, registry):
        modules, total = await service.list_modules(skip=1, limit=2)
        assert total == 4
        assert [m.module_key for m in modules] == ["finance", "portfolio"]

    @pytest.mark.asyncio
    async def test_search_and_filter(self, service, registry):
        pages, total = await service.search_pages("chat")
        assert total == 1
        assert pages[0].full_key == "support.chat"

        _, total = await service.filter_modules_by_role(UserRole.ADMIN)
        assert total == 3

        components, total = await service.filter_components_by_type("button")
        assert total == 3

        components, total = await service.filter_components_by_page("support.chat")
        assert [c.component_key for c in components] == ["delete_message", "send_message"]


class TestRegistryMaintenance:

    @pytest.fixture
    def add_orphans(self, db):
        async def _add():
            db.add_all([
                PermissionPage(module_key="ghost", page_key="lost", name="Lost"),
                PermissionComponent(page_key="ghost.lost", component_key="button", name="Button"),
                PermissionComponent(page_key="broken", component_key="widget", name="Widget"),
            ])
            await db.commit()
        return _add

    @pytest.mark.asyncio
    async def test_clean_registry(self, service, registry):
        result = await service.validate_registry()
        assert result.is_valid
        assert result.issues == []

        health = await service.check_health()
        assert health.status == HealthStatus.HEALTHY
        assert health.total_components == 3

    @pytest.mark.asyncio
    async def test_orphans_reported(self, service, registry, add_orphans):
        await add_orphans()

        result = await service.validate_registry()
        assert not result.is_valid
        assert result.error_count == 3
        assert {i.issue_type for i in result.issues} == {
            "ORPHANED_PAGE", "ORPHANED_COMPONENT", "INVALID_PAGE_KEY_FORMAT",
        }

        health = await service.check_health()
        assert health.status == HealthStatus.UNHEALTHY
        assert health.orphaned_pages == ["ghost.lost"]

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, db, service, registry, add_orphans):
        await add_orphans()

        first = await service.cleanup_orphans()
        assert first.removed_pages == 1
        assert first.removed_components == 2

        second = await service.cleanup_orphans()
        assert second.removed == []
        assert second.removed_pages == 0
        assert second.removed_components == 0

        assert (await service.validate_registry()).is_valid
        assert len(await repository.list_all_components(db)) == 3

    @pytest.mark.asyncio
    async def test_duplicate_route_degrades(self, db, service, registry):
        db.add(PermissionPage(module_key="finance", page_key="chat", name="Chat", route_path="/support/chat"))
        await db.commit()

        result = await service.validate_registry()
        assert result.is_valid
        assert result.warning_count == 1
        assert result.issues[0].severity == IssueSeverity.WARNING

        health = await service.check_health()
        assert health.status == HealthStatus.DEGRADED
        assert health.duplicate_routes == ["/support/chat"]


class TestBulkOperations:

    @pytest.mark.asyncio
    async def test_partial_failure(self, service, registry):
        result = await service.bulk_create_modules([
            ModuleCreate(module_key="reports", name="Reports"),
            ModuleCreate(module_key="support", name="Support again"),
        ])

        assert result.total_count == 2
        assert result.success_count == 1
        assert result.successful_items[0].module_key == "reports"
        assert result.failures[0].index == 1
        assert result.failures[0].error_type == "NameConflict"

    @pytest.mark.asyncio
    async def test_bulk_delete_pages(self, service, registry):
        result = await service.bulk_delete_pages([
            PageRef(module_key="support", page_key="chat"),
            PageRef(module_key="finance", page_key="invoices"),
        ])

        assert result.successful_items == ["finance.invoices"]
        assert result.failures[0].resource_identifier == "support.chat"
        assert result.failures[0].error_type == "RegistryConflict"


class TestExportImport:

    @pytest.mark.asyncio
    async def test_export_json(self, service, registry, owner):
        export = await service.export_registry(ExportFormat.JSON, owner.id)

        assert export.metadata.module_count == 4
        assert export.metadata.exported_by == owner.id
        assert export.csv is None
        assert {m.module_key for m in export.data.modules} == {"admin", "finance", "portfolio", "support"}

    @pytest.mark.asyncio
    async def test_csv_export_parses_back(self, service, registry):
        export = await service.export_registry(ExportFormat.CSV)

        data, errors = parse_registry_csv(export.csv)
        assert errors == []
        assert len(data.modules) == 4
        assert len(data.pages) == 3
        assert {c.page_key for c in data.components} == {"support.chat", "support.tickets"}
        support = next(m for m in data.modules if m.module_key == "support")
        assert support.allowed_roles == [UserRole.OWNER, UserRole.ADMIN]

    def _payload(self, resolution, **kwargs):
        return RegistryImportRequest(
            data=RegistryImportData(
                modules=[
                    ModuleCreate(module_key="support", name="Help Desk"),
                    ModuleCreate(module_key="reports", name="Reports"),
                ],
                pages=[PageCreate(module_key="reports", page_key="overview", name="Overview")],
                components=[ComponentCreate(page_key="reports.overview", component_key="export_csv", name="Export")],
            ),
            conflict_resolution=resolution,
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_import_skip(self, service, registry):
        result = await service.import_registry(self._payload(ConflictResolution.SKIP))

        assert result.success
        assert (result.imported_modules, result.imported_pages, result.imported_components) == (1, 1, 1)
        assert result.skipped_count == 1
        assert (await service.get_module("support")).name == "Support"
        assert await service.component_exists("reports.overview", "export_csv")

    @pytest.mark.asyncio
    async def test_import_overwrite(self, service, registry):
        result = await service.import_registry(self._payload(ConflictResolution.OVERWRITE))

        assert result.imported_modules == 2
        support = await service.get_module("support")
        assert support.name == "Help Desk"
        assert support.allowed_roles == []

    @pytest.mark.asyncio
    async def test_import_merge_keeps_unset_fields(self, service, registry):
        await service.import_registry(self._payload(ConflictResolution.MERGE))

        support = await service.get_module("support")
        assert support.name == "Help Desk"
        assert support.allowed_roles == ["OWNER", "ADMIN"]

    @pytest.mark.asyncio
    async def test_validation_aborts_import(self, service, registry):
        request = RegistryImportRequest(data=RegistryImportData(
            modules=[ModuleCreate(module_key="reports", name="Reports")],
            pages=[PageCreate(module_key="ghost", page_key="overview", name="Overview")],
        ))

        result = await service.import_registry(request)

        assert not result.success
        assert result.errors == ["Page 'ghost.overview' references unknown module 'ghost'"]
        assert not await service.module_exists("reports")

    @pytest.mark.asyncio
    async def test_unvalidated_import_skips_bad_rows(self, service, registry):
        request = RegistryImportRequest(
            data=RegistryImportData(
                modules=[ModuleCreate(module_key="reports", name="Reports")],
                pages=[PageCreate(module_key="ghost", page_key="overview", name="Overview")],
            ),
            validate_before_import=False,
        )

        result = await service.import_registry(request)

        assert not result.success
        assert result.imported_modules == 1
        assert result.skipped_count == 1
        assert await service.module_exists("reports")

    @pytest.mark.asyncio
    async def test_repeated_keys_in_payload(self, service):
        request = RegistryImportRequest(
            data=RegistryImportData(modules=[
                ModuleCreate(module_key="reports", name="Reports"),
                ModuleCreate(module_key="reports", name="Reports again"),
            ]),
            validate_before_import=False,
        )

        result = await service.import_registry(request)

        assert result.imported_modules == 1
        assert result.skipped_count == 1
        assert (await service.get_module("reports")).name == "Reports"


class TestRegistryCsv:

    def test_row_errors_reported(self):
        text = (
            "kind,module_key,page_key,component_key,name,route_path,component_type,allowed_roles,description\n"
            "MODULE,reports,,,Reports,,,OWNER;ADMIN,\n"
            "WIDGET,reports,,,Thing,,,,\n"
            "MODULE,Bad Key,,,Bad,,,,\n"
            "COMPONENT,reports,overview,export_csv,Export,,BUTTON,,\n"
        )

        data, errors = parse_registry_csv(text)

        assert [m.module_key for m in data.modules] == ["reports"]
        assert data.modules[0].allowed_roles == [UserRole.OWNER, UserRole.ADMIN]
        assert data.components[0].page_key == "reports.overview"
        assert len(errors) == 2
        assert errors[0].startswith("Row 3")
        assert errors[1].startswith("Row 4")

    def test_missing_columns(self):
        data, errors = parse_registry_csv("foo,bar\n1,2\n")

        assert data.modules == []
        assert errors == ["Missing required column(s): kind, module_key, name"]
