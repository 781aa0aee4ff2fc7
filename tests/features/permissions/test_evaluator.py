"""Tests for PermissionEvaluator against a real database session."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from app.features.permissions.evaluator import PermissionEvaluator
from app.features.permissions.exceptions import InvalidPermissionKey, UserNotFound
from app.features.permissions.models import PermissionAction
from app.features.permissions.schemas import DecisionSource, EffectivePermissionSet, PermissionSummary
from app.features.users.models import UserRole


@pytest.fixture
def evaluator(db):
    return PermissionEvaluator(db)


class TestStaticRoles:

    @pytest.mark.asyncio
    async def test_owner_allowed_everywhere(self, evaluator, registry, owner):
        decision = await evaluator.explain(owner.id, "COMPONENT", "support", "chat.delete_message", "DELETE")
        assert decision.allowed
        assert decision.decided_by == DecisionSource.OWNER

    @pytest.mark.asyncio
    async def test_owner_allowed_on_unregistered_resource(self, evaluator, registry, owner):
        assert await evaluator.has_permission(owner.id, "MODULE", "reports", "reports", "READ")

    @pytest.mark.asyncio
    async def test_admin_allowed_on_module_listing_admin(self, evaluator, registry, admin):
        decision = await evaluator.explain(admin.id, "PAGE", "finance", "invoices", "DELETE")
        assert decision.allowed
        assert decision.decided_by == DecisionSource.ADMIN_ROLE

    @pytest.mark.asyncio
    async def test_admin_needs_group_on_owner_only_module(self, evaluator, registry, admin):
        decision = await evaluator.explain(admin.id, "MODULE", "portfolio", "portfolio", "READ")
        assert not decision.allowed
        assert decision.decided_by == DecisionSource.NO_GROUPS

    @pytest.mark.asyncio
    async def test_admin_group_grant_on_owner_only_module(self, evaluator, registry, admin, make_group, add_entry):
        group = await make_group("Portfolio Readers", admin)
        await add_entry(group, "MODULE", "portfolio", "portfolio", "READ")
        assert await evaluator.has_module_access(admin.id, "portfolio")


class TestDefaultsAndErrors:

    @pytest.mark.asyncio
    async def test_user_without_groups_denied(self, evaluator, registry, alice):
        decision = await evaluator.explain(alice.id, "MODULE", "support", "support", "READ")
        assert not decision.allowed
        assert decision.decided_by == DecisionSource.NO_GROUPS

    @pytest.mark.asyncio
    async def test_unregistered_resource_denied(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Support Team", alice)
        await add_entry(group, "MODULE", "support", "support", "DELETE")

        decision = await evaluator.explain(alice.id, "PAGE", "support", "archive", "READ")
        assert not decision.allowed
        assert decision.decided_by == DecisionSource.UNREGISTERED
        assert not await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.pin_message", "READ")

    @pytest.mark.asyncio
    async def test_no_matching_entry_is_default_deny(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Finance Team", alice)
        await add_entry(group, "MODULE", "finance", "finance", "READ")

        decision = await evaluator.explain(alice.id, "MODULE", "support", "support", "READ")
        assert not decision.allowed
        assert decision.decided_by == DecisionSource.DEFAULT_DENY

    @pytest.mark.asyncio
    async def test_unknown_user(self, evaluator, registry):
        with pytest.raises(UserNotFound):
            await evaluator.has_permission("01HZZZZZZZZZZZZZZZZZZZZZZZ", "MODULE", "support", "support", "READ")

    @pytest.mark.asyncio
    async def test_malformed_key(self, evaluator, registry, alice):
        with pytest.raises(InvalidPermissionKey):
            await evaluator.has_permission(alice.id, "COMPONENT", "support", "", "READ")

    @pytest.mark.asyncio
    async def test_inactive_group_ignored(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Dormant", alice, active=False)
        await add_entry(group, "MODULE", "support", "support", "READ")
        assert not await evaluator.has_module_access(alice.id, "support")


class TestGroupResolution:

    @pytest.mark.asyncio
    async def test_module_grant_inherited_downwards(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Support Team", alice)
        await add_entry(group, "MODULE", "support", "support", "WRITE")

        assert await evaluator.has_page_access(alice.id, "support", "tickets", "READ")
        assert await evaluator.has_component_access(alice.id, "support.chat", "send_message", "WRITE")
        assert not await evaluator.has_component_access(alice.id, "support.chat", "send_message", "DELETE")
        assert not await evaluator.has_component_access(alice.id, "support.chat", "send_message", "EXECUTE")

    @pytest.mark.asyncio
    async def test_support_team_scenario(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Support Team", alice)
        await add_entry(group, "MODULE", "support", "support", "READ")
        await add_entry(group, "MODULE", "support", "support", "WRITE")
        await add_entry(group, "COMPONENT", "support", "chat.delete_message", "DELETE", granted=False)

        assert await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.delete_message", "WRITE")
        assert not await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.delete_message", "DELETE")

    @pytest.mark.asyncio
    async def test_component_deny_overrides_implied_module_grant(
        self, evaluator, registry, alice, make_group, add_entry
    ):
        group = await make_group("Support Team", alice)
        await add_entry(group, "MODULE", "support", "support", "WRITE")
        await add_entry(group, "COMPONENT", "support", "chat.delete_message", "WRITE", granted=False)

        assert not await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.delete_message", "WRITE")
        assert await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.send_message", "WRITE")
        assert await evaluator.has_permission(alice.id, "COMPONENT", "support", "chat.delete_message", "READ")

    @pytest.mark.asyncio
    async def test_any_group_granting_allows(self, evaluator, registry, alice, make_group, add_entry):
        readers = await make_group("Readers", alice)
        writers = await make_group("Writers", alice)
        await add_entry(readers, "MODULE", "finance", "finance", "READ")
        await add_entry(writers, "PAGE", "finance", "invoices", "WRITE")

        decision = await evaluator.explain(alice.id, "PAGE", "finance", "invoices", "WRITE")
        assert decision.allowed
        assert decision.group_ids == [writers.id]

    @pytest.mark.asyncio
    async def test_module_grants_combine_across_groups(self, evaluator, registry, alice, make_group, add_entry):
        readers = await make_group("Readers", alice)
        writers = await make_group("Writers", alice)
        await add_entry(readers, "MODULE", "finance", "finance", "READ")
        await add_entry(writers, "MODULE", "finance", "finance", "WRITE")

        assert await evaluator.has_module_access(alice.id, "finance", "READ")
        assert await evaluator.has_module_access(alice.id, "finance", "WRITE")
        assert not await evaluator.has_module_access(alice.id, "finance", "DELETE")

        permissions = await evaluator.get_user_permissions(alice.id)
        assert permissions.effective_permissions["MODULE:finance:finance"] == {
            PermissionAction.READ: True,
            PermissionAction.WRITE: True,
        }

    @pytest.mark.asyncio
    async def test_deny_in_any_group_wins_regardless_of_order(
        self, evaluator, registry, alice, bob, make_group, add_entry
    ):
        # alice joins the allowing group first, bob the denying group first
        allow_first = await make_group("Allow", alice)
        deny_group = await make_group("Deny", bob, alice)
        await add_entry(allow_first, "PAGE", "support", "chat", "READ")
        await add_entry(deny_group, "PAGE", "support", "chat", "READ", granted=False)
        await make_group("Allow Too", bob)

        for user in (alice, bob):
            decision = await evaluator.explain(user.id, "PAGE", "support", "chat", "READ")
            assert not decision.allowed
            assert decision.group_ids == [deny_group.id]

    @pytest.mark.asyncio
    async def test_deny_in_one_group_beats_grant_at_other_level(
        self, evaluator, registry, alice, make_group, add_entry
    ):
        module_grant = await make_group("Module Grant", alice)
        page_deny = await make_group("Page Deny", alice)
        await add_entry(module_grant, "MODULE", "support", "support", "WRITE")
        await add_entry(page_deny, "PAGE", "support", "chat", "WRITE", granted=False)

        assert not await evaluator.has_page_access(alice.id, "support", "chat", "WRITE")
        assert await evaluator.has_page_access(alice.id, "support", "tickets", "WRITE")


class TestEffectivePermissions:

    @pytest.mark.asyncio
    async def test_group_permissions_expanded(self, evaluator, registry, alice, make_group, add_entry):
        group = await make_group("Support Team", alice)
        await add_entry(group, "MODULE", "support", "support", "READ")
        await add_entry(group, "COMPONENT", "support", "chat.delete_message", "READ", granted=False)

        result = await evaluator.get_user_permissions(alice.id)

        assert result.user_id == alice.id
        assert result.role == UserRole.USER
        assert result.static_modules == []
        assert [g.name for g in result.groups] == ["Support Team"]

        effective = result.effective_permissions
        assert effective["MODULE:support:support"] == {PermissionAction.READ: True}
        assert effective["PAGE:support:tickets"] == {PermissionAction.READ: True}
        assert effective["COMPONENT:support:chat.delete_message"] == {PermissionAction.READ: False}
        assert not any(key.startswith("MODULE:finance") for key in effective)
        assert result.summary.denied_count == 1
        assert result.summary.total_groups == 1

    @pytest.mark.asyncio
    async def test_admin_static_modules(self, evaluator, registry, admin):
        result = await evaluator.get_user_permissions(admin.id)

        assert result.static_modules == ["admin", "finance", "support"]
        assert result.effective_permissions["PAGE:finance:invoices"][PermissionAction.DELETE] is True
        assert not any(key.startswith("MODULE:portfolio") for key in result.effective_permissions)

    @pytest.mark.asyncio
    async def test_computed_set_is_cached(self, db, registry, alice, mock_cache):
        evaluator = PermissionEvaluator(db, mock_cache)

        result = await evaluator.get_user_permissions(alice.id)

        mock_cache.get_user_permissions.assert_awaited_once_with(alice.id)
        mock_cache.get_generation.assert_awaited_once_with(alice.id)
        mock_cache.set_user_permissions.assert_awaited_once_with(result, "0:0")

    @pytest.mark.asyncio
    async def test_not_cached_without_generation(self, db, registry, alice, mock_cache):
        mock_cache.get_generation.return_value = None
        evaluator = PermissionEvaluator(db, mock_cache)

        await evaluator.get_user_permissions(alice.id)

        mock_cache.set_user_permissions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cache_hit_skips_computation(self, db, mock_cache):
        cached = EffectivePermissionSet(
            user_id="cached-user",
            role=UserRole.USER,
            groups=[],
            static_modules=[],
            effective_permissions={},
            summary=PermissionSummary(
                total_groups=0, total_keys=0, granted_count=0, denied_count=0,
                module_count=0, page_count=0, component_count=0,
            ),
            computed_at=datetime.now(timezone.utc),
        )
        mock_cache.get_user_permissions.return_value = cached
        evaluator = PermissionEvaluator(db, mock_cache)

        # the user does not exist, so reaching the database would raise
        assert await evaluator.get_user_permissions("cached-user") is cached
        mock_cache.set_user_permissions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidation_without_cache_is_noop(self, evaluator):
        await evaluator.invalidate_user("anyone")
        await evaluator.invalidate_all()

    @pytest.mark.asyncio
    async def test_invalidation_forwarded_to_cache(self, db):
        cache = AsyncMock()
        evaluator = PermissionEvaluator(db, cache)
        await evaluator.invalidate_users(["a", "b"])
        cache.invalidate_users.assert_awaited_once_with(["a", "b"])
