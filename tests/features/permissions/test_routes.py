"""HTTP-level tests for the permission and registry routes."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.database.engine import get_db
from app.features.permissions.dependencies import get_permission_cache
from app.features.users.auth import create_access_token
from app.main import app


@pytest_asyncio.fixture
async def client(db):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_permission_cache] = lambda: None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


class TestPermissionCheckRoutes:

    @pytest.mark.asyncio
    async def test_check_without_groups(self, client, registry, alice):
        response = await client.post(
            "/permissions/check",
            json={"permission_type": "MODULE", "resource_type": "support", "resource_identifier": "support"},
            headers=auth(alice),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["has_permission"] is False
        assert body["decided_by"] == "NO_GROUPS"
        assert body["user_id"] == alice.id

    @pytest.mark.asyncio
    async def test_user_cannot_check_others(self, client, registry, alice, bob):
        response = await client.post(
            "/permissions/check",
            json={
                "user_id": bob.id,
                "permission_type": "MODULE",
                "resource_type": "support",
                "resource_identifier": "support",
            },
            headers=auth(alice),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_malformed_key_is_typed_error(self, client, registry, alice):
        response = await client.post(
            "/permissions/check",
            json={"permission_type": "COMPONENT", "resource_type": "support", "resource_identifier": "delete_message"},
            headers=auth(alice),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_permission_key"

    @pytest.mark.asyncio
    async def test_unknown_user_for_admin_check(self, client, registry, admin):
        response = await client.post(
            "/permissions/check",
            json={
                "user_id": "missing",
                "permission_type": "MODULE",
                "resource_type": "support",
                "resource_identifier": "support",
            },
            headers=auth(admin),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "user_not_found"

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, client, registry):
        response = await client.get("/permissions/check/module/support")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, client, registry):
        response = await client.get(
            "/permissions/check/module/support", headers={"Authorization": "Bearer not-a-token"}
        )
        assert response.status_code == 401


class TestGroupManagementFlow:

    @pytest.mark.asyncio
    async def test_grant_through_api(self, client, registry, owner, alice):
        response = await client.post("/permissions/groups", json={"name": "Support Team"}, headers=auth(owner))
        assert response.status_code == 201
        group_id = response.json()["id"]

        response = await client.post(
            f"/permissions/groups/{group_id}/permissions",
            json={
                "permission_type": "MODULE",
                "resource_type": "support",
                "resource_identifier": "support",
                "action": "WRITE",
            },
            headers=auth(owner),
        )
        assert response.status_code == 201

        response = await client.post(
            f"/permissions/groups/{group_id}/members", json={"user_id": alice.id}, headers=auth(owner),
        )
        assert response.status_code == 201

        response = await client.get(
            "/permissions/check/component/support.chat/send_message?action=WRITE", headers=auth(alice),
        )
        assert response.status_code == 200
        assert response.json()["has_permission"] is True
        assert response.json()["decided_by"] == "GROUP"

        response = await client.get("/permissions/me", headers=auth(alice))
        assert response.status_code == 200
        assert response.json()["effective_permissions"]["MODULE:support:support"]["WRITE"] is True

    @pytest.mark.asyncio
    async def test_duplicate_group_name(self, client, owner):
        await client.post("/permissions/groups", json={"name": "Support Team"}, headers=auth(owner))
        response = await client.post("/permissions/groups", json={"name": "Support Team"}, headers=auth(owner))

        assert response.status_code == 409
        assert response.json()["error"] == "name_conflict"

    @pytest.mark.asyncio
    async def test_admin_escalation_rejected(self, client, registry, owner, admin):
        response = await client.post("/permissions/groups", json={"name": "Portfolio"}, headers=auth(owner))
        group_id = response.json()["id"]

        response = await client.post(
            f"/permissions/groups/{group_id}/permissions",
            json={
                "permission_type": "MODULE",
                "resource_type": "portfolio",
                "resource_identifier": "portfolio",
                "action": "READ",
            },
            headers=auth(admin),
        )

        assert response.status_code == 403
        assert response.json()["error"] == "creator_access_violation"

    @pytest.mark.asyncio
    async def test_groups_require_admin(self, client, alice):
        response = await client.post("/permissions/groups", json={"name": "Mine"}, headers=auth(alice))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_audit_log_recorded(self, client, registry, owner, admin, alice):
        await client.post("/permissions/groups", json={"name": "Support Team"}, headers=auth(owner))

        response = await client.get("/permissions/audit-logs", headers=auth(admin))
        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["action"] == "create"

        response = await client.get("/permissions/audit-logs", headers=auth(alice))
        assert response.status_code == 403


class TestRegistryRoutes:

    @pytest.mark.asyncio
    async def test_register_module_requires_admin(self, client, registry, admin, alice):
        payload = {"module_key": "reports", "name": "Reports", "allowed_roles": ["ADMIN"]}

        response = await client.post("/permissions/registry/modules", json=payload, headers=auth(alice))
        assert response.status_code == 403

        response = await client.post("/permissions/registry/modules", json=payload, headers=auth(admin))
        assert response.status_code == 201
        assert response.json()["allowed_roles"] == ["ADMIN"]

    @pytest.mark.asyncio
    async def test_invalid_key_rejected(self, client, admin):
        response = await client.post(
            "/permissions/registry/modules", json={"module_key": "Bad Key", "name": "Bad"}, headers=auth(admin),
        )
        assert response.status_code == 400
        assert "module_key" in response.json()

    @pytest.mark.asyncio
    async def test_delete_with_dependents(self, client, registry, admin):
        response = await client.delete("/permissions/registry/modules/support", headers=auth(admin))

        assert response.status_code == 409
        assert response.json()["error"] == "registry_conflict"

    @pytest.mark.asyncio
    async def test_available_modules(self, client, registry, admin):
        response = await client.get("/permissions/registry/available-modules", headers=auth(admin))

        assert response.status_code == 200
        assert [m["module_key"] for m in response.json()] == ["admin", "finance", "support"]

    @pytest.mark.asyncio
    async def test_health_requires_admin(self, client, registry, admin, alice):
        response = await client.get("/permissions/registry/health", headers=auth(alice))
        assert response.status_code == 403

        response = await client.get("/permissions/registry/health", headers=auth(admin))

        assert response.status_code == 200
        assert response.json()["status"] == "HEALTHY"
