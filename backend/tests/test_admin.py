"""管理员接口测试"""

import pytest

from conftest import add_subscriber, register, set_role


@pytest.fixture
async def admin(client, alice):
    await set_role("alice@example.com", "admin")
    return alice


@pytest.fixture
async def super_admin(client):
    data = await register(client, "root@example.com")
    await set_role("root@example.com", "super_admin")
    data["headers"] = {"Authorization": f"Bearer {data['token']}"}
    return data


class TestAdminAccess:
    async def test_regular_user_forbidden(self, client, bob):
        response = await client.get("/api/admin/dashboard", headers=bob["headers"])
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "AUTHORIZATION_ERROR"

    async def test_anonymous_rejected(self, client):
        response = await client.get("/api/admin/users")
        assert response.status_code == 401


class TestDashboard:
    async def test_totals_and_activity(self, client, admin, bob, newsletter):
        await add_subscriber(client, admin["headers"], "reader@example.com")

        response = await client.get("/api/admin/dashboard", headers=admin["headers"])

        assert response.status_code == 200
        body = response.json()
        assert body["totals"]["users"] == 2
        assert body["totals"]["newsletters"] == 1
        assert body["totals"]["active_subscribers"] == 1
        assert body["activity"]["today"]["new_users"] == 2
        assert body["activity"]["week"]["new_subscribers"] == 1


class TestUserManagement:
    async def test_list_and_search(self, client, admin, bob):
        listing = await client.get("/api/admin/users", headers=admin["headers"])
        search = await client.get("/api/admin/users?search=BOB", headers=admin["headers"])

        assert listing.json()["pagination"]["total"] == 2
        assert [u["email"] for u in search.json()["users"]] == ["bob@example.com"]

    async def test_cannot_modify_self(self, client, admin):
        response = await client.patch(
            f"/api/admin/users/{admin['user']['id']}", json={"is_active": False}, headers=admin["headers"]
        )
        assert response.status_code == 403

    async def test_empty_update_rejected(self, client, admin, bob):
        response = await client.patch(f"/api/admin/users/{bob['user']['id']}", json={}, headers=admin["headers"])
        assert response.status_code == 400

    async def test_unknown_user(self, client, admin):
        response = await client.patch(
            "/api/admin/users/00000000-0000-0000-0000-000000000000",
            json={"is_active": False},
            headers=admin["headers"],
        )
        assert response.status_code == 404

    async def test_only_super_admin_grants_admin(self, client, admin, super_admin, bob):
        url = f"/api/admin/users/{bob['user']['id']}"

        denied = await client.patch(url, json={"role": "admin"}, headers=admin["headers"])
        granted = await client.patch(url, json={"role": "admin"}, headers=super_admin["headers"])

        assert denied.status_code == 403
        assert granted.status_code == 200
        assert granted.json()["user"]["role"] == "admin"

        # 普通管理员也不能降级其他管理员
        demote = await client.patch(url, json={"role": "user"}, headers=admin["headers"])
        assert demote.status_code == 403

    async def test_deactivate_revokes_sessions(self, client, admin, bob):
        response = await client.patch(
            f"/api/admin/users/{bob['user']['id']}", json={"is_active": False}, headers=admin["headers"]
        )

        assert response.status_code == 200
        assert response.json()["user"]["is_active"] is False
        assert (await client.get("/api/auth/me", headers=bob["headers"])).status_code == 401

        login = await client.post(
            "/api/auth/login", json={"email": "bob@example.com", "password": "Str0ng!Pass"}
        )
        assert login.status_code == 403


class TestAuditLogs:
    async def test_updates_are_audited(self, client, admin, bob):
        await client.patch(
            f"/api/admin/users/{bob['user']['id']}", json={"is_active": False}, headers=admin["headers"]
        )

        response = await client.get("/api/admin/audit-logs?action=USER_UPDATED", headers=admin["headers"])

        [log] = response.json()["audit_logs"]
        assert log["actor_id"] == admin["user"]["id"]
        assert log["target_id"] == bob["user"]["id"]
        assert log["details"] == {"is_active": {"from": True, "to": False}}

    async def test_filter_by_actor(self, client, admin, bob):
        response = await client.get(
            f"/api/admin/audit-logs?actor_id={bob['user']['id']}", headers=admin["headers"]
        )

        actions = [log["action"] for log in response.json()["audit_logs"]]
        assert actions == ["USER_REGISTERED"]
