"""认证与用户资料接口测试"""

from conftest import PASSWORD, bearer, register


class TestRegister:
    async def test_register_returns_tokens_and_user(self, client):
        data = await register(client, "New.User@Example.com", display_name="<b>New</b> user")

        assert data["token_type"] == "bearer"
        assert data["token"] and data["refresh_token"]
        assert data["user"]["email"] == "new.user@example.com"
        assert data["user"]["display_name"] == "New user"
        assert data["user"]["role"] == "user"

    async def test_duplicate_email_conflicts(self, client):
        await register(client, "dup@example.com")
        response = await client.post("/api/auth/register", json={"email": "DUP@example.com", "password": PASSWORD})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    async def test_weak_password_lists_problems(self, client):
        response = await client.post("/api/auth/register", json={"email": "weak@example.com", "password": "alllowercase"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        fields = {e["field"] for e in error["validation_errors"]}
        assert fields == {"password"}
        assert len(error["validation_errors"]) >= 3

    async def test_invalid_email_rejected(self, client):
        response = await client.post("/api/auth/register", json={"email": "not-an-email", "password": PASSWORD})
        assert response.status_code == 400

    async def test_required_consents_enforced(self, client):
        response = await client.post(
            "/api/auth/register",
            json={"email": "c@example.com", "password": PASSWORD, "consents": {"terms": True}},
        )

        assert response.status_code == 400
        fields = [e["field"] for e in response.json()["error"]["validation_errors"]]
        assert fields == ["consents.privacy"]

    async def test_consents_recorded_on_register(self, client):
        data = await register(
            client, "c@example.com",
            consents={"terms": True, "privacy": True, "marketing": False},
        )
        response = await client.get("/api/privacy/consents", headers=bearer(data["token"]))

        consents = response.json()["consents"]
        assert consents["terms"]["agreed"] is True
        assert consents["marketing"]["agreed"] is False


class TestLogin:
    async def test_login_success(self, client, alice):
        response = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

        assert response.status_code == 200
        assert response.json()["user"]["id"] == alice["user"]["id"]
        assert response.json()["user"]["last_login_at"] is not None

    async def test_wrong_password_and_unknown_email_look_the_same(self, client, alice):
        wrong = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Wr0ng!Pass"})
        unknown = await client.post("/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    async def test_login_rate_limited(self, client, alice):
        for _ in range(10):
            await client.post("/api/auth/login", json={"email": "alice@example.com", "password": "Wr0ng!Pass"})
        response = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD})

        assert response.status_code == 429
        assert "Retry-After" in response.headers
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"

    async def test_forged_forwarded_for_does_not_reset_limit(self, client, alice):
        for i in range(10):
            await client.post(
                "/api/auth/login",
                json={"email": "alice@example.com", "password": "Wr0ng!Pass"},
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            )
        response = await client.post(
            "/api/auth/login",
            json={"email": "alice@example.com", "password": PASSWORD},
            headers={"X-Forwarded-For": "198.51.100.99"},
        )

        assert response.status_code == 429


class TestTokens:
    async def test_me_requires_token(self, client):
        response = await client.get("/api/auth/me")
        assert response.status_code == 401

    async def test_me_rejects_garbage_token(self, client):
        response = await client.get("/api/auth/me", headers=bearer("not.a.jwt"))
        assert response.status_code == 401

    async def test_me_returns_current_user(self, client, alice):
        response = await client.get("/api/auth/me", headers=alice["headers"])

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "alice@example.com"

    async def test_refresh_rotates_both_tokens(self, client, alice):
        response = await client.post("/api/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert response.status_code == 200
        rotated = response.json()

        # 旧的访问令牌与刷新令牌都失效
        assert (await client.get("/api/auth/me", headers=alice["headers"])).status_code == 401
        reused = await client.post("/api/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert reused.status_code == 401

        assert (await client.get("/api/auth/me", headers=bearer(rotated["token"]))).status_code == 200

    async def test_logout_revokes_session(self, client, alice):
        response = await client.post("/api/auth/logout", headers=alice["headers"])
        assert response.status_code == 200

        assert (await client.get("/api/auth/me", headers=alice["headers"])).status_code == 401
        refresh = await client.post("/api/auth/refresh", json={"refresh_token": alice["refresh_token"]})
        assert refresh.status_code == 401


class TestProfile:
    async def test_update_profile_sanitizes(self, client, alice):
        response = await client.put(
            "/api/user/profile",
            json={"display_name": "Alice <script>alert(1)</script>", "bio": "<i>hi</i>"},
            headers=alice["headers"],
        )

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["display_name"] == "Alice"
        assert user["bio"] == "hi"

    async def test_change_password_keeps_current_session_only(self, client, alice):
        other = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        other_headers = bearer(other.json()["token"])

        response = await client.put(
            "/api/user/password",
            json={"current_password": PASSWORD, "new_password": "N3w!Password"},
            headers=alice["headers"],
        )
        assert response.status_code == 200

        assert (await client.get("/api/auth/me", headers=alice["headers"])).status_code == 200
        assert (await client.get("/api/auth/me", headers=other_headers)).status_code == 401
        login = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": "N3w!Password"})
        assert login.status_code == 200

    async def test_change_password_wrong_current(self, client, alice):
        response = await client.put(
            "/api/user/password",
            json={"current_password": "Wr0ng!Pass", "new_password": "N3w!Password"},
            headers=alice["headers"],
        )
        assert response.status_code == 401
