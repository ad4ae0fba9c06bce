"""同意管理、资料汇出、账号删除与数据保留测试"""

from datetime import timedelta

from sqlalchemy import func, select, update

from conftest import PASSWORD, add_subscriber, register

from piper.core.timeutil import utcnow
from piper.models.audit import AuditLog
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.models.user import User
from piper.services.privacy import PrivacyService


class TestConsents:
    async def test_update_and_revoke(self, client, alice):
        updated = await client.post(
            "/api/privacy/consents", json={"consents": {"marketing": True}}, headers=alice["headers"]
        )
        assert updated.json()["consents"]["marketing"]["agreed"] is True

        revoked = await client.delete("/api/privacy/consents/marketing", headers=alice["headers"])
        assert revoked.status_code == 200
        assert revoked.json()["consents"]["marketing"]["agreed"] is False

        again = await client.delete("/api/privacy/consents/marketing", headers=alice["headers"])
        assert again.status_code == 404

    async def test_unknown_consent_type(self, client, alice):
        response = await client.post(
            "/api/privacy/consents", json={"consents": {"telepathy": True}}, headers=alice["headers"]
        )
        assert response.status_code == 400

    async def test_status_lists_required_types(self, client, alice):
        response = await client.get("/api/privacy/consents", headers=alice["headers"])

        body = response.json()
        assert body["required"] == ["terms", "privacy"]
        assert set(body["consents"]) == {"terms", "privacy", "marketing", "analytics"}


class TestExport:
    async def test_export_contains_user_data_with_masked_ips(self, client, alice, newsletter):
        await add_subscriber(client, alice["headers"], "reader@example.com")

        response = await client.get(
            "/api/privacy/export", headers={**alice["headers"], "X-Forwarded-For": "203.0.113.7"}
        )

        assert response.status_code == 200
        export = response.json()
        assert export["user"]["email"] == "alice@example.com"
        assert [n["title"] for n in export["newsletters"]] == ["Weekly Digest"]
        assert [s["email"] for s in export["subscribers"]] == ["reader@example.com"]
        assert export["events_total"] == len(export["events"]) == 2
        assert export["sessions"][0]["ip_address"].endswith("*.*")

    async def test_export_only_own_data(self, client, bob, newsletter):
        export = (await client.get("/api/privacy/export", headers=bob["headers"])).json()
        assert export["newsletters"] == []
        assert export["user"]["email"] == "bob@example.com"

    async def test_export_is_audited(self, client, alice, db):
        await client.get("/api/privacy/export", headers=alice["headers"])

        actions = (await db.execute(select(AuditLog.action))).scalars().all()
        assert "DATA_EXPORTED" in actions


class TestDeleteAccount:
    async def test_wrong_password(self, client, alice):
        response = await client.request(
            "DELETE", "/api/privacy/account", json={"password": "Wr0ng!Pass"}, headers=alice["headers"]
        )
        assert response.status_code == 401

    async def test_deletes_everything(self, client, alice, bob, newsletter, db):
        await add_subscriber(client, alice["headers"], "reader@example.com")

        response = await client.request(
            "DELETE", "/api/privacy/account", json={"password": PASSWORD}, headers=alice["headers"]
        )
        assert response.status_code == 204

        assert await db.scalar(select(func.count(User.id))) == 1
        assert await db.scalar(select(func.count(Newsletter.id))) == 0
        assert await db.scalar(select(func.count(Subscriber.id))) == 0

        # 账号删除后审计日志保留，邮箱已遮罩
        log = (await db.execute(select(AuditLog).where(AuditLog.action == "ACCOUNT_DELETED"))).scalar_one()
        assert log.details == {"email": "a****@example.com"}

        assert (await client.get("/api/auth/me", headers=alice["headers"])).status_code == 401
        login = await client.post("/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert login.status_code == 401

        # 邮箱可以重新注册
        await register(client, "alice@example.com")


class TestRetention:
    async def test_purge_expired(self, client, alice, db):
        await add_subscriber(client, alice["headers"], "active@example.com")
        await add_subscriber(client, alice["headers"], "pending@example.com", status="pending")

        purged = await PrivacyService(db).purge_expired(now=utcnow() + timedelta(days=400))

        assert purged == {"sessions": 1, "events": 2, "pending_subscribers": 1}
        emails = (await db.execute(select(Subscriber.email))).scalars().all()
        assert emails == ["active@example.com"]

    async def test_purge_keeps_recent_data(self, client, alice, db):
        await add_subscriber(client, alice["headers"], "pending@example.com", status="pending")

        purged = await PrivacyService(db).purge_expired()
        assert purged == {"sessions": 0, "events": 0, "pending_subscribers": 0}

    async def test_resubscribed_long_time_reader_is_kept(self, client, alice, newsletter, db):
        reader = await add_subscriber(client, alice["headers"], "reader@example.com")
        await db.execute(
            update(Subscriber)
            .where(Subscriber.email == "reader@example.com")
            .values(created_at=utcnow() - timedelta(days=60), consented_at=utcnow() - timedelta(days=60))
        )
        await db.commit()
        await client.post(f"/api/subscribers/{reader['id']}/unsubscribe", headers=alice["headers"])

        resubscribed = await client.post(
            "/api/subscribe",
            json={"newsletter_id": newsletter["id"], "email": "reader@example.com", "consent": True},
        )
        assert resubscribed.json()["status"] == "pending"

        purged = await PrivacyService(db).purge_expired()

        assert purged["pending_subscribers"] == 0
        emails = (await db.execute(select(Subscriber.email))).scalars().all()
        assert emails == ["reader@example.com"]

        # 超过确认期限仍未确认才会被清理
        later = await PrivacyService(db).purge_expired(now=utcnow() + timedelta(days=8))
        assert later["pending_subscribers"] == 1
