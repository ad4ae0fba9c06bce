"""活动状态流程、投递与打开/点击追踪测试"""

import re
from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from conftest import add_subscriber

from piper.core.errors import ConflictError
from piper.core.timeutil import utcnow
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.subscriber import Subscriber
from piper.services.analytics import TrackingService
from piper.services.campaign import CampaignService, CampaignStatus, check_transition
from piper.services.delivery import CampaignDeliveryService, rewrite_links
from piper.services.email_service import SEND_BOUNCED, SEND_FAILED
from piper.tasks import campaigns as campaign_tasks

OPEN_RE = re.compile(r"/api/track/open/([A-Za-z0-9_\-=]+)")
CLICK_RE = re.compile(r"/api/track/click/([A-Za-z0-9_\-=]+)")


def future(hours: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


async def create_campaign(client, headers, newsletter_id, **extra) -> dict:
    payload = {"newsletter_id": newsletter_id, "name": "Launch", **extra}
    response = await client.post("/api/campaigns", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["campaign"]


@pytest.fixture
async def audience(client, alice):
    """a: 追踪 + vip，b: 无追踪，c: 未同意营销，d: 已退订"""
    a = await add_subscriber(client, alice["headers"], "a@example.com", tags=["vip"], consent_tracking=True)
    b = await add_subscriber(client, alice["headers"], "b@example.com")
    c = await add_subscriber(client, alice["headers"], "c@example.com", consent_marketing=False)
    d = await add_subscriber(client, alice["headers"], "d@example.com", tags=["vip"])
    await client.post(f"/api/subscribers/{d['id']}/unsubscribe", headers=alice["headers"])
    return {"a": a, "b": b, "c": c, "d": d}


class TestTransitions:
    def test_allowed_and_rejected(self):
        check_transition("draft", CampaignStatus.SENDING)
        check_transition("scheduled", CampaignStatus.CANCELLED)
        with pytest.raises(ConflictError):
            check_transition("sent", CampaignStatus.SENDING)
        with pytest.raises(ConflictError):
            check_transition("sending", CampaignStatus.CANCELLED)


class TestCampaignCrud:
    async def test_create_defaults_to_all_segment(self, client, alice, newsletter):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])

        assert campaign["status"] == "draft"
        assert campaign["segment"] == {"type": "all"}

    async def test_create_with_schedule(self, client, alice, newsletter):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"], scheduled_at=future())
        assert campaign["status"] == "scheduled"

    async def test_tag_segment_requires_tags(self, client, alice, newsletter):
        response = await client.post(
            "/api/campaigns",
            json={"newsletter_id": newsletter["id"], "name": "X", "segment": {"type": "tags", "tags": []}},
            headers=alice["headers"],
        )
        assert response.status_code == 400

    async def test_foreign_newsletter_forbidden(self, client, bob, newsletter):
        response = await client.post(
            "/api/campaigns", json={"newsletter_id": newsletter["id"], "name": "X"}, headers=bob["headers"]
        )
        assert response.status_code == 403

    async def test_archived_newsletter_conflicts(self, client, alice, newsletter):
        await client.post(f"/api/newsletters/{newsletter['id']}/archive", headers=alice["headers"])
        response = await client.post(
            "/api/campaigns", json={"newsletter_id": newsletter["id"], "name": "X"}, headers=alice["headers"]
        )
        assert response.status_code == 409

    async def test_schedule_reschedule_and_cancel(self, client, alice, newsletter):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        url = f"/api/campaigns/{campaign['id']}"

        past = await client.post(f"{url}/schedule", json={"scheduled_at": "2000-01-01T00:00:00Z"}, headers=alice["headers"])
        assert past.status_code == 400

        first = await client.post(f"{url}/schedule", json={"scheduled_at": future(2)}, headers=alice["headers"])
        second = await client.post(f"{url}/schedule", json={"scheduled_at": future(5)}, headers=alice["headers"])
        assert first.json()["campaign"]["status"] == "scheduled"
        assert second.json()["campaign"]["scheduled_at"] != first.json()["campaign"]["scheduled_at"]

        cancelled = await client.post(f"{url}/cancel", headers=alice["headers"])
        assert cancelled.json()["campaign"]["status"] == "cancelled"

        assert (await client.post(f"{url}/cancel", headers=alice["headers"])).status_code == 409
        assert (await client.post(f"{url}/send", headers=alice["headers"])).status_code == 409
        assert (await client.put(url, json={"name": "New"}, headers=alice["headers"])).status_code == 409

    async def test_list_by_status(self, client, alice, newsletter):
        await create_campaign(client, alice["headers"], newsletter["id"], name="Draft")
        await create_campaign(client, alice["headers"], newsletter["id"], name="Later", scheduled_at=future())

        response = await client.get("/api/campaigns?status=scheduled", headers=alice["headers"])
        assert [c["name"] for c in response.json()["campaigns"]] == ["Later"]

    async def test_delete_draft(self, client, alice, newsletter):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        response = await client.delete(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])
        assert response.status_code == 204


class TestSend:
    async def test_send_without_recipients(self, client, alice, newsletter, queued):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        response = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])

        assert response.status_code == 400
        assert queued == []

    async def test_send_creates_deliveries_for_eligible_subscribers(self, client, alice, newsletter, audience, queued, db):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        response = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])

        assert response.status_code == 200
        sent = response.json()["campaign"]
        assert sent["status"] == "sending"
        assert sent["total_recipients"] == 2
        assert sent["started_at"] is not None
        assert queued == [campaign["id"]]

        emails = (await db.execute(
            select(CampaignDelivery.email).where(CampaignDelivery.campaign_id == UUID(campaign["id"]))
        )).scalars().all()
        assert sorted(emails) == ["a@example.com", "b@example.com"]

        # 发送中的活动不能编辑、删除或重复发送
        url = f"/api/campaigns/{campaign['id']}"
        assert (await client.put(url, json={"name": "x"}, headers=alice["headers"])).status_code == 409
        assert (await client.delete(url, headers=alice["headers"])).status_code == 409
        assert (await client.post(f"{url}/send", headers=alice["headers"])).status_code == 409

    async def test_tag_segment(self, client, alice, newsletter, audience):
        campaign = await create_campaign(
            client, alice["headers"], newsletter["id"], segment={"type": "tags", "tags": ["VIP"]}
        )
        response = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])

        # d 也有 vip 标签但已退订
        assert response.json()["campaign"]["total_recipients"] == 1

    async def test_other_user_cannot_send(self, client, alice, bob, newsletter, audience):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        response = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=bob["headers"])
        assert response.status_code == 403


class TestDelivery:
    async def _send(self, client, alice, newsletter, db, mailer) -> dict:
        campaign = await create_campaign(client, alice["headers"], newsletter["id"], subject="Big news")
        await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])
        assert await CampaignDeliveryService(db).deliver(UUID(campaign["id"])) is True
        return campaign

    async def test_delivery_completes_campaign(self, client, alice, newsletter, audience, db, mailer):
        campaign = await self._send(client, alice, newsletter, db, mailer)

        assert sorted(m["to"] for m in mailer.sent) == ["a@example.com", "b@example.com"]
        assert all(m["subject"] == "Big news" for m in mailer.sent)
        assert all(m["headers"]["List-Unsubscribe"].startswith("<http://testserver/api/unsubscribe?token=") for m in mailer.sent)

        result = (await client.get(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])).json()["campaign"]
        assert result["status"] == "sent"
        assert result["sent_count"] == 2
        assert result["completed_at"] is not None

        nl = (await client.get(f"/api/newsletters/{newsletter['id']}", headers=alice["headers"])).json()["newsletter"]
        assert nl["status"] == "sent"
        assert nl["sent_at"] is not None

    async def test_tracking_only_with_consent(self, client, alice, newsletter, audience, db, mailer):
        await self._send(client, alice, newsletter, db, mailer)

        [tracked] = mailer.to("a@example.com")
        [plain] = mailer.to("b@example.com")
        assert OPEN_RE.search(tracked["html"])
        assert CLICK_RE.search(tracked["html"])
        assert "https://example.com/post" not in tracked["html"]
        assert not OPEN_RE.search(plain["html"])
        assert "https://example.com/post?a=1&amp;b=2" in plain["html"]

    async def test_open_and_click_counted_once(self, client, alice, newsletter, audience, db, mailer):
        campaign = await self._send(client, alice, newsletter, db, mailer)
        [tracked] = mailer.to("a@example.com")
        open_token = OPEN_RE.search(tracked["html"]).group(1)
        click_token = CLICK_RE.search(tracked["html"]).group(1)

        for _ in range(2):
            pixel = await client.get(f"/api/track/open/{open_token}")
            assert pixel.status_code == 200
            assert pixel.headers["content-type"] == "image/gif"
            assert "no-store" in pixel.headers["cache-control"]

        click = await client.get(f"/api/track/click/{click_token}")
        assert click.status_code == 302
        assert click.headers["location"] == "https://example.com/post?a=1&b=2"
        await client.get(f"/api/track/click/{click_token}")

        stats = (await client.get(f"/api/campaigns/{campaign['id']}/stats", headers=alice["headers"])).json()["stats"]
        assert stats["opens"] == 1
        assert stats["clicks"] == 1
        assert stats["open_rate"] == 50.0
        assert stats["click_rate"] == 50.0
        assert stats["deliveries"] == {"pending": 0, "sent": 2, "failed": 0, "bounced": 0}

    async def test_invalid_tracking_tokens(self, client):
        pixel = await client.get("/api/track/open/not-a-token")
        click = await client.get("/api/track/click/not-a-token")

        assert pixel.status_code == 200
        assert pixel.headers["content-type"] == "image/gif"
        assert click.status_code == 404

    async def test_tracking_survives_database_errors(self, client, alice, newsletter, audience, db, mailer, monkeypatch):
        await self._send(client, alice, newsletter, db, mailer)
        [tracked] = mailer.to("a@example.com")

        async def unavailable(self, *args):
            raise SQLAlchemyError("database unavailable")

        monkeypatch.setattr(TrackingService, "record_open", unavailable)
        monkeypatch.setattr(TrackingService, "record_click", unavailable)

        pixel = await client.get(f"/api/track/open/{OPEN_RE.search(tracked['html']).group(1)}")
        click = await client.get(f"/api/track/click/{CLICK_RE.search(tracked['html']).group(1)}")

        assert pixel.status_code == 200
        assert pixel.headers["content-type"] == "image/gif"
        assert click.status_code == 302
        assert click.headers["location"] == "https://example.com/post?a=1&b=2"

    async def test_unsubscribe_link_counts_for_campaign(self, client, alice, newsletter, audience, db, mailer):
        campaign = await self._send(client, alice, newsletter, db, mailer)
        [mail] = mailer.to("b@example.com")
        link = mail["headers"]["List-Unsubscribe"].strip("<>")

        response = await client.post(link.replace("http://testserver", ""))
        assert response.json()["status"] == "unsubscribed"

        result = (await client.get(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])).json()["campaign"]
        assert result["unsubscribe_count"] == 1

    async def test_bounce_and_failure(self, client, alice, newsletter, audience, db, mailer):
        mailer.results["a@example.com"] = SEND_BOUNCED
        mailer.results["b@example.com"] = SEND_FAILED
        campaign = await self._send(client, alice, newsletter, db, mailer)

        result = (await client.get(f"/api/campaigns/{campaign['id']}/stats", headers=alice["headers"])).json()["stats"]
        assert result["deliveries"] == {"pending": 0, "sent": 0, "failed": 1, "bounced": 1}
        assert result["failed"] == 2
        assert result["bounce_rate"] == 50.0

        status = (await client.get(f"/api/subscribers/{audience['a']['id']}", headers=alice["headers"])).json()
        assert status["subscriber"]["status"] == "bounced"

    async def test_subscriber_unsubscribed_before_delivery(self, client, alice, newsletter, audience, db, mailer):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])
        await client.post(f"/api/subscribers/{audience['b']['id']}/unsubscribe", headers=alice["headers"])

        await CampaignDeliveryService(db).deliver(UUID(campaign["id"]))

        assert [m["to"] for m in mailer.sent] == ["a@example.com"]
        result = (await client.get(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])).json()["campaign"]
        assert result["sent_count"] == 1
        assert result["failed_count"] == 1

    async def test_deliver_skips_campaign_not_sending(self, client, alice, newsletter, db, mailer):
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])
        assert await CampaignDeliveryService(db).deliver(UUID(campaign["id"])) is False
        assert mailer.sent == []

    async def test_header_line_breaks_removed_from_subject(self, client, alice, newsletter, audience, db, mailer):
        campaign = await create_campaign(
            client, alice["headers"], newsletter["id"], subject="Big news\r\nBcc: leak@example.com"
        )
        assert campaign["subject"] == "Big news Bcc: leak@example.com"

        await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])
        await CampaignDeliveryService(db).deliver(UUID(campaign["id"]))

        assert {m["subject"] for m in mailer.sent} == {"Big news Bcc: leak@example.com"}

    async def test_unbuildable_message_fails_only_that_delivery(self, client, alice, newsletter, audience, db, mailer):
        mailer.results["a@example.com"] = ValueError("Line break in To header")
        campaign = await self._send(client, alice, newsletter, db, mailer)

        result = (await client.get(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])).json()["campaign"]
        assert result["status"] == "sent"
        assert result["sent_count"] == 1
        assert result["failed_count"] == 1


class TestRewriteLinks:
    def test_only_http_links_rewritten(self):
        html = '<a href="https://example.com/a?x=1&amp;y=2">A</a> <a href="mailto:me@example.com">M</a>'
        rewritten = rewrite_links(html, UUID("00000000-0000-0000-0000-000000000001"))

        assert "/api/track/click/" in rewritten
        assert 'href="mailto:me@example.com"' in rewritten
        assert "https://example.com/a" not in rewritten


class TestScheduledDispatch:
    async def test_due_campaigns_start_or_cancel(self, client, alice, newsletter, audience, db):
        ready = await create_campaign(client, alice["headers"], newsletter["id"], name="Ready", scheduled_at=future())
        empty = await create_campaign(
            client, alice["headers"], newsletter["id"], name="Empty",
            scheduled_at=future(), segment={"type": "tags", "tags": ["nobody"]},
        )
        later = await create_campaign(client, alice["headers"], newsletter["id"], name="Later", scheduled_at=future(48))

        due_ids = [UUID(ready["id"]), UUID(empty["id"])]
        await db.execute(
            update(Campaign).where(Campaign.id.in_(due_ids)).values(scheduled_at=utcnow() - timedelta(minutes=1))
        )
        await db.commit()

        started = await CampaignService(db).dispatch_due()
        assert started == [UUID(ready["id"])]

        statuses = {
            c["name"]: c["status"]
            for c in (await client.get("/api/campaigns", headers=alice["headers"])).json()["campaigns"]
        }
        assert statuses == {"Ready": "sending", "Empty": "cancelled", "Later": "scheduled"}

    def test_dispatch_task_queues_started_campaigns(self, monkeypatch):
        ids = [UUID("00000000-0000-0000-0000-00000000000a")]
        queued_ids = []
        monkeypatch.setattr(campaign_tasks, "run_with_session", lambda func: ids)
        monkeypatch.setattr(campaign_tasks, "queue_campaign_delivery", queued_ids.append)

        assert campaign_tasks.dispatch_scheduled_campaigns() == [str(ids[0])]
        assert queued_ids == ids

    def test_queue_uses_celery_delay(self, monkeypatch):
        calls = []
        monkeypatch.setattr(campaign_tasks.deliver_campaign, "delay", lambda cid: calls.append(cid))

        campaign_tasks.queue_campaign_delivery(UUID("00000000-0000-0000-0000-00000000000b"))
        assert calls == ["00000000-0000-0000-0000-00000000000b"]

    def test_dispatch_task_keeps_going_when_queue_fails(self, monkeypatch):
        broken, ok = UUID("00000000-0000-0000-0000-00000000000c"), UUID("00000000-0000-0000-0000-00000000000d")
        queued_ids = []

        def queue(campaign_id):
            if campaign_id == broken:
                raise OSError("broker unreachable")
            queued_ids.append(campaign_id)

        monkeypatch.setattr(campaign_tasks, "run_with_session", lambda func: [broken, ok])
        monkeypatch.setattr(campaign_tasks, "queue_campaign_delivery", queue)

        assert campaign_tasks.dispatch_scheduled_campaigns() == [str(ok)]
        assert queued_ids == [ok]

    async def test_stalled_sending_campaign_is_reclaimed(self, client, alice, newsletter, audience, db):
        stalled = await create_campaign(client, alice["headers"], newsletter["id"], name="Stalled")
        fresh = await create_campaign(client, alice["headers"], newsletter["id"], name="Fresh")
        for campaign in (stalled, fresh):
            await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])

        await db.execute(
            update(Campaign)
            .where(Campaign.id == UUID(stalled["id"]))
            .values(updated_at=utcnow() - timedelta(hours=2))
        )
        await db.commit()

        assert await CampaignService(db).claim_stalled() == [UUID(stalled["id"])]
        # 领取后刷新时间，下一轮不会重复入队
        assert await CampaignService(db).claim_stalled() == []


class TestSendQueueFailure:
    async def test_campaign_reverted_when_queue_unavailable(self, client, alice, newsletter, audience, monkeypatch):
        def unreachable(campaign_id):
            raise OSError("Connection refused")

        monkeypatch.setattr("piper.api.campaigns.queue_campaign_delivery", unreachable)
        campaign = await create_campaign(client, alice["headers"], newsletter["id"])

        response = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"

        current = (await client.get(f"/api/campaigns/{campaign['id']}", headers=alice["headers"])).json()["campaign"]
        assert current["status"] == "draft"
        assert current["total_recipients"] == 0
        stats = (await client.get(f"/api/campaigns/{campaign['id']}/stats", headers=alice["headers"])).json()["stats"]
        assert stats["deliveries"] == {"pending": 0, "sent": 0, "failed": 0, "bounced": 0}

        # 队列恢复后可以重新发送
        queued_ids = []
        monkeypatch.setattr("piper.api.campaigns.queue_campaign_delivery", queued_ids.append)
        retry = await client.post(f"/api/campaigns/{campaign['id']}/send", headers=alice["headers"])
        assert retry.status_code == 200
        assert retry.json()["campaign"]["status"] == "sending"
        assert queued_ids == [UUID(campaign["id"])]


class TestBounceMarksSubscriber:
    async def test_bounced_subscriber_excluded_from_next_campaign(self, client, alice, newsletter, audience, db, mailer):
        mailer.results["a@example.com"] = SEND_BOUNCED
        first = await create_campaign(client, alice["headers"], newsletter["id"])
        await client.post(f"/api/campaigns/{first['id']}/send", headers=alice["headers"])
        await CampaignDeliveryService(db).deliver(UUID(first["id"]))

        bounced = (await db.execute(
            select(Subscriber.status).where(Subscriber.email == "a@example.com")
        )).scalar_one()
        assert bounced == "bounced"

        second = await create_campaign(client, alice["headers"], newsletter["id"], name="Second")
        response = await client.post(f"/api/campaigns/{second['id']}/send", headers=alice["headers"])
        assert response.json()["campaign"]["total_recipients"] == 1
