"""通讯与内容接口测试"""

from datetime import datetime, timedelta, timezone


def future(hours: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).isoformat()


class TestNewsletterCrud:
    async def test_create_sanitizes_and_slugs(self, client, alice):
        response = await client.post(
            "/api/newsletters",
            json={
                "title": "Hello <script>x</script>World",
                "content": '<p onclick="evil()">Body</p><script>alert(1)</script>',
                "tags": ["News", "news", " "],
            },
            headers=alice["headers"],
        )

        assert response.status_code == 201
        newsletter = response.json()["newsletter"]
        assert newsletter["title"] == "Hello World"
        assert newsletter["slug"] == "hello-world"
        assert newsletter["status"] == "draft"
        assert "script" not in newsletter["content"]
        assert "onclick" not in newsletter["content"]
        assert newsletter["tags"] == ["news"]

    async def test_duplicate_titles_get_unique_slugs(self, client, alice, newsletter):
        response = await client.post("/api/newsletters", json={"title": "Weekly Digest"}, headers=alice["headers"])
        assert response.json()["newsletter"]["slug"] == "weekly-digest-2"

    async def test_title_empty_after_sanitizing(self, client, alice):
        response = await client.post("/api/newsletters", json={"title": "<b></b>"}, headers=alice["headers"])
        assert response.status_code == 400

    async def test_scheduled_requires_future_time(self, client, alice):
        missing = await client.post(
            "/api/newsletters", json={"title": "S", "status": "scheduled"}, headers=alice["headers"]
        )
        past = await client.post(
            "/api/newsletters",
            json={"title": "S", "status": "scheduled", "scheduled_for": "2000-01-01T00:00:00Z"},
            headers=alice["headers"],
        )
        ok = await client.post(
            "/api/newsletters",
            json={"title": "S", "status": "scheduled", "scheduled_for": future()},
            headers=alice["headers"],
        )

        assert missing.status_code == 400
        assert past.status_code == 400
        assert ok.status_code == 201

    async def test_sent_status_cannot_be_set_directly(self, client, alice):
        response = await client.post(
            "/api/newsletters", json={"title": "S", "status": "sent"}, headers=alice["headers"]
        )
        assert response.status_code == 400

    async def test_list_filters_and_paginates(self, client, alice):
        for i in range(3):
            await client.post("/api/newsletters", json={"title": f"Issue {i}"}, headers=alice["headers"])
        await client.post(
            "/api/newsletters",
            json={"title": "Later", "status": "scheduled", "scheduled_for": future()},
            headers=alice["headers"],
        )

        page = await client.get("/api/newsletters?limit=2&page=1", headers=alice["headers"])
        scheduled = await client.get("/api/newsletters?status=scheduled", headers=alice["headers"])

        assert page.json()["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
        assert len(page.json()["newsletters"]) == 2
        assert [n["title"] for n in scheduled.json()["newsletters"]] == ["Later"]

        search = await client.get("/api/newsletters?search=issue 1", headers=alice["headers"])
        assert [n["title"] for n in search.json()["newsletters"]] == ["Issue 1"]

    async def test_update_keeps_unset_fields(self, client, alice, newsletter):
        response = await client.put(
            f"/api/newsletters/{newsletter['id']}",
            json={"title": "Renamed"},
            headers=alice["headers"],
        )

        updated = response.json()["newsletter"]
        assert updated["title"] == "Renamed"
        assert updated["slug"] == "renamed"
        assert updated["subject"] == newsletter["subject"]
        assert updated["sections"] == newsletter["sections"]

    async def test_archive_blocks_edits(self, client, alice, newsletter):
        archived = await client.post(f"/api/newsletters/{newsletter['id']}/archive", headers=alice["headers"])
        assert archived.json()["newsletter"]["status"] == "archived"

        again = await client.post(f"/api/newsletters/{newsletter['id']}/archive", headers=alice["headers"])
        edit = await client.put(
            f"/api/newsletters/{newsletter['id']}", json={"title": "x"}, headers=alice["headers"]
        )
        assert again.status_code == 409
        assert edit.status_code == 409

    async def test_duplicate_creates_draft_copy(self, client, alice, newsletter):
        response = await client.post(f"/api/newsletters/{newsletter['id']}/duplicate", headers=alice["headers"])

        assert response.status_code == 201
        copy = response.json()["newsletter"]
        assert copy["id"] != newsletter["id"]
        assert copy["title"] == "Weekly Digest (Copy)"
        assert copy["status"] == "draft"
        assert copy["sections"] == newsletter["sections"]

    async def test_delete(self, client, alice, newsletter):
        response = await client.delete(f"/api/newsletters/{newsletter['id']}", headers=alice["headers"])
        assert response.status_code == 204

        missing = await client.get(f"/api/newsletters/{newsletter['id']}", headers=alice["headers"])
        assert missing.status_code == 404


class TestNewsletterOwnership:
    async def test_other_user_is_forbidden(self, client, bob, newsletter):
        get = await client.get(f"/api/newsletters/{newsletter['id']}", headers=bob["headers"])
        delete = await client.delete(f"/api/newsletters/{newsletter['id']}", headers=bob["headers"])

        assert get.status_code == 403
        assert delete.status_code == 403

    async def test_lists_are_scoped_to_owner(self, client, bob, newsletter):
        response = await client.get("/api/newsletters", headers=bob["headers"])
        assert response.json()["newsletters"] == []

    async def test_unknown_id_is_not_found(self, client, alice):
        response = await client.get(
            "/api/newsletters/00000000-0000-0000-0000-000000000000", headers=alice["headers"]
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


class TestContent:
    async def test_create_publish_and_view(self, client, alice, newsletter):
        created = await client.post(
            "/api/content",
            json={
                "title": "Launch post",
                "body": "<p>Hi</p><img src=x onerror=alert(1)>",
                "content_type": "link",
                "url": "https://example.com/launch",
                "newsletter_id": newsletter["id"],
            },
            headers=alice["headers"],
        )
        assert created.status_code == 201
        content = created.json()["content"]
        assert content["status"] == "draft"
        assert "onerror" not in content["body"]

        # 草稿浏览不计数
        draft_view = await client.get(f"/api/content/{content['id']}", headers=alice["headers"])
        assert draft_view.json()["content"]["views"] == 0

        published = await client.post(f"/api/content/{content['id']}/publish", headers=alice["headers"])
        assert published.json()["content"]["status"] == "published"
        assert published.json()["content"]["published_at"] is not None

        viewed = await client.get(f"/api/content/{content['id']}", headers=alice["headers"])
        assert viewed.json()["content"]["views"] == 1

        again = await client.post(f"/api/content/{content['id']}/publish", headers=alice["headers"])
        assert again.status_code == 409

    async def test_invalid_url_rejected(self, client, alice):
        response = await client.post(
            "/api/content", json={"title": "Bad", "url": "javascript:alert(1)"}, headers=alice["headers"]
        )
        assert response.status_code == 400

    async def test_cannot_attach_to_foreign_newsletter(self, client, bob, newsletter):
        response = await client.post(
            "/api/content", json={"title": "Mine", "newsletter_id": newsletter["id"]}, headers=bob["headers"]
        )
        assert response.status_code == 403

    async def test_list_and_delete(self, client, alice):
        for title in ("One", "Two"):
            await client.post("/api/content", json={"title": title}, headers=alice["headers"])

        listing = await client.get("/api/content", headers=alice["headers"])
        assert listing.json()["pagination"]["total"] == 2

        content_id = listing.json()["content"][0]["id"]
        assert (await client.delete(f"/api/content/{content_id}", headers=alice["headers"])).status_code == 204
        assert (await client.get(f"/api/content/{content_id}", headers=alice["headers"])).status_code == 404
