"""内容服务"""

from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.errors import ConflictError, NotFoundError, ValidationError
from piper.core.sanitize import sanitize_html, sanitize_line, sanitize_tags
from piper.core.security import IDORProtection
from piper.core.timeutil import utcnow
from piper.models.content import Content
from piper.models.newsletter import Newsletter
from piper.services.analytics import record_event
from piper.services.pagination import Page, paginate


class ContentService:
    """内容服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _check_newsletter(self, user_id: UUID, newsletter_id: Optional[UUID]) -> None:
        if newsletter_id is None:
            return
        newsletter = await self.db.get(Newsletter, newsletter_id)
        if not newsletter:
            raise NotFoundError("Newsletter not found")
        IDORProtection.check_resource_ownership(user_id, newsletter.owner_id)

    def _clean(self, data: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(data)
        if "title" in cleaned:
            cleaned["title"] = sanitize_line(cleaned["title"])
            if not cleaned["title"]:
                raise ValidationError(
                    "Title is required",
                    validation_errors=[{"field": "title", "message": "Title cannot be empty after sanitization", "type": "value_error"}],
                )
        if "body" in cleaned:
            cleaned["body"] = sanitize_html(cleaned["body"] or "")
        if "tags" in cleaned:
            cleaned["tags"] = sanitize_tags(cleaned["tags"])
        if cleaned.get("url"):
            cleaned["url"] = str(cleaned["url"])
        return cleaned

    async def list_content(
        self,
        owner_id: UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        content_type: Optional[str] = None,
        newsletter_id: Optional[UUID] = None,
    ) -> Page[Content]:
        stmt = select(Content).where(Content.owner_id == owner_id)
        if status:
            stmt = stmt.where(Content.status == status)
        if content_type:
            stmt = stmt.where(Content.content_type == content_type)
        if newsletter_id:
            stmt = stmt.where(Content.newsletter_id == newsletter_id)
        stmt = stmt.order_by(Content.created_at.desc())
        return await paginate(self.db, stmt, page, limit)

    async def get(self, user_id: UUID, content_id: UUID) -> Content:
        content = await self.db.get(Content, content_id)
        if not content:
            raise NotFoundError("Content not found")
        IDORProtection.check_resource_ownership(user_id, content.owner_id)
        return content

    async def view(self, user_id: UUID, content_id: UUID) -> Content:
        """读取内容并累计浏览数（仅已发布内容计数）"""
        content = await self.get(user_id, content_id)
        if content.status == "published":
            content.views += 1
            record_event(self.db, content.owner_id, "content_viewed", content_id=content.id,
                         newsletter_id=content.newsletter_id)
            await self.db.commit()
            await self.db.refresh(content)
        return content

    async def create(self, owner_id: UUID, data: Dict[str, Any]) -> Content:
        cleaned = self._clean(data)
        await self._check_newsletter(owner_id, cleaned.get("newsletter_id"))

        content = Content(
            id=uuid4(),
            owner_id=owner_id,
            status="draft",
            body=cleaned.pop("body", "") or "",
            tags=cleaned.pop("tags", []),
            **cleaned,
        )
        self.db.add(content)
        await self.db.commit()
        await self.db.refresh(content)
        return content

    async def update(self, user_id: UUID, content_id: UUID, data: Dict[str, Any]) -> Content:
        content = await self.get(user_id, content_id)
        cleaned = {
            k: v for k, v in self._clean(data).items()
            if v is not None or k in ("newsletter_id", "url")
        }
        if "newsletter_id" in cleaned:
            await self._check_newsletter(user_id, cleaned["newsletter_id"])

        if cleaned.get("status") == "published" and content.status != "published":
            content.published_at = utcnow()

        for field, value in cleaned.items():
            setattr(content, field, value)

        await self.db.commit()
        await self.db.refresh(content)
        return content

    async def delete(self, user_id: UUID, content_id: UUID) -> None:
        content = await self.get(user_id, content_id)
        await self.db.delete(content)
        await self.db.commit()

    async def publish(self, user_id: UUID, content_id: UUID) -> Content:
        content = await self.get(user_id, content_id)
        if content.status == "published":
            raise ConflictError("Content is already published")
        content.status = "published"
        content.published_at = utcnow()
        await self.db.commit()
        await self.db.refresh(content)
        return content
