"""通讯服务"""

import logging
import re
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.errors import ConflictError, NotFoundError, ValidationError
from piper.core.sanitize import sanitize_html, sanitize_line, sanitize_tags, sanitize_text
from piper.core.security import IDORProtection
from piper.core.timeutil import to_naive_utc, utcnow
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.newsletter import Newsletter
from piper.services.analytics import record_event
from piper.services.pagination import Page, paginate

logger = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")

LINE_FIELDS = ("title", "subject", "category")
NULLABLE_FIELDS = ("subject", "description", "category", "scheduled_for")


def slugify(title: str) -> str:
    slug = _SLUG_STRIP.sub("-", title.lower()).strip("-")
    return slug[:200] or "newsletter"


def clean_sections(sections: Optional[List[Dict[str, Any]]]) -> List[Dict[str, str]]:
    """清洗分段内容 [{heading, body}]"""
    result = []
    for section in sections or []:
        heading = sanitize_line(section.get("heading") or "") or ""
        body = sanitize_html(section.get("body") or "") or ""
        if heading or body:
            result.append({"heading": heading, "body": body})
    return result


class NewsletterService:
    """通讯服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _unique_slug(self, owner_id: UUID, title: str, exclude_id: Optional[UUID] = None) -> str:
        base = slugify(title)
        stmt = select(Newsletter.slug).where(
            Newsletter.owner_id == owner_id,
            or_(Newsletter.slug == base, Newsletter.slug.like(f"{base}-%")),
        )
        if exclude_id:
            stmt = stmt.where(Newsletter.id != exclude_id)
        taken = set((await self.db.execute(stmt)).scalars().all())

        if base not in taken:
            return base
        n = 2
        while f"{base}-{n}" in taken:
            n += 1
        return f"{base}-{n}"

    def _clean(self, data: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(data)
        for field in LINE_FIELDS:
            if field in cleaned and cleaned[field] is not None:
                cleaned[field] = sanitize_line(cleaned[field])
        if cleaned.get("description") is not None:
            cleaned["description"] = sanitize_text(cleaned["description"])
        if "content" in cleaned:
            cleaned["content"] = sanitize_html(cleaned["content"] or "")
        if "sections" in cleaned:
            cleaned["sections"] = clean_sections(cleaned["sections"])
        if "tags" in cleaned:
            cleaned["tags"] = sanitize_tags(cleaned["tags"])
        if "scheduled_for" in cleaned:
            cleaned["scheduled_for"] = to_naive_utc(cleaned["scheduled_for"])

        if "title" in cleaned and not cleaned["title"]:
            raise ValidationError(
                "Title is required",
                validation_errors=[{"field": "title", "message": "Title cannot be empty after sanitization", "type": "value_error"}],
            )
        return cleaned

    def _check_schedule(self, status: str, scheduled_for) -> None:
        if status == "scheduled":
            if not scheduled_for:
                raise ValidationError(
                    "scheduled_for is required for scheduled newsletters",
                    validation_errors=[{"field": "scheduled_for", "message": "Field required", "type": "missing"}],
                )
            if scheduled_for <= utcnow():
                raise ValidationError(
                    "scheduled_for must be in the future",
                    validation_errors=[{"field": "scheduled_for", "message": "Must be in the future", "type": "value_error"}],
                )

    async def list_newsletters(
        self,
        owner_id: UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Page[Newsletter]:
        stmt = select(Newsletter).where(Newsletter.owner_id == owner_id)
        if status:
            stmt = stmt.where(Newsletter.status == status)
        if search:
            stmt = stmt.where(Newsletter.title.ilike(f"%{search.strip()}%"))
        stmt = stmt.order_by(Newsletter.created_at.desc())
        return await paginate(self.db, stmt, page, limit)

    async def get(self, user_id: UUID, newsletter_id: UUID) -> Newsletter:
        """
        获取通讯

        Raises:
            NotFoundError: 不存在
            AuthorizationError: 不属于当前用户
        """
        newsletter = await self.db.get(Newsletter, newsletter_id)
        if not newsletter:
            raise NotFoundError("Newsletter not found")
        IDORProtection.check_resource_ownership(user_id, newsletter.owner_id)
        return newsletter

    async def create(self, owner_id: UUID, data: Dict[str, Any]) -> Newsletter:
        cleaned = self._clean(data)
        status = cleaned.pop("status", None) or "draft"
        self._check_schedule(status, cleaned.get("scheduled_for"))

        newsletter = Newsletter(
            id=uuid4(),
            owner_id=owner_id,
            slug=await self._unique_slug(owner_id, cleaned["title"]),
            status=status,
            sections=cleaned.pop("sections", []),
            tags=cleaned.pop("tags", []),
            content=cleaned.pop("content", "") or "",
            **cleaned,
        )
        self.db.add(newsletter)
        record_event(self.db, owner_id, "newsletter_created", newsletter_id=newsletter.id)
        await self.db.commit()
        await self.db.refresh(newsletter)
        return newsletter

    async def update(self, user_id: UUID, newsletter_id: UUID, data: Dict[str, Any]) -> Newsletter:
        newsletter = await self.get(user_id, newsletter_id)
        if newsletter.status == "archived":
            raise ConflictError("Archived newsletters cannot be edited")

        cleaned = {
            k: v for k, v in self._clean(data).items()
            if v is not None or k in NULLABLE_FIELDS
        }
        if "status" in cleaned or "scheduled_for" in cleaned:
            self._check_schedule(
                cleaned.get("status", newsletter.status),
                cleaned.get("scheduled_for", newsletter.scheduled_for),
            )

        if "title" in cleaned and cleaned["title"] != newsletter.title:
            newsletter.slug = await self._unique_slug(newsletter.owner_id, cleaned["title"], exclude_id=newsletter.id)

        for field, value in cleaned.items():
            setattr(newsletter, field, value)

        await self.db.commit()
        await self.db.refresh(newsletter)
        return newsletter

    async def delete(self, user_id: UUID, newsletter_id: UUID) -> None:
        newsletter = await self.get(user_id, newsletter_id)

        campaign_ids = (await self.db.execute(
            select(Campaign.id, Campaign.status).where(Campaign.newsletter_id == newsletter.id)
        )).all()
        if any(status == "sending" for _, status in campaign_ids):
            raise ConflictError("Newsletter has a campaign that is currently sending")

        ids = [cid for cid, _ in campaign_ids]
        if ids:
            await self.db.execute(delete(CampaignDelivery).where(CampaignDelivery.campaign_id.in_(ids)))
            await self.db.execute(delete(Campaign).where(Campaign.id.in_(ids)))
        await self.db.delete(newsletter)
        await self.db.commit()

    async def archive(self, user_id: UUID, newsletter_id: UUID) -> Newsletter:
        newsletter = await self.get(user_id, newsletter_id)
        if newsletter.status == "archived":
            raise ConflictError("Newsletter is already archived")
        newsletter.status = "archived"
        await self.db.commit()
        await self.db.refresh(newsletter)
        return newsletter

    async def duplicate(self, user_id: UUID, newsletter_id: UUID) -> Newsletter:
        source = await self.get(user_id, newsletter_id)
        title = f"{source.title} (Copy)"[:200]
        copy = Newsletter(
            id=uuid4(),
            owner_id=source.owner_id,
            title=title,
            slug=await self._unique_slug(source.owner_id, title),
            subject=source.subject,
            description=source.description,
            content=source.content,
            sections=[dict(s) for s in source.sections or []],
            status="draft",
            frequency=source.frequency,
            tags=list(source.tags or []),
            category=source.category,
        )
        self.db.add(copy)
        record_event(self.db, source.owner_id, "newsletter_created", newsletter_id=copy.id,
                     event_data={"duplicated_from": str(source.id)})
        await self.db.commit()
        await self.db.refresh(copy)
        return copy
