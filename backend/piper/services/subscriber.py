"""订阅者服务 - 管理、导入、公开订阅（双重确认）与退订"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import String, cast, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.errors import ConflictError, NotFoundError, ValidationError
from piper.core.i18n import DEFAULT_LOCALE
from piper.core.sanitize import sanitize_line, sanitize_tags
from piper.core.security import IDORProtection, PIIMasker
from piper.core.timeutil import utcnow
from piper.core.tokens import (
    PURPOSE_CONFIRM,
    PURPOSE_UNSUBSCRIBE,
    create_subscriber_token,
    decode_subscriber_token,
)
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.services.analytics import record_event
from piper.services.email_service import email_service
from piper.services.pagination import Page, paginate

logger = logging.getLogger(__name__)
settings = get_settings()


def normalize_email(email: str) -> str:
    """
    校验并规范化邮箱

    Raises:
        ValidationError: 邮箱格式无效
    """
    try:
        return validate_email(email.strip(), check_deliverability=False).normalized.lower()
    except EmailNotValidError as e:
        raise ValidationError(
            "Invalid email address",
            validation_errors=[{"field": "email", "message": str(e), "type": "value_error"}],
        )


def clean_preferences(preferences: Optional[Dict[str, Any]]) -> Dict[str, bool]:
    """偏好只保留布尔开关"""
    return {
        sanitize_line(str(key))[:50]: bool(value)
        for key, value in (preferences or {}).items()
        if sanitize_line(str(key))
    }


def unsubscribe_url(subscriber_id: UUID, campaign_id: Optional[UUID] = None) -> str:
    token = create_subscriber_token(subscriber_id, PURPOSE_UNSUBSCRIBE, campaign_id=campaign_id)
    return f"{settings.public_base_url}/api/unsubscribe?token={token}"


def confirm_url(subscriber_id: UUID) -> str:
    token = create_subscriber_token(subscriber_id, PURPOSE_CONFIRM)
    return f"{settings.public_base_url}/api/subscribe/confirm?token={token}"


class SubscriberService:
    """订阅者服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find_by_email(self, owner_id: UUID, email: str) -> Optional[Subscriber]:
        result = await self.db.execute(
            select(Subscriber).where(Subscriber.owner_id == owner_id, Subscriber.email == email)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # 管理
    # ------------------------------------------------------------------

    async def list_subscribers(
        self,
        owner_id: UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Page[Subscriber]:
        stmt = select(Subscriber).where(Subscriber.owner_id == owner_id)
        if status:
            stmt = stmt.where(Subscriber.status == status)
        if tag:
            # JSON 列按文本匹配，兼容 PostgreSQL 与 SQLite
            stmt = stmt.where(cast(Subscriber.tags, String).like(f'%"{tag.strip().lower()}"%'))
        if search:
            term = f"%{search.strip().lower()}%"
            stmt = stmt.where(or_(Subscriber.email.like(term), Subscriber.name.ilike(term)))
        stmt = stmt.order_by(Subscriber.created_at.desc())
        return await paginate(self.db, stmt, page, limit)

    async def get(self, user_id: UUID, subscriber_id: UUID) -> Subscriber:
        subscriber = await self.db.get(Subscriber, subscriber_id)
        if not subscriber:
            raise NotFoundError("Subscriber not found")
        IDORProtection.check_resource_ownership(user_id, subscriber.owner_id)
        return subscriber

    async def create(self, owner_id: UUID, data: Dict[str, Any]) -> Subscriber:
        """
        手动添加订阅者

        Raises:
            ConflictError: 同一用户下邮箱已存在
        """
        email = normalize_email(data["email"])
        if await self._find_by_email(owner_id, email):
            raise ConflictError("Subscriber with this email already exists")

        now = utcnow()
        consent_marketing = bool(data.get("consent_marketing", False))
        subscriber = Subscriber(
            id=uuid4(),
            owner_id=owner_id,
            email=email,
            name=sanitize_line(data.get("name")),
            status=data.get("status") or "active",
            preferences=clean_preferences(data.get("preferences")),
            tags=sanitize_tags(data.get("tags")),
            consent_marketing=consent_marketing,
            consent_tracking=bool(data.get("consent_tracking", False)),
            consented_at=now if consent_marketing else None,
            confirmed_at=now if (data.get("status") or "active") == "active" else None,
            source=data.get("source") or "manual",
        )
        self.db.add(subscriber)
        record_event(self.db, owner_id, "subscriber_added", subscriber_id=subscriber.id,
                     event_data={"source": subscriber.source})
        await self.db.commit()
        await self.db.refresh(subscriber)
        return subscriber

    async def update(self, user_id: UUID, subscriber_id: UUID, data: Dict[str, Any]) -> Subscriber:
        subscriber = await self.get(user_id, subscriber_id)

        if data.get("email") is not None:
            email = normalize_email(data["email"])
            if email != subscriber.email:
                if await self._find_by_email(subscriber.owner_id, email):
                    raise ConflictError("Subscriber with this email already exists")
                subscriber.email = email
        if "name" in data:
            subscriber.name = sanitize_line(data["name"])
        if data.get("tags") is not None:
            subscriber.tags = sanitize_tags(data["tags"])
        if data.get("preferences") is not None:
            subscriber.preferences = clean_preferences(data["preferences"])
        if data.get("consent_marketing") is not None:
            if data["consent_marketing"] and not subscriber.consent_marketing:
                subscriber.consented_at = utcnow()
            subscriber.consent_marketing = data["consent_marketing"]
        if data.get("consent_tracking") is not None:
            subscriber.consent_tracking = data["consent_tracking"]

        await self.db.commit()
        await self.db.refresh(subscriber)
        return subscriber

    async def delete(self, user_id: UUID, subscriber_id: UUID) -> None:
        subscriber = await self.get(user_id, subscriber_id)
        await self.db.execute(delete(CampaignDelivery).where(CampaignDelivery.subscriber_id == subscriber.id))
        await self.db.delete(subscriber)
        await self.db.commit()

    def _mark_unsubscribed(self, subscriber: Subscriber, reason: str) -> None:
        subscriber.status = "unsubscribed"
        subscriber.unsubscribed_at = utcnow()
        record_event(self.db, subscriber.owner_id, "subscriber_unsubscribed",
                     subscriber_id=subscriber.id, event_data={"reason": reason})

    async def unsubscribe(self, user_id: UUID, subscriber_id: UUID) -> Subscriber:
        subscriber = await self.get(user_id, subscriber_id)
        if subscriber.status == "unsubscribed":
            raise ConflictError("Subscriber is already unsubscribed")
        self._mark_unsubscribed(subscriber, "owner")
        await self.db.commit()
        await self.db.refresh(subscriber)
        return subscriber

    async def resubscribe(self, user_id: UUID, subscriber_id: UUID, consent_marketing: Optional[bool] = None) -> Subscriber:
        """
        重新订阅

        Raises:
            ConflictError: 已是活跃状态
            ValidationError: 缺少营销同意
        """
        subscriber = await self.get(user_id, subscriber_id)
        if subscriber.status == "active":
            raise ConflictError("Subscriber is already active")

        if consent_marketing:
            subscriber.consent_marketing = True
            subscriber.consented_at = utcnow()
        if not subscriber.consent_marketing:
            raise ValidationError(
                "Marketing consent is required to resubscribe",
                validation_errors=[{"field": "consent_marketing", "message": "Consent is required", "type": "value_error"}],
            )

        subscriber.status = "active"
        subscriber.unsubscribed_at = None
        subscriber.confirmed_at = subscriber.confirmed_at or utcnow()
        await self.db.commit()
        await self.db.refresh(subscriber)
        return subscriber

    async def import_subscribers(
        self,
        owner_id: UUID,
        rows: List[Dict[str, Any]],
        tags: Optional[List[str]] = None,
        consent_marketing: bool = False,
    ) -> Dict[str, Any]:
        """
        批量导入

        Returns:
            {"created": n, "skipped": n, "invalid": [{"email", "reason"}]}
        """
        existing = set((await self.db.execute(
            select(Subscriber.email).where(Subscriber.owner_id == owner_id)
        )).scalars().all())
        extra_tags = sanitize_tags(tags)

        created = 0
        skipped = 0
        invalid: List[Dict[str, str]] = []
        now = utcnow()

        for row in rows:
            raw_email = str(row.get("email") or "")
            try:
                email = validate_email(raw_email.strip(), check_deliverability=False).normalized.lower()
            except EmailNotValidError as e:
                invalid.append({"email": raw_email, "reason": str(e)})
                continue

            if email in existing:
                skipped += 1
                continue
            existing.add(email)

            row_tags = sanitize_tags(list(row.get("tags") or []) + extra_tags)
            self.db.add(Subscriber(
                id=uuid4(),
                owner_id=owner_id,
                email=email,
                name=sanitize_line(row.get("name")),
                status="active",
                tags=row_tags,
                preferences={},
                consent_marketing=consent_marketing,
                consent_tracking=False,
                consented_at=now if consent_marketing else None,
                confirmed_at=now,
                source="import",
            ))
            created += 1

        if created:
            record_event(self.db, owner_id, "subscriber_added", event_data={"source": "import", "count": created})
        await self.db.commit()
        logger.info(f"Imported subscribers for {owner_id}: created={created} skipped={skipped} invalid={len(invalid)}")
        return {"created": created, "skipped": skipped, "invalid": invalid}

    # ------------------------------------------------------------------
    # 公开订阅流程
    # ------------------------------------------------------------------

    async def public_subscribe(
        self,
        newsletter_id: UUID,
        email: str,
        name: Optional[str] = None,
        consent_marketing: bool = False,
        consent_tracking: bool = False,
        locale: str = DEFAULT_LOCALE,
    ) -> Subscriber:
        """
        公开订阅表单：创建待确认订阅者并发送确认邮件

        Raises:
            NotFoundError: 通讯不存在或已归档
            ValidationError: 未勾选营销同意
        """
        newsletter = await self.db.get(Newsletter, newsletter_id)
        if not newsletter or newsletter.status == "archived":
            raise NotFoundError("Newsletter not found")
        if not consent_marketing:
            raise ValidationError(
                "Consent is required to subscribe",
                validation_errors=[{"field": "consent", "message": "Consent is required", "type": "value_error"}],
            )

        email = normalize_email(email)
        now = utcnow()
        subscriber = await self._find_by_email(newsletter.owner_id, email)

        if subscriber is None:
            subscriber = Subscriber(
                id=uuid4(),
                owner_id=newsletter.owner_id,
                newsletter_id=newsletter.id,
                email=email,
                name=sanitize_line(name),
                status="pending",
                tags=[],
                preferences={},
                source="form",
            )
            self.db.add(subscriber)
            record_event(self.db, newsletter.owner_id, "subscriber_added", newsletter_id=newsletter.id,
                         subscriber_id=subscriber.id, event_data={"source": "form"})
        elif subscriber.status in ("unsubscribed", "bounced"):
            subscriber.status = "pending"
            subscriber.unsubscribed_at = None

        subscriber.consent_marketing = True
        subscriber.consent_tracking = consent_tracking
        subscriber.consented_at = now
        await self.db.commit()
        await self.db.refresh(subscriber)

        if subscriber.status == "pending":
            sent = await email_service.send_confirmation_email(
                subscriber.email, newsletter.title, confirm_url(subscriber.id), locale
            )
            if not sent:
                logger.warning(f"Confirmation email not sent to {PIIMasker.mask_email(subscriber.email)}")

        return subscriber

    async def confirm(self, token: str) -> Subscriber:
        """确认订阅（幂等）"""
        data = decode_subscriber_token(token, PURPOSE_CONFIRM)
        subscriber = await self.db.get(Subscriber, data["subscriber_id"])
        if not subscriber:
            raise NotFoundError("Subscriber not found")

        if subscriber.status == "pending":
            subscriber.status = "active"
            subscriber.confirmed_at = utcnow()
            record_event(self.db, subscriber.owner_id, "subscriber_confirmed",
                         newsletter_id=subscriber.newsletter_id, subscriber_id=subscriber.id)
            await self.db.commit()
            await self.db.refresh(subscriber)
        elif subscriber.status != "active":
            raise ConflictError("Subscription can no longer be confirmed")

        return subscriber

    async def unsubscribe_by_token(self, token: str) -> Subscriber:
        """邮件退订链接（幂等），携带活动时累计活动退订数"""
        data = decode_subscriber_token(token, PURPOSE_UNSUBSCRIBE)
        subscriber = await self.db.get(Subscriber, data["subscriber_id"])
        if not subscriber:
            raise NotFoundError("Subscriber not found")

        if subscriber.status != "unsubscribed":
            self._mark_unsubscribed(subscriber, "link")
            if data["campaign_id"]:
                campaign = await self.db.get(Campaign, data["campaign_id"])
                if campaign and campaign.owner_id == subscriber.owner_id:
                    campaign.unsubscribe_count += 1
            await self.db.commit()
            await self.db.refresh(subscriber)

        return subscriber
