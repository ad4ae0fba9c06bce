"""活动服务

- 活动 CRUD 与分群校验
- 状态流程：draft → scheduled → sending → sent，draft / scheduled 可取消
- 发送时按分群生成投递记录，实际投递由 Celery 任务完成（见 services.delivery）
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.errors import ConflictError, NotFoundError, ValidationError
from piper.core.sanitize import sanitize_line, sanitize_tags
from piper.core.security import IDORProtection
from piper.core.timeutil import to_naive_utc, utcnow
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.services.audit import AuditAction, create_audit_log
from piper.services.pagination import Page, paginate

logger = logging.getLogger(__name__)
settings = get_settings()


class CampaignStatus(str, Enum):
    """活动状态枚举"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    CANCELLED = "cancelled"


# 状态转换规则：定义允许的状态转换
VALID_TRANSITIONS = {
    CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED, CampaignStatus.SENDING, CampaignStatus.CANCELLED],
    CampaignStatus.SCHEDULED: [CampaignStatus.SENDING, CampaignStatus.CANCELLED],
    CampaignStatus.SENDING: [CampaignStatus.SENT],
    CampaignStatus.SENT: [],
    CampaignStatus.CANCELLED: [],
}

EDITABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
SEGMENT_TYPES = ("all", "tags")


def check_transition(current: str, target: CampaignStatus) -> None:
    """
    校验状态转换

    Raises:
        ConflictError: 不允许的状态转换
    """
    if target not in VALID_TRANSITIONS.get(CampaignStatus(current), []):
        raise ConflictError(f"Cannot change campaign from {current} to {target.value}")


def clean_segment(segment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    校验分群定义

    支持 {"type": "all"} 与 {"type": "tags", "tags": [...]}（命中任一标签）

    Raises:
        ValidationError: 分群定义无效
    """
    if not segment:
        return {"type": "all"}

    segment_type = segment.get("type", "all")
    if segment_type not in SEGMENT_TYPES:
        raise ValidationError(
            "Invalid segment",
            validation_errors=[{"field": "segment.type", "message": f"Must be one of: {', '.join(SEGMENT_TYPES)}", "type": "value_error"}],
        )
    if segment_type == "all":
        return {"type": "all"}

    tags = sanitize_tags(segment.get("tags") or [])
    if not tags:
        raise ValidationError(
            "Invalid segment",
            validation_errors=[{"field": "segment.tags", "message": "At least one tag is required", "type": "value_error"}],
        )
    return {"type": "tags", "tags": tags}


def matches_segment(subscriber: Subscriber, segment: Dict[str, Any]) -> bool:
    if segment.get("type") != "tags":
        return True
    wanted = set(segment.get("tags") or [])
    return bool(wanted.intersection(subscriber.tags or []))


class CampaignService:
    """活动服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _owned_newsletter(self, user_id: UUID, newsletter_id: UUID) -> Newsletter:
        newsletter = await self.db.get(Newsletter, newsletter_id)
        if not newsletter:
            raise NotFoundError("Newsletter not found")
        IDORProtection.check_resource_ownership(user_id, newsletter.owner_id)
        return newsletter

    def _check_future(self, scheduled_at: Optional[datetime]) -> datetime:
        scheduled_at = to_naive_utc(scheduled_at)
        if scheduled_at is None or scheduled_at <= utcnow():
            raise ValidationError(
                "Scheduled time must be in the future",
                validation_errors=[{"field": "scheduled_at", "message": "Must be a future datetime", "type": "value_error"}],
            )
        return scheduled_at

    async def list_campaigns(
        self,
        owner_id: UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[str] = None,
        newsletter_id: Optional[UUID] = None,
    ) -> Page[Campaign]:
        stmt = select(Campaign).where(Campaign.owner_id == owner_id)
        if status:
            stmt = stmt.where(Campaign.status == status)
        if newsletter_id:
            stmt = stmt.where(Campaign.newsletter_id == newsletter_id)
        stmt = stmt.order_by(Campaign.created_at.desc())
        return await paginate(self.db, stmt, page, limit)

    async def get(self, user_id: UUID, campaign_id: UUID) -> Campaign:
        """
        获取活动

        Raises:
            NotFoundError: 不存在
            AuthorizationError: 不属于当前用户
        """
        campaign = await self.db.get(Campaign, campaign_id)
        if not campaign:
            raise NotFoundError("Campaign not found")
        IDORProtection.check_resource_ownership(user_id, campaign.owner_id)
        return campaign

    async def create(self, owner_id: UUID, data: Dict[str, Any]) -> Campaign:
        newsletter = await self._owned_newsletter(owner_id, data["newsletter_id"])
        if newsletter.status == "archived":
            raise ConflictError("Cannot create a campaign for an archived newsletter")

        name = sanitize_line(data.get("name") or "")
        if not name:
            raise ValidationError(
                "Name is required",
                validation_errors=[{"field": "name", "message": "Name cannot be empty after sanitization", "type": "value_error"}],
            )

        status = CampaignStatus.DRAFT
        scheduled_at = None
        if data.get("scheduled_at"):
            scheduled_at = self._check_future(data["scheduled_at"])
            status = CampaignStatus.SCHEDULED

        campaign = Campaign(
            id=uuid4(),
            owner_id=owner_id,
            newsletter_id=newsletter.id,
            name=name,
            subject=sanitize_line(data.get("subject") or "") or None,
            segment=clean_segment(data.get("segment")),
            status=status.value,
            scheduled_at=scheduled_at,
        )
        self.db.add(campaign)
        await self.db.commit()
        await self.db.refresh(campaign)
        return campaign

    async def update(self, user_id: UUID, campaign_id: UUID, data: Dict[str, Any]) -> Campaign:
        campaign = await self.get(user_id, campaign_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise ConflictError(f"Campaign in status {campaign.status} cannot be edited")

        if data.get("name") is not None:
            name = sanitize_line(data["name"])
            if not name:
                raise ValidationError(
                    "Name is required",
                    validation_errors=[{"field": "name", "message": "Name cannot be empty after sanitization", "type": "value_error"}],
                )
            campaign.name = name
        if "subject" in data:
            campaign.subject = sanitize_line(data["subject"] or "") or None
        if data.get("segment") is not None:
            campaign.segment = clean_segment(data["segment"])
        if data.get("newsletter_id") is not None and data["newsletter_id"] != campaign.newsletter_id:
            newsletter = await self._owned_newsletter(user_id, data["newsletter_id"])
            if newsletter.status == "archived":
                raise ConflictError("Cannot use an archived newsletter")
            campaign.newsletter_id = newsletter.id
        if data.get("scheduled_at") is not None:
            campaign.scheduled_at = self._check_future(data["scheduled_at"])
            campaign.status = CampaignStatus.SCHEDULED.value

        await self.db.commit()
        await self.db.refresh(campaign)
        return campaign

    async def delete(self, user_id: UUID, campaign_id: UUID) -> None:
        campaign = await self.get(user_id, campaign_id)
        if campaign.status == CampaignStatus.SENDING:
            raise ConflictError("Campaign is currently sending")
        await self.db.execute(delete(CampaignDelivery).where(CampaignDelivery.campaign_id == campaign.id))
        await self.db.delete(campaign)
        await self.db.commit()

    async def schedule(self, user_id: UUID, campaign_id: UUID, scheduled_at: datetime) -> Campaign:
        campaign = await self.get(user_id, campaign_id)
        # 已排程活动允许改期
        if campaign.status != CampaignStatus.SCHEDULED:
            check_transition(campaign.status, CampaignStatus.SCHEDULED)
        campaign.scheduled_at = self._check_future(scheduled_at)
        campaign.status = CampaignStatus.SCHEDULED.value
        await self.db.commit()
        await self.db.refresh(campaign)
        return campaign

    async def cancel(self, user_id: UUID, campaign_id: UUID) -> Campaign:
        campaign = await self.get(user_id, campaign_id)
        check_transition(campaign.status, CampaignStatus.CANCELLED)
        campaign.status = CampaignStatus.CANCELLED.value
        await self.db.commit()
        await self.db.refresh(campaign)
        return campaign

    async def _recipients(self, campaign: Campaign) -> List[Subscriber]:
        """分群内的有效订阅者：active 且同意营销邮件"""
        result = await self.db.execute(
            select(Subscriber).where(
                Subscriber.owner_id == campaign.owner_id,
                Subscriber.status == "active",
                Subscriber.consent_marketing.is_(True),
            ).order_by(Subscriber.created_at)
        )
        segment = campaign.segment or {"type": "all"}
        return [s for s in result.scalars().all() if matches_segment(s, segment)]

    async def start_sending(self, campaign: Campaign, actor_id: Optional[UUID] = None) -> Campaign:
        """
        进入发送状态并生成投递记录

        Raises:
            ConflictError: 当前状态不可发送
            ValidationError: 分群内没有可发送的订阅者
        """
        check_transition(campaign.status, CampaignStatus.SENDING)

        newsletter = await self.db.get(Newsletter, campaign.newsletter_id)
        if newsletter is None or newsletter.status == "archived":
            raise ConflictError("Newsletter is not available for sending")

        recipients = await self._recipients(campaign)
        if not recipients:
            raise ValidationError("No eligible subscribers in the campaign segment")

        for subscriber in recipients:
            self.db.add(CampaignDelivery(
                campaign_id=campaign.id,
                subscriber_id=subscriber.id,
                email=subscriber.email,
                status="pending",
            ))

        campaign.status = CampaignStatus.SENDING.value
        campaign.started_at = utcnow()
        campaign.total_recipients = len(recipients)
        create_audit_log(
            self.db,
            AuditAction.CAMPAIGN_SENT,
            actor_id=actor_id,
            target_type="campaign",
            target_id=campaign.id,
            details={"recipients": len(recipients)},
        )
        await self.db.commit()
        await self.db.refresh(campaign)
        logger.info(f"Campaign {campaign.id} started with {len(recipients)} recipients")
        return campaign

    async def revert_start(self, campaign: Campaign, previous_status: str) -> Campaign:
        """撤销未能交给 worker 的发送：删除投递记录并恢复原状态"""
        await self.db.execute(delete(CampaignDelivery).where(CampaignDelivery.campaign_id == campaign.id))
        campaign.status = previous_status
        campaign.started_at = None
        campaign.total_recipients = 0
        await self.db.commit()
        await self.db.refresh(campaign)
        logger.warning(f"Campaign {campaign.id} reverted to {previous_status}")
        return campaign

    async def claim_stalled(self, minutes: Optional[int] = None) -> List[UUID]:
        """
        领取长时间没有进展的发送中活动

        投递每批提交都会刷新 updated_at；领取时再刷新一次，
        同一活动在下个超时周期前不会被重复领取

        Returns:
            需要重新入队的活动 ID
        """
        cutoff = utcnow() - timedelta(minutes=minutes or settings.campaign_stall_minutes)
        result = await self.db.execute(
            select(Campaign).where(
                Campaign.status == CampaignStatus.SENDING.value,
                Campaign.updated_at < cutoff,
            )
        )
        stalled = result.scalars().all()
        for campaign in stalled:
            campaign.updated_at = utcnow()
            logger.warning(f"Campaign {campaign.id} stalled in sending, re-queueing")
        await self.db.commit()
        return [campaign.id for campaign in stalled]

    async def dispatch_due(self) -> List[UUID]:
        """
        启动所有到期的排程活动

        Returns:
            已进入发送状态的活动 ID
        """
        result = await self.db.execute(
            select(Campaign.id).where(
                Campaign.status == CampaignStatus.SCHEDULED.value,
                Campaign.scheduled_at <= utcnow(),
            )
        )
        started = []
        for campaign_id in result.scalars().all():
            campaign = await self.db.get(Campaign, campaign_id)
            try:
                await self.start_sending(campaign)
                started.append(campaign_id)
            except (ConflictError, ValidationError) as e:
                # 无法发送的排程活动直接取消，避免每次轮询重复尝试
                await self.db.rollback()
                campaign = await self.db.get(Campaign, campaign_id, populate_existing=True)
                campaign.status = CampaignStatus.CANCELLED.value
                await self.db.commit()
                logger.warning(f"Scheduled campaign {campaign_id} cancelled: {e.message}")
        return started

    async def delivery_breakdown(self, campaign: Campaign) -> Dict[str, int]:
        """按投递状态统计"""
        result = await self.db.execute(
            select(CampaignDelivery.status).where(CampaignDelivery.campaign_id == campaign.id)
        )
        breakdown = {"pending": 0, "sent": 0, "failed": 0, "bounced": 0}
        for (status,) in result.all():
            breakdown[status] = breakdown.get(status, 0) + 1
        return breakdown
