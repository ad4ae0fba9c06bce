"""活动投递服务

由 Celery 任务调用：逐批渲染、发送待投递邮件，全部处理后完成活动
"""

import html as html_lib
import logging
import re
from email.errors import MessageError
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.tokens import tracking_codec
from piper.core.timeutil import utcnow
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.services.analytics import record_event
from piper.services.cache import invalidate
from piper.services.email_service import SEND_BOUNCED, SEND_OK, EmailService, email_service, render_newsletter
from piper.services.subscriber import unsubscribe_url

logger = logging.getLogger(__name__)
settings = get_settings()

_LINK_PATTERN = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)


def open_tracking_url(delivery_id: UUID) -> str:
    return f"{settings.public_base_url}/api/track/open/{tracking_codec.encode(delivery_id)}"


def click_tracking_url(delivery_id: UUID, url: str) -> str:
    return f"{settings.public_base_url}/api/track/click/{tracking_codec.encode(delivery_id, url)}"


def rewrite_links(html: str, delivery_id: UUID) -> str:
    """将正文中的外部链接改写为点击追踪链接"""
    return _LINK_PATTERN.sub(
        lambda m: f'href="{click_tracking_url(delivery_id, html_lib.unescape(m.group(1)))}"',
        html,
    )


class CampaignDeliveryService:
    """活动投递服务"""

    def __init__(self, db: AsyncSession, sender: Optional[EmailService] = None):
        self.db = db
        self.sender = sender or email_service

    async def _send_one(self, delivery: CampaignDelivery, campaign: Campaign, newsletter: Newsletter) -> None:
        subscriber = await self.db.get(Subscriber, delivery.subscriber_id)
        if subscriber is None or subscriber.status != "active":
            # 生成投递记录后退订或被删除
            delivery.status = "failed"
            delivery.error = "Subscriber is no longer active"
            campaign.failed_count += 1
            return

        track = bool(subscriber.consent_tracking)
        content = newsletter.content or ""
        sections = [dict(s) for s in newsletter.sections or []]
        if track:
            content = rewrite_links(content, delivery.id)
            for section in sections:
                section["body"] = rewrite_links(section.get("body", ""), delivery.id)

        unsubscribe = unsubscribe_url(subscriber.id, campaign.id)
        subject = campaign.subject or newsletter.subject or newsletter.title
        html, text = render_newsletter(
            title=newsletter.title,
            subject=subject,
            content=content,
            sections=sections,
            unsubscribe_url=unsubscribe,
            description=newsletter.description,
            pixel_url=open_tracking_url(delivery.id) if track else None,
            locale=settings.default_locale,
        )

        try:
            result = await self.sender.deliver(
                delivery.email,
                subject,
                html,
                text,
                headers={"List-Unsubscribe": f"<{unsubscribe}>"},
            )
        except (ValueError, MessageError) as exc:
            # 单封邮件无法构造时只标记该投递失败
            logger.error(f"Delivery {delivery.id} could not be built: {exc}")
            result = None

        if result == SEND_OK:
            delivery.status = "sent"
            delivery.sent_at = utcnow()
            campaign.sent_count += 1
        elif result == SEND_BOUNCED:
            delivery.status = "bounced"
            delivery.error = "Recipient refused"
            subscriber.status = "bounced"
            campaign.failed_count += 1
        else:
            delivery.status = "failed"
            delivery.error = "SMTP delivery failed"
            campaign.failed_count += 1

    async def deliver(self, campaign_id: UUID) -> bool:
        """
        投递活动的待发送邮件

        Args:
            campaign_id: 活动 ID

        Returns:
            活动是否已完成
        """
        campaign = await self.db.get(Campaign, campaign_id)
        if campaign is None or campaign.status != "sending":
            logger.info(f"Campaign {campaign_id} is not sending, skip delivery")
            return False

        newsletter = await self.db.get(Newsletter, campaign.newsletter_id)
        if newsletter is None:
            logger.error(f"Newsletter for campaign {campaign_id} no longer exists")
            return False

        while True:
            result = await self.db.execute(
                select(CampaignDelivery)
                .where(CampaignDelivery.campaign_id == campaign.id, CampaignDelivery.status == "pending")
                .order_by(CampaignDelivery.created_at)
                .limit(settings.campaign_batch_size)
            )
            batch = result.scalars().all()
            if not batch:
                break
            for delivery in batch:
                await self._send_one(delivery, campaign, newsletter)
            # 每批提交一次，任务重试时从剩余的 pending 继续
            await self.db.commit()
            logger.info(
                f"Campaign {campaign.id}: {campaign.sent_count} sent, "
                f"{campaign.failed_count} failed of {campaign.total_recipients}"
            )

        await self._complete(campaign, newsletter)
        return True

    async def _complete(self, campaign: Campaign, newsletter: Newsletter) -> None:
        now = utcnow()
        campaign.status = "sent"
        campaign.completed_at = now
        if newsletter.status != "archived":
            newsletter.status = "sent"
            newsletter.sent_at = now

        record_event(
            self.db, campaign.owner_id, "campaign_sent",
            newsletter_id=newsletter.id, campaign_id=campaign.id,
            event_data={"sent": campaign.sent_count, "failed": campaign.failed_count},
        )
        record_event(self.db, campaign.owner_id, "newsletter_sent", newsletter_id=newsletter.id)
        await self.db.commit()
        await invalidate(f"{campaign.owner_id}:")
        logger.info(f"Campaign {campaign.id} completed")

