"""分析服务 - 事件记录、聚合统计、打开/点击追踪"""

import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.timeutil import start_of_day, utcnow
from piper.core.tokens import tracking_codec
from piper.models.analytics import AnalyticsEvent
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.content import Content
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.services.cache import cached
from piper.services.pagination import Page, paginate

logger = logging.getLogger(__name__)


def record_event(
    db: AsyncSession,
    owner_id: UUID,
    event_type: str,
    newsletter_id: Optional[UUID] = None,
    campaign_id: Optional[UUID] = None,
    subscriber_id: Optional[UUID] = None,
    content_id: Optional[UUID] = None,
    event_data: Optional[dict] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AnalyticsEvent:
    """记录分析事件（由调用方提交）"""
    event = AnalyticsEvent(
        owner_id=owner_id,
        event_type=event_type,
        newsletter_id=newsletter_id,
        campaign_id=campaign_id,
        subscriber_id=subscriber_id,
        content_id=content_id,
        event_data=event_data,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=utcnow(),
    )
    db.add(event)
    return event


def rate(numerator: int, denominator: int) -> float:
    """百分比，保留两位小数；分母为 0 时返回 0"""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def _day_keys(days: int) -> List[str]:
    today = start_of_day(utcnow())
    return [(today - timedelta(days=offset)).date().isoformat() for offset in range(days - 1, -1, -1)]


def campaign_rates(campaign: Campaign, bounced: int = 0) -> Dict[str, Any]:
    """单个活动的投递统计"""
    return {
        "campaign_id": str(campaign.id),
        "status": campaign.status,
        "total_recipients": campaign.total_recipients,
        "sent": campaign.sent_count,
        "failed": campaign.failed_count,
        "bounced": bounced,
        "opens": campaign.open_count,
        "clicks": campaign.click_count,
        "unsubscribes": campaign.unsubscribe_count,
        "open_rate": rate(campaign.open_count, campaign.sent_count),
        "click_rate": rate(campaign.click_count, campaign.sent_count),
        "bounce_rate": rate(bounced, campaign.total_recipients),
        "unsubscribe_rate": rate(campaign.unsubscribe_count, campaign.sent_count),
    }


class AnalyticsService:
    """分析聚合服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # 通讯
    # ------------------------------------------------------------------

    async def newsletter_analytics(self, owner_id: UUID) -> Dict[str, Any]:
        return await cached(f"{owner_id}:newsletters", lambda: self._newsletter_analytics(owner_id))

    async def _newsletter_analytics(self, owner_id: UUID) -> Dict[str, Any]:
        status_counts = dict((await self.db.execute(
            select(Newsletter.status, func.count(Newsletter.id))
            .where(Newsletter.owner_id == owner_id)
            .group_by(Newsletter.status)
        )).all())

        rows = (await self.db.execute(
            select(
                Newsletter.id,
                Newsletter.title,
                func.coalesce(func.sum(Campaign.sent_count), 0),
                func.coalesce(func.sum(Campaign.open_count), 0),
            )
            .join(Campaign, Campaign.newsletter_id == Newsletter.id)
            .where(Newsletter.owner_id == owner_id, Campaign.status == "sent")
            .group_by(Newsletter.id, Newsletter.title)
        )).all()

        open_rates = [
            {
                "newsletter_id": str(newsletter_id),
                "title": title,
                "sent": int(sent),
                "opens": int(opens),
                "open_rate": rate(int(opens), int(sent)),
            }
            for newsletter_id, title, sent, opens in rows
        ]
        open_rates.sort(key=lambda r: r["open_rate"], reverse=True)
        total_sent = sum(r["sent"] for r in open_rates)
        total_opens = sum(r["opens"] for r in open_rates)

        return {
            "total_newsletters": sum(status_counts.values()),
            "sent_newsletters": status_counts.get("sent", 0),
            "draft_newsletters": status_counts.get("draft", 0),
            "scheduled_newsletters": status_counts.get("scheduled", 0),
            "archived_newsletters": status_counts.get("archived", 0),
            "open_rates": open_rates,
            "average_open_rate": rate(total_opens, total_sent),
        }

    # ------------------------------------------------------------------
    # 订阅者
    # ------------------------------------------------------------------

    async def subscriber_analytics(self, owner_id: UUID, days: int = 30) -> Dict[str, Any]:
        return await cached(
            f"{owner_id}:subscribers:{days}", lambda: self._subscriber_analytics(owner_id, days)
        )

    async def _subscriber_analytics(self, owner_id: UUID, days: int) -> Dict[str, Any]:
        status_counts = dict((await self.db.execute(
            select(Subscriber.status, func.count(Subscriber.id))
            .where(Subscriber.owner_id == owner_id)
            .group_by(Subscriber.status)
        )).all())

        since = start_of_day(utcnow()) - timedelta(days=days - 1)
        rows = (await self.db.execute(
            select(Subscriber.created_at, Subscriber.unsubscribed_at)
            .where(Subscriber.owner_id == owner_id)
        )).all()

        # 按天聚合在应用层完成，兼容不同数据库的日期函数
        new_by_day: Dict[str, int] = defaultdict(int)
        unsub_by_day: Dict[str, int] = defaultdict(int)
        for created_at, unsubscribed_at in rows:
            if created_at and created_at >= since:
                new_by_day[created_at.date().isoformat()] += 1
            if unsubscribed_at and unsubscribed_at >= since:
                unsub_by_day[unsubscribed_at.date().isoformat()] += 1

        growth_trend = [
            {
                "date": day,
                "new_subscribers": new_by_day.get(day, 0),
                "unsubscribed": unsub_by_day.get(day, 0),
                "net_growth": new_by_day.get(day, 0) - unsub_by_day.get(day, 0),
            }
            for day in _day_keys(days)
        ]

        return {
            "total_subscribers": sum(status_counts.values()),
            "active_subscribers": status_counts.get("active", 0),
            "pending_subscribers": status_counts.get("pending", 0),
            "unsubscribed_subscribers": status_counts.get("unsubscribed", 0),
            "bounced_subscribers": status_counts.get("bounced", 0),
            "growth_trend": growth_trend,
        }

    # ------------------------------------------------------------------
    # 互动
    # ------------------------------------------------------------------

    async def engagement_analytics(self, owner_id: UUID, days: int = 30) -> Dict[str, Any]:
        return await cached(
            f"{owner_id}:engagement:{days}", lambda: self._engagement_analytics(owner_id, days)
        )

    async def _engagement_analytics(self, owner_id: UUID, days: int) -> Dict[str, Any]:
        campaigns = (await self.db.execute(
            select(Campaign)
            .where(Campaign.owner_id == owner_id, Campaign.status.in_(("sending", "sent")))
            .order_by(Campaign.started_at.desc())
        )).scalars().all()

        click_rates = [
            {
                "campaign_id": str(c.id),
                "name": c.name,
                "sent": c.sent_count,
                "clicks": c.click_count,
                "click_rate": rate(c.click_count, c.sent_count),
            }
            for c in campaigns
        ]

        since = start_of_day(utcnow()) - timedelta(days=days - 1)
        events = (await self.db.execute(
            select(AnalyticsEvent.event_type, AnalyticsEvent.created_at)
            .where(
                AnalyticsEvent.owner_id == owner_id,
                AnalyticsEvent.event_type.in_(("email_opened", "link_clicked")),
                AnalyticsEvent.created_at >= since,
            )
        )).all()

        opens_by_day: Dict[str, int] = defaultdict(int)
        clicks_by_day: Dict[str, int] = defaultdict(int)
        for event_type, created_at in events:
            day = created_at.date().isoformat()
            if event_type == "email_opened":
                opens_by_day[day] += 1
            else:
                clicks_by_day[day] += 1

        engagement_trend = [
            {"date": day, "opens": opens_by_day.get(day, 0), "clicks": clicks_by_day.get(day, 0)}
            for day in _day_keys(days)
        ]

        popular = (await self.db.execute(
            select(Content)
            .where(Content.owner_id == owner_id, Content.status == "published")
            .order_by(Content.views.desc(), Content.published_at.desc())
            .limit(5)
        )).scalars().all()

        return {
            "click_rates": click_rates,
            "engagement_trend": engagement_trend,
            "popular_content": [
                {"content_id": str(c.id), "title": c.title, "content_type": c.content_type, "views": c.views}
                for c in popular
            ],
        }

    # ------------------------------------------------------------------
    # 单个活动
    # ------------------------------------------------------------------

    async def campaign_analytics(self, campaign: Campaign) -> Dict[str, Any]:
        bounced = await self.db.scalar(
            select(func.count(CampaignDelivery.id)).where(
                CampaignDelivery.campaign_id == campaign.id,
                CampaignDelivery.status == "bounced",
            )
        )
        return campaign_rates(campaign, bounced or 0)

    # ------------------------------------------------------------------
    # 事件
    # ------------------------------------------------------------------

    async def list_events(
        self,
        owner_id: UUID,
        page: int = 1,
        limit: int = 50,
        event_type: Optional[str] = None,
    ) -> Page[AnalyticsEvent]:
        stmt = select(AnalyticsEvent).where(AnalyticsEvent.owner_id == owner_id)
        if event_type:
            stmt = stmt.where(AnalyticsEvent.event_type == event_type)
        stmt = stmt.order_by(AnalyticsEvent.created_at.desc())
        return await paginate(self.db, stmt, page, limit)

    async def event_summary(self, owner_id: UUID, days: int = 30) -> Dict[str, Any]:
        since = start_of_day(utcnow()) - timedelta(days=days - 1)
        counts = dict((await self.db.execute(
            select(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
            .where(AnalyticsEvent.owner_id == owner_id, AnalyticsEvent.created_at >= since)
            .group_by(AnalyticsEvent.event_type)
        )).all())
        return {"days": days, "total_events": sum(counts.values()), "by_type": counts}


class TrackingService:
    """打开/点击追踪"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, token: str) -> Optional[tuple[CampaignDelivery, Campaign, Optional[str]]]:
        data = tracking_codec.decode(token)
        if not data:
            return None
        delivery = await self.db.get(CampaignDelivery, data["delivery_id"])
        if not delivery:
            return None
        campaign = await self.db.get(Campaign, delivery.campaign_id)
        if not campaign:
            return None
        return delivery, campaign, data["url"]

    def _mark_opened(self, delivery: CampaignDelivery, campaign: Campaign, ip: Optional[str], ua: Optional[str]) -> None:
        if delivery.opened_at is not None:
            return
        delivery.opened_at = utcnow()
        campaign.open_count += 1
        record_event(
            self.db, campaign.owner_id, "email_opened",
            newsletter_id=campaign.newsletter_id, campaign_id=campaign.id,
            subscriber_id=delivery.subscriber_id, ip_address=ip, user_agent=ua,
        )

    async def record_open(self, token: str, ip: Optional[str] = None, ua: Optional[str] = None) -> bool:
        """记录打开（同一投递只计一次），令牌无效返回 False"""
        loaded = await self._load(token)
        if not loaded:
            return False
        delivery, campaign, _ = loaded
        self._mark_opened(delivery, campaign, ip, ua)
        await self.db.commit()
        return True

    async def record_click(self, token: str, ip: Optional[str] = None, ua: Optional[str] = None) -> Optional[str]:
        """
        记录点击并返回目标 URL

        点击隐含打开；同一投递的点击计数只增加一次，每次点击都记录事件
        """
        loaded = await self._load(token)
        if not loaded:
            return None
        delivery, campaign, url = loaded
        if not url:
            return None

        self._mark_opened(delivery, campaign, ip, ua)
        if delivery.clicked_at is None:
            delivery.clicked_at = utcnow()
            campaign.click_count += 1
        record_event(
            self.db, campaign.owner_id, "link_clicked",
            newsletter_id=campaign.newsletter_id, campaign_id=campaign.id,
            subscriber_id=delivery.subscriber_id, event_data={"url": url},
            ip_address=ip, user_agent=ua,
        )
        await self.db.commit()
        return url
