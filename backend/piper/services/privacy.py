"""隐私服务 - 资料汇出、账号删除、数据保留清理"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.errors import AuthenticationError
from piper.core.security import PIIMasker, verify_password
from piper.core.timeutil import utcnow
from piper.models.analytics import AnalyticsEvent
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.content import Content
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.models.user import ConsentRecord, User, UserSession
from piper.services.audit import AuditAction, create_audit_log
from piper.services.consent_service import consent_service

logger = logging.getLogger(__name__)
settings = get_settings()

# 汇出事件上限
EXPORT_EVENT_LIMIT = 1000


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _rows(items: List[Any], fields: List[str]) -> List[Dict[str, Any]]:
    rows = []
    for item in items:
        row = {}
        for field in fields:
            value = getattr(item, field)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, UUID):
                value = str(value)
            row[field] = value
        rows.append(row)
    return rows


class PrivacyService:
    """隐私服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _all(self, stmt) -> list:
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def export_user_data(self, user: User, ip_address: Optional[str] = None) -> Dict[str, Any]:
        """
        汇出用户资料

        包含账号资料、同意记录、会话、通讯、订阅者、活动、内容与最近的分析事件；
        会话与事件中的 IP 地址会被遮罩。

        Args:
            user: 当前用户
            ip_address: 请求 IP（写入审计日志）

        Returns:
            dict: 汇出的资料
        """
        consents = await consent_service.get_user_consents(self.db, user.id, include_revoked=True)
        sessions = await self._all(
            select(UserSession).where(UserSession.user_id == user.id).order_by(UserSession.created_at)
        )
        newsletters = await self._all(
            select(Newsletter).where(Newsletter.owner_id == user.id).order_by(Newsletter.created_at)
        )
        subscribers = await self._all(
            select(Subscriber).where(Subscriber.owner_id == user.id).order_by(Subscriber.created_at)
        )
        campaigns = await self._all(
            select(Campaign).where(Campaign.owner_id == user.id).order_by(Campaign.created_at)
        )
        contents = await self._all(
            select(Content).where(Content.owner_id == user.id).order_by(Content.created_at)
        )
        events = await self._all(
            select(AnalyticsEvent)
            .where(AnalyticsEvent.owner_id == user.id)
            .order_by(AnalyticsEvent.created_at.desc())
            .limit(EXPORT_EVENT_LIMIT)
        )
        events_total = (await self.db.execute(
            select(func.count(AnalyticsEvent.id)).where(AnalyticsEvent.owner_id == user.id)
        )).scalar() or 0

        session_rows = _rows(sessions, ["id", "created_at", "expires_at", "revoked_at", "user_agent"])
        for row, session in zip(session_rows, sessions):
            row["ip_address"] = PIIMasker.mask_ip(session.ip_address)

        event_rows = _rows(events, ["id", "event_type", "newsletter_id", "campaign_id", "subscriber_id",
                                    "content_id", "event_data", "created_at"])
        for row, event in zip(event_rows, events):
            row["ip_address"] = PIIMasker.mask_ip(event.ip_address)

        export = {
            "exported_at": utcnow().isoformat(),
            "user_id": str(user.id),
            "user": {
                "id": str(user.id),
                "email": user.email,
                "display_name": user.display_name,
                "bio": user.bio,
                "role": user.role,
                "created_at": _iso(user.created_at),
                "last_login_at": _iso(user.last_login_at),
            },
            "consents": _rows(consents, ["consent_type", "is_agreed", "version", "created_at", "revoked_at"]),
            "sessions": session_rows,
            "newsletters": _rows(newsletters, ["id", "title", "slug", "subject", "description", "content",
                                               "sections", "status", "frequency", "tags", "category",
                                               "scheduled_for", "sent_at", "created_at"]),
            "subscribers": _rows(subscribers, ["id", "email", "name", "status", "tags", "preferences",
                                               "consent_marketing", "consent_tracking", "source",
                                               "created_at", "confirmed_at", "unsubscribed_at"]),
            "campaigns": _rows(campaigns, ["id", "newsletter_id", "name", "subject", "status", "segment",
                                           "total_recipients", "sent_count", "open_count", "click_count",
                                           "scheduled_at", "completed_at", "created_at"]),
            "content": _rows(contents, ["id", "title", "body", "url", "content_type", "status", "tags",
                                        "views", "published_at", "created_at"]),
            "events": event_rows,
            "events_total": events_total,
        }

        create_audit_log(
            self.db,
            AuditAction.DATA_EXPORTED,
            actor_id=user.id,
            target_type="user",
            target_id=user.id,
            ip_address=ip_address,
        )
        await self.db.commit()
        logger.info(f"User data exported: {user.id}")
        return export

    async def delete_account(self, user: User, password: str, ip_address: Optional[str] = None) -> None:
        """
        删除账号及其全部数据

        Raises:
            AuthenticationError: 密码错误
        """
        if not verify_password(password, user.password_hash):
            logger.warning(f"Account deletion rejected, wrong password: {user.id}")
            raise AuthenticationError("Invalid password")

        user_id = user.id
        masked_email = PIIMasker.mask_email(user.email)

        campaign_ids = select(Campaign.id).where(Campaign.owner_id == user_id)
        subscriber_ids = select(Subscriber.id).where(Subscriber.owner_id == user_id)
        await self.db.execute(delete(CampaignDelivery).where(or_(
            CampaignDelivery.campaign_id.in_(campaign_ids),
            CampaignDelivery.subscriber_id.in_(subscriber_ids),
        )))
        await self.db.execute(delete(Campaign).where(Campaign.owner_id == user_id))
        await self.db.execute(delete(Subscriber).where(Subscriber.owner_id == user_id))
        await self.db.execute(delete(Content).where(Content.owner_id == user_id))
        await self.db.execute(delete(Newsletter).where(Newsletter.owner_id == user_id))
        await self.db.execute(delete(AnalyticsEvent).where(AnalyticsEvent.owner_id == user_id))
        await self.db.execute(delete(ConsentRecord).where(ConsentRecord.user_id == user_id))
        await self.db.execute(delete(UserSession).where(UserSession.user_id == user_id))
        await self.db.delete(user)

        # 审计日志不设外键，账号删除后保留（邮箱遮罩）
        create_audit_log(
            self.db,
            AuditAction.ACCOUNT_DELETED,
            actor_id=user_id,
            target_type="user",
            target_id=user_id,
            details={"email": masked_email},
            ip_address=ip_address,
        )
        await self.db.commit()
        logger.info(f"Account deleted: {masked_email}")

    async def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        数据保留清理

        - 已过期或已撤销超过保留期的会话
        - 超过保留期的分析事件
        - 超过确认期限仍未确认的订阅者

        Returns:
            各类被删除的记录数
        """
        now = now or utcnow()
        session_cutoff = now - timedelta(days=settings.session_retention_days)
        event_cutoff = now - timedelta(days=settings.analytics_retention_days)
        pending_cutoff = now - timedelta(days=settings.pending_subscriber_days)

        sessions = await self.db.execute(delete(UserSession).where(or_(
            UserSession.expires_at < session_cutoff,
            UserSession.revoked_at < session_cutoff,
        )))
        events = await self.db.execute(delete(AnalyticsEvent).where(AnalyticsEvent.created_at < event_cutoff))

        # 待确认期限从最近一次同意起算，重新订阅会重置
        pending_since = func.coalesce(Subscriber.consented_at, Subscriber.created_at)

        stale = select(Subscriber.id).where(
            Subscriber.status == "pending",
            pending_since < pending_cutoff,
        )
        await self.db.execute(delete(CampaignDelivery).where(CampaignDelivery.subscriber_id.in_(stale)))
        subscribers = await self.db.execute(delete(Subscriber).where(
            Subscriber.status == "pending",
            pending_since < pending_cutoff,
        ))
        await self.db.commit()

        purged = {
            "sessions": sessions.rowcount or 0,
            "events": events.rowcount or 0,
            "pending_subscribers": subscribers.rowcount or 0,
        }
        logger.info(f"Retention purge finished: {purged}")
        return purged
