"""分析相关模型：AnalyticsEvent"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from piper.core.database import Base
from piper.core.timeutil import utcnow

EVENT_TYPES = (
    "newsletter_created",
    "newsletter_sent",
    "subscriber_added",
    "subscriber_confirmed",
    "subscriber_unsubscribed",
    "campaign_sent",
    "email_opened",
    "link_clicked",
    "content_viewed",
)


class AnalyticsEvent(Base):
    """分析事件模型"""

    __tablename__ = "analytics_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), index=True)

    # 关联对象不设外键，删除对象后事件仍可统计
    newsletter_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    campaign_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    subscriber_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    content_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    event_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
