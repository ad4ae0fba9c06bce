"""订阅者模型"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from piper.core.database import Base
from piper.core.timeutil import utcnow

SUBSCRIBER_STATUSES = ("pending", "active", "unsubscribed", "bounced")


class Subscriber(Base):
    """订阅者表（同一 owner 下邮箱唯一）"""

    __tablename__ = "subscribers"
    __table_args__ = (UniqueConstraint("owner_id", "email", name="uq_subscribers_owner_email"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # 通过公开订阅表单加入时记录来源通讯
    newsletter_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("newsletters.id", ondelete="SET NULL"), nullable=True
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False, index=True)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # 同意
    consent_marketing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_tracking: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consented_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    source: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)  # manual / import / form

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unsubscribed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
