"""通讯模型"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from piper.core.database import Base
from piper.core.timeutil import utcnow

NEWSLETTER_STATUSES = ("draft", "scheduled", "sent", "archived")
NEWSLETTER_FREQUENCIES = ("once", "daily", "weekly", "monthly")


class Newsletter(Base):
    """通讯表"""

    __tablename__ = "newsletters"
    __table_args__ = (UniqueConstraint("owner_id", "slug", name="uq_newsletters_owner_slug"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(220), nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, default="", nullable=False)
    sections: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # [{heading, body}]

    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False, index=True)
    frequency: Mapped[str] = mapped_column(String(20), default="once", nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
