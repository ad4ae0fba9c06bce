"""内容模型"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from piper.core.database import Base
from piper.core.timeutil import utcnow

CONTENT_TYPES = ("article", "announcement", "link", "other")
CONTENT_STATUSES = ("draft", "published", "archived")


class Content(Base):
    """可复用内容表"""

    __tablename__ = "contents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    newsletter_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("newsletters.id", ondelete="SET NULL"), nullable=True, index=True
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="", nullable=False)
    url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)  # content_type=link 时使用
    content_type: Mapped[str] = mapped_column(String(20), default="article", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft", nullable=False, index=True)
    tags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    views: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
