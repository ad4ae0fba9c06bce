"""通讯 API"""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user_id
from piper.core.database import get_db
from piper.services.newsletter import NewsletterService

router = APIRouter(prefix="/api/newsletters", tags=["newsletters"])

EditableStatus = Literal["draft", "scheduled"]
Frequency = Literal["once", "daily", "weekly", "monthly"]


# ============================================================================
# 请求/响应模型
# ============================================================================

class SectionSchema(BaseModel):
    heading: Optional[str] = Field(None, max_length=200)
    body: str = Field("", max_length=100_000)


class NewsletterCreate(BaseModel):
    """创建通讯请求"""
    title: str = Field(..., min_length=1, max_length=200)
    subject: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    content: str = Field("", max_length=500_000)
    sections: List[SectionSchema] = Field(default_factory=list, max_length=50)
    status: EditableStatus = "draft"
    frequency: Frequency = "once"
    scheduled_for: Optional[datetime] = None
    tags: List[str] = Field(default_factory=list, max_length=20)
    category: Optional[str] = Field(None, max_length=100)


class NewsletterUpdate(BaseModel):
    """更新通讯请求（未提供的字段保持不变）"""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    subject: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    content: Optional[str] = Field(None, max_length=500_000)
    sections: Optional[List[SectionSchema]] = Field(None, max_length=50)
    status: Optional[EditableStatus] = None
    frequency: Optional[Frequency] = None
    scheduled_for: Optional[datetime] = None
    tags: Optional[List[str]] = Field(None, max_length=20)
    category: Optional[str] = Field(None, max_length=100)


class NewsletterResponse(BaseModel):
    """通讯信息"""
    id: UUID
    title: str
    slug: str
    subject: Optional[str] = None
    description: Optional[str] = None
    content: str
    sections: List[dict]
    status: str
    frequency: str
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    tags: List[str]
    category: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# API 端点
# ============================================================================

@router.get("")
async def list_newsletters(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=200),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    result = await NewsletterService(db).list_newsletters(user_id, page, limit, status_filter, search)
    return {
        "newsletters": [NewsletterResponse.model_validate(n) for n in result.items],
        "pagination": result.meta(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_newsletter(
    body: NewsletterCreate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    newsletter = await NewsletterService(db).create(user_id, body.model_dump())
    return {"newsletter": NewsletterResponse.model_validate(newsletter)}


@router.get("/{newsletter_id}")
async def get_newsletter(
    newsletter_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    newsletter = await NewsletterService(db).get(user_id, newsletter_id)
    return {"newsletter": NewsletterResponse.model_validate(newsletter)}


@router.put("/{newsletter_id}")
async def update_newsletter(
    newsletter_id: UUID,
    body: NewsletterUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    newsletter = await NewsletterService(db).update(
        user_id, newsletter_id, body.model_dump(exclude_unset=True)
    )
    return {"newsletter": NewsletterResponse.model_validate(newsletter)}


@router.delete("/{newsletter_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_newsletter(
    newsletter_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    await NewsletterService(db).delete(user_id, newsletter_id)


@router.post("/{newsletter_id}/archive")
async def archive_newsletter(
    newsletter_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    newsletter = await NewsletterService(db).archive(user_id, newsletter_id)
    return {"newsletter": NewsletterResponse.model_validate(newsletter)}


@router.post("/{newsletter_id}/duplicate", status_code=status.HTTP_201_CREATED)
async def duplicate_newsletter(
    newsletter_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    newsletter = await NewsletterService(db).duplicate(user_id, newsletter_id)
    return {"newsletter": NewsletterResponse.model_validate(newsletter)}
