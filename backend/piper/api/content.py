"""内容 API"""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user_id
from piper.core.database import get_db
from piper.services.content import ContentService

router = APIRouter(prefix="/api/content", tags=["content"])

ContentType = Literal["article", "announcement", "link", "other"]
ContentStatus = Literal["draft", "published", "archived"]


class ContentCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field("", max_length=500_000)
    url: Optional[HttpUrl] = None
    content_type: ContentType = "article"
    newsletter_id: Optional[UUID] = None
    tags: List[str] = Field(default_factory=list, max_length=20)


class ContentUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    body: Optional[str] = Field(None, max_length=500_000)
    url: Optional[HttpUrl] = None
    content_type: Optional[ContentType] = None
    status: Optional[ContentStatus] = None
    newsletter_id: Optional[UUID] = None
    tags: Optional[List[str]] = Field(None, max_length=20)


class ContentResponse(BaseModel):
    id: UUID
    newsletter_id: Optional[UUID] = None
    title: str
    body: str
    url: Optional[str] = None
    content_type: str
    status: str
    tags: List[str]
    views: int
    published_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


@router.get("")
async def list_content(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    content_type: Optional[str] = None,
    newsletter_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    result = await ContentService(db).list_content(
        user_id, page, limit, status_filter, content_type, newsletter_id
    )
    return {
        "content": [ContentResponse.model_validate(c) for c in result.items],
        "pagination": result.meta(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_content(
    body: ContentCreate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    content = await ContentService(db).create(user_id, body.model_dump())
    return {"content": ContentResponse.model_validate(content)}


@router.get("/{content_id}")
async def get_content(
    content_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """读取内容，已发布内容累计浏览数"""
    content = await ContentService(db).view(user_id, content_id)
    return {"content": ContentResponse.model_validate(content)}


@router.put("/{content_id}")
async def update_content(
    content_id: UUID,
    body: ContentUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    content = await ContentService(db).update(user_id, content_id, body.model_dump(exclude_unset=True))
    return {"content": ContentResponse.model_validate(content)}


@router.delete("/{content_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_content(
    content_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    await ContentService(db).delete(user_id, content_id)


@router.post("/{content_id}/publish")
async def publish_content(
    content_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    content = await ContentService(db).publish(user_id, content_id)
    return {"content": ContentResponse.model_validate(content)}
