"""活动 API"""

import logging
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from kombu.exceptions import KombuError
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user_id
from piper.core.database import get_db
from piper.core.errors import ExternalServiceError
from piper.services.analytics import AnalyticsService
from piper.services.campaign import CampaignService
from piper.tasks.campaigns import queue_campaign_delivery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/campaigns", tags=["campaigns"])


# ============================================================================
# 请求/响应模型
# ============================================================================

class SegmentSchema(BaseModel):
    """分群：全部活跃订阅者，或带任一标签的订阅者"""
    type: Literal["all", "tags"] = "all"
    tags: List[str] = Field(default_factory=list, max_length=20)


class CampaignCreate(BaseModel):
    newsletter_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    subject: Optional[str] = Field(None, max_length=200)
    segment: Optional[SegmentSchema] = None
    scheduled_at: Optional[datetime] = None


class CampaignUpdate(BaseModel):
    newsletter_id: Optional[UUID] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    subject: Optional[str] = Field(None, max_length=200)
    segment: Optional[SegmentSchema] = None
    scheduled_at: Optional[datetime] = None


class ScheduleRequest(BaseModel):
    scheduled_at: datetime


class CampaignResponse(BaseModel):
    id: UUID
    newsletter_id: UUID
    name: str
    subject: Optional[str] = None
    status: str
    segment: dict
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_recipients: int
    sent_count: int
    failed_count: int
    open_count: int
    click_count: int
    unsubscribe_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# API 端点
# ============================================================================

@router.get("")
async def list_campaigns(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    newsletter_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    result = await CampaignService(db).list_campaigns(user_id, page, limit, status_filter, newsletter_id)
    return {
        "campaigns": [CampaignResponse.model_validate(c) for c in result.items],
        "pagination": result.meta(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_campaign(
    body: CampaignCreate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    campaign = await CampaignService(db).create(user_id, body.model_dump())
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    campaign = await CampaignService(db).get(user_id, campaign_id)
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.put("/{campaign_id}")
async def update_campaign(
    campaign_id: UUID,
    body: CampaignUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """仅 draft / scheduled 状态可编辑"""
    campaign = await CampaignService(db).update(user_id, campaign_id, body.model_dump(exclude_unset=True))
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.delete("/{campaign_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_campaign(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    await CampaignService(db).delete(user_id, campaign_id)


@router.post("/{campaign_id}/schedule")
async def schedule_campaign(
    campaign_id: UUID,
    body: ScheduleRequest,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    campaign = await CampaignService(db).schedule(user_id, campaign_id, body.scheduled_at)
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.post("/{campaign_id}/cancel")
async def cancel_campaign(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    campaign = await CampaignService(db).cancel(user_id, campaign_id)
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.post("/{campaign_id}/send")
async def send_campaign(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    立即发送

    生成投递记录后交给 Celery 异步投递，入队失败时撤销发送
    """
    service = CampaignService(db)
    campaign = await service.get(user_id, campaign_id)
    previous_status = campaign.status
    campaign = await service.start_sending(campaign, actor_id=user_id)
    try:
        queue_campaign_delivery(campaign.id)
    except (KombuError, OSError) as e:
        logger.error(f"Failed to queue campaign {campaign.id}: {e}")
        await service.revert_start(campaign, previous_status)
        raise ExternalServiceError("Delivery queue is unavailable, campaign was not sent")
    return {"campaign": CampaignResponse.model_validate(campaign)}


@router.get("/{campaign_id}/stats")
async def campaign_stats(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    service = CampaignService(db)
    campaign = await service.get(user_id, campaign_id)
    stats = await AnalyticsService(db).campaign_analytics(campaign)
    stats["deliveries"] = await service.delivery_breakdown(campaign)
    return {"stats": stats}
