"""分析 API

- /api/analytics：聚合统计（需登录）
- /api/track：邮件打开/点击追踪（公开）
"""

import base64
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user_id
from piper.core.database import get_db
from piper.core.errors import NotFoundError
from piper.core.tokens import tracking_codec
from piper.middleware.rate_limit import get_client_ip
from piper.services.analytics import AnalyticsService, TrackingService
from piper.services.campaign import CampaignService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])
track_router = APIRouter(prefix="/api/track", tags=["tracking"])

# 1x1 透明 GIF
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


class EventResponse(BaseModel):
    id: UUID
    event_type: str
    newsletter_id: Optional[UUID] = None
    campaign_id: Optional[UUID] = None
    subscriber_id: Optional[UUID] = None
    content_id: Optional[UUID] = None
    event_data: Optional[dict] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# 聚合统计
# ============================================================================

@router.get("/newsletters")
async def newsletter_analytics(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"analytics": await AnalyticsService(db).newsletter_analytics(user_id)}


@router.get("/subscribers")
async def subscriber_analytics(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"analytics": await AnalyticsService(db).subscriber_analytics(user_id, days)}


@router.get("/engagement")
async def engagement_analytics(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"analytics": await AnalyticsService(db).engagement_analytics(user_id, days)}


@router.get("/campaigns/{campaign_id}")
async def campaign_analytics(
    campaign_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    campaign = await CampaignService(db).get(user_id, campaign_id)
    return {"analytics": await AnalyticsService(db).campaign_analytics(campaign)}


@router.get("/events")
async def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    event_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    result = await AnalyticsService(db).list_events(user_id, page, limit, event_type)
    return {
        "events": [EventResponse.model_validate(e) for e in result.items],
        "pagination": result.meta(),
    }


@router.get("/events/summary")
async def event_summary(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"summary": await AnalyticsService(db).event_summary(user_id, days)}


# ============================================================================
# 追踪（公开）
# ============================================================================

@track_router.get("/open/{token}")
async def track_open(
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """打开追踪：无论令牌是否有效、数据库是否可用都返回像素"""
    try:
        recorded = await TrackingService(db).record_open(
            token, get_client_ip(request), request.headers.get("user-agent")
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to record open: {e}")
        recorded = False
    if not recorded:
        logger.debug("Open tracking token rejected")
    return Response(content=PIXEL_GIF, media_type="image/gif", headers=NO_CACHE_HEADERS)


@track_router.get("/click/{token}")
async def track_click(
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """点击追踪：重定向到令牌内封存的 URL，记录失败时仍然重定向"""
    try:
        url = await TrackingService(db).record_click(
            token, get_client_ip(request), request.headers.get("user-agent")
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to record click: {e}")
        decoded = tracking_codec.decode(token)
        url = decoded["url"] if decoded else None
    if not url:
        raise NotFoundError("Link not found")
    return RedirectResponse(url=url, status_code=302)
