"""订阅者 API

- /api/subscribers：订阅者管理（需登录）
- /api/subscribe、/api/unsubscribe：公开的双重确认订阅与退订
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user_id
from piper.core.database import get_db
from piper.core.i18n import get_locale_from_header
from piper.middleware.endpoint_limit import rate_limit
from piper.middleware.rate_limit import get_client_ip
from piper.services.audit import AuditAction, create_audit_log
from piper.services.subscriber import SubscriberService

router = APIRouter(prefix="/api/subscribers", tags=["subscribers"])
public_router = APIRouter(prefix="/api", tags=["subscribe"])

IMPORT_MAX_ROWS = 5000


# ============================================================================
# 请求/响应模型
# ============================================================================

class SubscriberCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = Field(None, max_length=100)
    status: Literal["active", "pending"] = "active"
    tags: List[str] = Field(default_factory=list, max_length=20)
    preferences: Dict[str, bool] = Field(default_factory=dict)
    consent_marketing: bool = False
    consent_tracking: bool = False


class SubscriberUpdate(BaseModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = Field(None, max_length=20)
    preferences: Optional[Dict[str, bool]] = None
    consent_marketing: Optional[bool] = None
    consent_tracking: Optional[bool] = None


class ResubscribeRequest(BaseModel):
    consent_marketing: Optional[bool] = None


class ImportRow(BaseModel):
    # 邮箱在服务层逐行校验，无效行计入 invalid
    email: str = Field(..., max_length=320)
    name: Optional[str] = Field(None, max_length=100)
    tags: List[str] = Field(default_factory=list, max_length=20)


class ImportRequest(BaseModel):
    subscribers: List[ImportRow] = Field(..., min_length=1, max_length=IMPORT_MAX_ROWS)
    tags: List[str] = Field(default_factory=list, max_length=20)
    consent_marketing: bool = Field(False, description="导入的订阅者是否已取得营销同意")


class PublicSubscribeRequest(BaseModel):
    newsletter_id: UUID
    email: EmailStr
    name: Optional[str] = Field(None, max_length=100)
    consent: bool = Field(False, description="同意接收营销邮件")
    consent_tracking: bool = Field(False, description="同意打开/点击追踪")


class SubscriberResponse(BaseModel):
    id: UUID
    newsletter_id: Optional[UUID] = None
    email: str
    name: Optional[str] = None
    status: str
    tags: List[str]
    preferences: Dict[str, bool]
    consent_marketing: bool
    consent_tracking: bool
    consented_at: Optional[datetime] = None
    source: str
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# 订阅者管理
# ============================================================================

@router.get("")
async def list_subscribers(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    tag: Optional[str] = Query(None, max_length=50),
    search: Optional[str] = Query(None, max_length=200),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    result = await SubscriberService(db).list_subscribers(user_id, page, limit, status_filter, tag, search)
    return {
        "subscribers": [SubscriberResponse.model_validate(s) for s in result.items],
        "pagination": result.meta(),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_subscriber(
    body: SubscriberCreate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    subscriber = await SubscriberService(db).create(user_id, body.model_dump())
    return {"subscriber": SubscriberResponse.model_validate(subscriber)}


@router.post("/import")
async def import_subscribers(
    request: Request,
    body: ImportRequest,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """批量导入，返回 created / skipped / invalid"""
    result = await SubscriberService(db).import_subscribers(
        user_id,
        [row.model_dump() for row in body.subscribers],
        tags=body.tags,
        consent_marketing=body.consent_marketing,
    )
    create_audit_log(
        db, AuditAction.SUBSCRIBERS_IMPORTED, actor_id=user_id, target_type="subscriber",
        details={"created": result["created"], "skipped": result["skipped"], "invalid": len(result["invalid"])},
        ip_address=get_client_ip(request),
    )
    await db.commit()
    return result


@router.get("/{subscriber_id}")
async def get_subscriber(
    subscriber_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    subscriber = await SubscriberService(db).get(user_id, subscriber_id)
    return {"subscriber": SubscriberResponse.model_validate(subscriber)}


@router.put("/{subscriber_id}")
async def update_subscriber(
    subscriber_id: UUID,
    body: SubscriberUpdate,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    subscriber = await SubscriberService(db).update(user_id, subscriber_id, body.model_dump(exclude_unset=True))
    return {"subscriber": SubscriberResponse.model_validate(subscriber)}


@router.delete("/{subscriber_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscriber(
    subscriber_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    await SubscriberService(db).delete(user_id, subscriber_id)


@router.post("/{subscriber_id}/unsubscribe")
async def unsubscribe_subscriber(
    subscriber_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    subscriber = await SubscriberService(db).unsubscribe(user_id, subscriber_id)
    return {"subscriber": SubscriberResponse.model_validate(subscriber)}


@router.post("/{subscriber_id}/resubscribe")
async def resubscribe_subscriber(
    subscriber_id: UUID,
    body: Optional[ResubscribeRequest] = None,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    consent = body.consent_marketing if body else None
    subscriber = await SubscriberService(db).resubscribe(user_id, subscriber_id, consent)
    return {"subscriber": SubscriberResponse.model_validate(subscriber)}


# ============================================================================
# 公开订阅流程（无需登录）
# ============================================================================

@public_router.post("/subscribe", status_code=status.HTTP_201_CREATED)
@rate_limit(max_requests=5, window=60)
async def public_subscribe(
    request: Request,
    body: PublicSubscribeRequest,
    db: AsyncSession = Depends(get_db),
):
    """订阅表单：创建待确认订阅者并发送确认邮件"""
    subscriber = await SubscriberService(db).public_subscribe(
        newsletter_id=body.newsletter_id,
        email=body.email,
        name=body.name,
        consent_marketing=body.consent,
        consent_tracking=body.consent_tracking,
        locale=get_locale_from_header(request.headers.get("Accept-Language")),
    )
    return {"status": subscriber.status, "message": "Please check your inbox to confirm the subscription"}


@public_router.get("/subscribe/confirm")
async def confirm_subscription(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    subscriber = await SubscriberService(db).confirm(token)
    return {"status": subscriber.status, "message": "Subscription confirmed"}


@public_router.get("/unsubscribe")
@public_router.post("/unsubscribe")
async def unsubscribe_by_token(
    token: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    """邮件退订链接；POST 支持 List-Unsubscribe-Post 一键退订"""
    subscriber = await SubscriberService(db).unsubscribe_by_token(token)
    return {"status": subscriber.status, "message": "You have been unsubscribed"}
