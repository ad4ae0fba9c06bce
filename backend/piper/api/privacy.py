"""隐私 API - 同意管理、资料汇出、账号删除"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_user
from piper.core.database import get_db
from piper.core.errors import NotFoundError
from piper.middleware.endpoint_limit import rate_limit
from piper.middleware.rate_limit import get_client_ip
from piper.models.user import User
from piper.services.audit import AuditAction, create_audit_log
from piper.services.consent_service import consent_service
from piper.services.privacy import PrivacyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/privacy", tags=["privacy"])


class ConsentUpdate(BaseModel):
    """更新同意 {consent_type: is_agreed}"""
    consents: Dict[str, bool] = Field(..., min_length=1)


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


# ============================================================================
# 同意管理
# ============================================================================

@router.get("/consents")
async def get_consents(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return {
        "consents": await consent_service.get_consent_status(db, user.id),
        "current_version": consent_service.CURRENT_VERSION,
        "required": list(consent_service.REQUIRED_TYPES),
    }


@router.post("/consents")
async def update_consents(
    request: Request,
    body: ConsentUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    for consent_type in body.consents:
        consent_service.validate_type(consent_type)
    await consent_service.record_all_consents(
        db, user.id, body.consents,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "consents": await consent_service.get_consent_status(db, user.id),
        "current_version": consent_service.CURRENT_VERSION,
    }


@router.delete("/consents/{consent_type}")
async def revoke_consent(
    consent_type: str,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await consent_service.revoke_consent(db, user.id, consent_type):
        raise NotFoundError("Consent not found")

    create_audit_log(
        db, AuditAction.CONSENT_REVOKED, actor_id=user.id, target_type="consent",
        target_id=consent_type, ip_address=get_client_ip(request),
    )
    await db.commit()
    return {"consents": await consent_service.get_consent_status(db, user.id)}


# ============================================================================
# 资料汇出 / 账号删除
# ============================================================================

@router.get("/export")
@rate_limit(max_requests=5, window=3600)
async def export_data(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    汇出当前用户的全部资料

    会话与事件中的 IP 地址会被遮罩
    """
    return await PrivacyService(db).export_user_data(user, ip_address=get_client_ip(request))


@router.delete("/account", status_code=status.HTTP_204_NO_CONTENT)
@rate_limit(max_requests=5, window=3600)
async def delete_account(
    request: Request,
    body: DeleteAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """删除账号及全部数据（需密码确认）"""
    await PrivacyService(db).delete_account(user, body.password, ip_address=get_client_ip(request))
