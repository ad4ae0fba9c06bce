"""管理员 API 路由

仅 admin / super_admin 可访问
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.api.auth import UserResponse
from piper.core.auth_deps import require_role
from piper.core.database import get_db
from piper.core.errors import AuthorizationError, NotFoundError, ValidationError
from piper.core.security import ADMIN_ROLES, UserRole
from piper.core.timeutil import start_of_day, utcnow
from piper.middleware.rate_limit import get_client_ip
from piper.models.analytics import AnalyticsEvent
from piper.models.audit import AuditLog
from piper.models.campaign import Campaign
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.models.user import User
from piper.services.audit import AuditAction, create_audit_log
from piper.services.auth import AuthService
from piper.services.pagination import paginate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

require_admin = require_role(UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)


# ============================================================================
# 请求/响应模型
# ============================================================================

class UserAdminUpdate(BaseModel):
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None


class AuditLogResponse(BaseModel):
    id: UUID
    actor_id: Optional[UUID] = None
    action: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


async def _count(db: AsyncSession, column, *criteria) -> int:
    stmt = select(func.count(column))
    if criteria:
        stmt = stmt.where(*criteria)
    result = await db.execute(stmt)
    return result.scalar() or 0


# ============================================================================
# Dashboard
# ============================================================================

@router.get("/dashboard")
async def get_dashboard(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """
    获取 Dashboard 数据

    返回用户、通讯、订阅者、活动的总量以及今日 / 本周活动量
    """
    now = utcnow()
    today_start = start_of_day(now)
    week_start = today_start - timedelta(days=7)

    # ========== 总量 ==========
    totals = {
        "users": await _count(db, User.id),
        "active_users": await _count(db, User.id, User.is_active.is_(True)),
        "newsletters": await _count(db, Newsletter.id),
        "subscribers": await _count(db, Subscriber.id),
        "active_subscribers": await _count(db, Subscriber.id, Subscriber.status == "active"),
        "campaigns": await _count(db, Campaign.id),
        "campaigns_sent": await _count(db, Campaign.id, Campaign.status == "sent"),
    }

    # ========== 活动量 ==========
    activity = {}
    for label, since in (("today", today_start), ("week", week_start)):
        activity[label] = {
            "new_users": await _count(db, User.id, User.created_at >= since),
            "active_users": await _count(db, User.id, User.last_login_at >= since),
            "new_subscribers": await _count(db, Subscriber.id, Subscriber.created_at >= since),
            "campaigns_sent": await _count(db, Campaign.id, Campaign.completed_at >= since),
            "events": await _count(db, AnalyticsEvent.id, AnalyticsEvent.created_at >= since),
        }

    return {"totals": totals, "activity": activity, "generated_at": now.isoformat()}


# ============================================================================
# 用户管理
# ============================================================================

@router.get("/users")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=200),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    stmt = select(User)
    if search:
        stmt = stmt.where(User.email.like(f"%{search.strip().lower()}%"))
    result = await paginate(db, stmt.order_by(User.created_at.desc()), page, limit)
    return {
        "users": [UserResponse.model_validate(u) for u in result.items],
        "pagination": result.meta(),
    }


@router.patch("/users/{user_id}")
async def update_user(
    user_id: UUID,
    body: UserAdminUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """
    修改用户角色或启用状态

    - 只有 super_admin 可以授予或撤销管理员角色
    - 不能修改自己的账号
    """
    if body.role is None and body.is_active is None:
        raise ValidationError("Nothing to update")
    if user_id == admin.id:
        raise AuthorizationError("Administrators cannot modify their own account")

    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    touches_admin = (body.role is not None and body.role.value in ADMIN_ROLES) or user.role in ADMIN_ROLES
    if touches_admin and admin.role != UserRole.SUPER_ADMIN.value:
        raise AuthorizationError("Only super administrators can manage administrator accounts")

    changes: Dict[str, Any] = {}
    if body.role is not None and body.role.value != user.role:
        changes["role"] = {"from": user.role, "to": body.role.value}
        user.role = body.role.value
    if body.is_active is not None and body.is_active != user.is_active:
        changes["is_active"] = {"from": user.is_active, "to": body.is_active}
        user.is_active = body.is_active
        if not body.is_active:
            await AuthService(db).revoke_all_sessions(user.id)

    if changes:
        create_audit_log(
            db, AuditAction.USER_UPDATED, actor_id=admin.id, target_type="user",
            target_id=user.id, details=changes, ip_address=get_client_ip(request),
        )
        logger.info(f"Admin {admin.id} updated user {user.id}: {sorted(changes)}")
    await db.commit()
    await db.refresh(user)
    return {"user": UserResponse.model_validate(user)}


# ============================================================================
# 审计日志
# ============================================================================

@router.get("/audit-logs")
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    action: Optional[str] = None,
    actor_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
):
    stmt = select(AuditLog)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if actor_id:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    result = await paginate(db, stmt.order_by(AuditLog.created_at.desc()), page, limit)
    return {
        "audit_logs": [AuditLogResponse.model_validate(a) for a in result.items],
        "pagination": result.meta(),
    }
