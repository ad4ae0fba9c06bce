"""用户资料 API"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.api.auth import UserResponse, password_errors
from piper.core.auth_deps import get_current_session, get_current_user
from piper.core.database import get_db
from piper.core.errors import ValidationError
from piper.core.sanitize import sanitize_line, sanitize_text
from piper.middleware.endpoint_limit import rate_limit
from piper.middleware.rate_limit import get_client_ip
from piper.models.user import User, UserSession
from piper.services.audit import AuditAction, create_audit_log
from piper.services.auth import AuthService

router = APIRouter(prefix="/api/user", tags=["user"])


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=1000)


class PasswordChange(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


@router.get("/profile")
async def get_profile(user: User = Depends(get_current_user)):
    return {"user": UserResponse.model_validate(user)}


@router.put("/profile")
async def update_profile(
    body: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """更新资料（输入会被清洗）"""
    changed = []
    if body.display_name is not None:
        display_name = sanitize_line(body.display_name)
        if not display_name:
            raise ValidationError(
                "Display name cannot be empty",
                validation_errors=[{"field": "display_name", "message": "Cannot be empty after sanitization", "type": "value_error"}],
            )
        user.display_name = display_name
        changed.append("display_name")
    if body.bio is not None:
        user.bio = sanitize_text(body.bio) or None
        changed.append("bio")

    if changed:
        create_audit_log(
            db, AuditAction.USER_UPDATED, actor_id=user.id,
            target_type="user", target_id=user.id, details={"fields": changed},
        )
    await db.commit()
    await db.refresh(user)
    return {"user": UserResponse.model_validate(user)}


@router.put("/password")
@rate_limit(max_requests=5, window=300)
async def change_password(
    request: Request,
    body: PasswordChange,
    session: UserSession = Depends(get_current_session),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """修改密码，其他登录会话全部失效"""
    password_errors(body.new_password, field="new_password")
    await AuthService(db).change_password(
        user,
        body.current_password,
        body.new_password,
        current_session_id=session.id,
        ip_address=get_client_ip(request),
    )
    return {"message": "Password updated"}
