"""用户认证 API - 注册、登录、令牌刷新、登出"""

import logging
from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.auth_deps import get_current_session, get_current_user
from piper.core.database import get_db
from piper.core.errors import ValidationError
from piper.core.sanitize import sanitize_line
from piper.core.security import PASSWORD_MIN_LENGTH, validate_password_strength
from piper.middleware.endpoint_limit import rate_limit
from piper.middleware.rate_limit import get_client_ip
from piper.models.user import User, UserSession
from piper.services.auth import AuthService, TokenPair

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# ============================================================================
# 请求/响应模型
# ============================================================================

class RegisterRequest(BaseModel):
    """注册请求"""
    email: EmailStr = Field(..., description="邮箱")
    password: str = Field(..., description="密码", min_length=PASSWORD_MIN_LENGTH, max_length=128)
    display_name: Optional[str] = Field(None, description="显示名称", max_length=100)
    consents: Optional[Dict[str, bool]] = Field(None, description="同意条款 {consent_type: is_agreed}")


class LoginRequest(BaseModel):
    """密码登录请求"""
    email: EmailStr = Field(..., description="邮箱")
    password: str = Field(..., description="密码", max_length=128)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    """用户信息"""
    id: UUID
    email: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    role: str
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


def password_errors(password: str, field: str = "password") -> None:
    """
    密码强度校验

    Raises:
        ValidationError: 密码强度不足
    """
    problems = validate_password_strength(password)
    if problems:
        raise ValidationError(
            "Password does not meet requirements",
            validation_errors=[{"field": field, "message": p, "type": "value_error"} for p in problems],
        )


def auth_payload(user: User, tokens: TokenPair) -> dict:
    return {
        "user": UserResponse.model_validate(user).model_dump(mode="json"),
        **tokens.to_dict(),
    }


# ============================================================================
# API 端点
# ============================================================================

@router.post("/register", status_code=status.HTTP_201_CREATED)
@rate_limit(max_requests=10, window=60)
async def register(
    request: Request,
    body: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    注册新账号

    提供 consents 时必须同意 terms 与 privacy
    """
    password_errors(body.password)
    display_name = sanitize_line(body.display_name) if body.display_name else None

    user, tokens = await AuthService(db).register(
        email=body.email,
        password=body.password,
        display_name=display_name,
        consents=body.consents,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return auth_payload(user, tokens)


@router.post("/login")
@rate_limit(max_requests=10, window=60)
async def login(
    request: Request,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """使用邮箱 + 密码登录"""
    user, tokens = await AuthService(db).login(
        email=body.email,
        password=body.password,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return auth_payload(user, tokens)


@router.post("/refresh")
@rate_limit(max_requests=30, window=60)
async def refresh(
    request: Request,
    body: RefreshRequest,
    db: AsyncSession = Depends(get_db),
):
    """轮换令牌对"""
    user, tokens = await AuthService(db).refresh(body.refresh_token)
    return auth_payload(user, tokens)


@router.post("/logout")
async def logout(
    session: UserSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    await AuthService(db).logout(session)
    return {"message": "Logged out"}


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return {"user": UserResponse.model_validate(user)}
