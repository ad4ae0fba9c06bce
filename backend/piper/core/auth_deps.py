"""用户认证依赖函数"""

from typing import Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.database import get_db
from piper.core.errors import AuthenticationError, AuthorizationError
from piper.core.security import decode_access_token
from piper.core.timeutil import utcnow
from piper.models.user import User, UserSession


def _parse_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Not authenticated")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthenticationError("Invalid authorization header")
    if scheme.lower() != "bearer":
        raise AuthenticationError("Invalid authentication scheme")
    return token


async def get_current_session(
    authorization: str = Header(None),
    db: AsyncSession = Depends(get_db),
) -> UserSession:
    """
    获取当前登录会话

    从 Authorization header 中解析 JWT，并确认 jti 仍是该会话当前的访问令牌
    """
    payload = decode_access_token(_parse_bearer(authorization))

    try:
        session_id = UUID(payload["sid"])
    except ValueError:
        raise AuthenticationError("Invalid token payload")

    result = await db.execute(select(UserSession).where(UserSession.id == session_id))
    session = result.scalar_one_or_none()

    if (
        not session
        or str(session.user_id) != payload["sub"]
        or session.access_jti != payload["jti"]
        or session.revoked_at is not None
        or session.expires_at <= utcnow()
    ):
        raise AuthenticationError("Session is no longer valid")

    return session


async def get_current_user(
    session: UserSession = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
) -> User:
    """获取当前登录用户（必须登录）"""
    result = await db.execute(select(User).where(User.id == session.user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found")
    if not user.is_active:
        raise AuthorizationError("Account is suspended")

    return user


async def get_current_user_id(user: User = Depends(get_current_user)) -> UUID:
    """获取当前登录用户的 ID（必须登录）"""
    return user.id


def require_role(*roles: str):
    """角色权限依赖"""
    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise AuthorizationError("Insufficient permissions")
        return user
    return role_checker
