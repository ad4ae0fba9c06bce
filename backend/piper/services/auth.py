"""认证服务 - 注册、登录、令牌轮换、登出、修改密码"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.errors import AuthenticationError, AuthorizationError, ConflictError, ValidationError
from piper.core.security import (
    PIIMasker,
    create_access_token,
    hash_password,
    hash_token,
    new_jti,
    new_refresh_token,
    verify_password,
)
from piper.core.timeutil import utcnow
from piper.models.user import User, UserSession
from piper.services.audit import AuditAction, create_audit_log
from piper.services.consent_service import consent_service

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class TokenPair:
    """访问令牌 + 刷新令牌"""
    token: str
    refresh_token: str
    expires_at: datetime
    session_id: UUID

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_at": self.expires_at.isoformat(),
        }


class AuthService:
    """认证服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def _issue_session(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """创建登录会话并签发令牌"""
        jti = new_jti()
        refresh_token = new_refresh_token()
        session = UserSession(
            id=uuid4(),
            user_id=user.id,
            access_jti=jti,
            refresh_token_hash=hash_token(refresh_token),
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
            expires_at=utcnow() + timedelta(days=settings.refresh_expire_days),
        )
        self.db.add(session)

        token, expires_at = create_access_token(user.id, session.id, jti, user.role)
        return TokenPair(token, refresh_token, expires_at, session.id)

    async def register(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        consents: Optional[Dict[str, bool]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """
        注册新用户

        Args:
            email: 邮箱
            password: 明文密码（已通过强度校验）
            display_name: 显示名称
            consents: 同意项 {consent_type: is_agreed}，提供时 terms 与 privacy 必须同意

        Raises:
            ConflictError: 邮箱已注册
            ValidationError: 未同意必需条款
        """
        email = email.strip().lower()

        if consents is not None:
            missing = [c for c in consent_service.REQUIRED_TYPES if not consents.get(c)]
            if missing:
                raise ValidationError(
                    "Required consents were not given",
                    validation_errors=[
                        {"field": f"consents.{c}", "message": "Consent is required", "type": "value_error"}
                        for c in missing
                    ],
                )
            for consent_type in consents:
                consent_service.validate_type(consent_type)

        if await self.get_user_by_email(email):
            raise ConflictError("Email is already registered")

        user = User(
            id=uuid4(),
            email=email,
            password_hash=hash_password(password),
            display_name=display_name or email.split("@")[0],
            role="user",
            is_active=True,
            last_login_at=utcnow(),
        )
        self.db.add(user)
        await self.db.flush()

        if consents:
            await consent_service.record_all_consents(
                self.db, user.id, consents, ip_address, user_agent, commit=False
            )

        tokens = await self._issue_session(user, ip_address, user_agent)
        create_audit_log(
            self.db, AuditAction.USER_REGISTERED, actor_id=user.id,
            target_type="user", target_id=user.id, ip_address=ip_address,
        )
        await self.db.commit()
        await self.db.refresh(user)

        logger.info(f"User registered: {PIIMasker.mask_email(email)}")
        return user, tokens

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """
        邮箱密码登录

        Raises:
            AuthenticationError: 邮箱或密码错误（不区分两者）
            AuthorizationError: 账号已停用
        """
        user = await self.get_user_by_email(email)

        if not user or not verify_password(password, user.password_hash):
            logger.warning(
                f"Failed login for {PIIMasker.mask_email(email.strip().lower())} "
                f"from {PIIMasker.mask_ip(ip_address)}"
            )
            raise AuthenticationError("Invalid email or password")

        if not user.is_active:
            raise AuthorizationError("Account is suspended")

        user.last_login_at = utcnow()
        tokens = await self._issue_session(user, ip_address, user_agent)
        await self.db.commit()
        await self.db.refresh(user)
        return user, tokens

    async def refresh(self, refresh_token: str) -> tuple[User, TokenPair]:
        """
        用刷新令牌换取新的令牌对

        旧访问令牌与旧刷新令牌同时失效
        """
        result = await self.db.execute(
            select(UserSession).where(UserSession.refresh_token_hash == hash_token(refresh_token))
        )
        session = result.scalar_one_or_none()
        if not session or not session.is_active:
            raise AuthenticationError("Invalid or expired refresh token")

        user = await self.db.get(User, session.user_id)
        if not user:
            raise AuthenticationError("Invalid or expired refresh token")
        if not user.is_active:
            raise AuthorizationError("Account is suspended")

        jti = new_jti()
        new_refresh = new_refresh_token()
        session.access_jti = jti
        session.refresh_token_hash = hash_token(new_refresh)

        token, expires_at = create_access_token(user.id, session.id, jti, user.role)
        await self.db.commit()
        return user, TokenPair(token, new_refresh, expires_at, session.id)

    async def logout(self, session: UserSession) -> None:
        """撤销当前会话"""
        session.revoked_at = utcnow()
        await self.db.commit()

    async def revoke_all_sessions(self, user_id: UUID, except_session_id: Optional[UUID] = None) -> None:
        stmt = (
            update(UserSession)
            .where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
            .values(revoked_at=utcnow())
        )
        if except_session_id:
            stmt = stmt.where(UserSession.id != except_session_id)
        await self.db.execute(stmt)

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        current_session_id: UUID,
        ip_address: Optional[str] = None,
    ) -> None:
        """
        修改密码，其他会话全部失效

        Raises:
            AuthenticationError: 当前密码错误
            ValidationError: 新密码与旧密码相同
        """
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        if current_password == new_password:
            raise ValidationError(
                "New password must differ from the current password",
                validation_errors=[{"field": "new_password", "message": "Must differ from current password", "type": "value_error"}],
            )

        user.password_hash = hash_password(new_password)
        await self.revoke_all_sessions(user.id, except_session_id=current_session_id)
        create_audit_log(
            self.db, AuditAction.PASSWORD_CHANGED, actor_id=user.id,
            target_type="user", target_id=user.id, ip_address=ip_address,
        )
        await self.db.commit()
