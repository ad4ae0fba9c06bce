"""安全模块 - 密码哈希、JWT、角色、IDOR 防护、PII 遮罩"""

import hashlib
import hmac
import re
import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

import jwt

from piper.core.config import get_settings
from piper.core.errors import AuthenticationError, AuthorizationError

settings = get_settings()

PBKDF2_ITERATIONS = 100000


# ============================================================================
# 密码
# ============================================================================

def hash_password(password: str) -> str:
    """哈希密码（PBKDF2-SHA256，格式 salt$hash）"""
    salt = secrets.token_hex(16)
    pwd_hash = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return f"{salt}${pwd_hash.hex()}"


def verify_password(password: str, hashed: str) -> bool:
    """验证密码"""
    if not hashed or "$" not in hashed:
        return False
    salt, pwd_hash = hashed.split("$", 1)
    new_hash = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS)
    return hmac.compare_digest(new_hash.hex(), pwd_hash)


PASSWORD_MIN_LENGTH = 8


def validate_password_strength(password: str) -> List[str]:
    """
    检查密码强度

    Returns:
        错误列表，为空表示通过
    """
    errors = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain a digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        errors.append("Password must contain a special character")
    return errors


def hash_token(token: str) -> str:
    """对不透明令牌（refresh token）取摘要后存储"""
    return hashlib.sha256(token.encode()).hexdigest()


# ============================================================================
# JWT
# ============================================================================

def create_access_token(user_id: UUID, session_id: UUID, jti: str, role: str) -> tuple[str, datetime]:
    """
    创建访问令牌

    Returns:
        (token, expires_at)
    """
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "sub": str(user_id),
        "sid": str(session_id),
        "jti": jti,
        "role": role,
        "iat": now,
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return token, expires_at


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    解析访问令牌

    Raises:
        AuthenticationError: 令牌过期或无效
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.PyJWTError:
        raise AuthenticationError("Could not validate credentials")

    if not payload.get("sub") or not payload.get("sid") or not payload.get("jti"):
        raise AuthenticationError("Invalid token payload")
    return payload


def new_jti() -> str:
    return secrets.token_hex(16)


def new_refresh_token() -> str:
    return secrets.token_urlsafe(48)


# ============================================================================
# 角色与资源所有权
# ============================================================================

class UserRole(str, Enum):
    """用户角色枚举"""
    USER = "user"                 # 普通用户 - 只能访问自己的资源
    ADMIN = "admin"               # 管理员 - 后台访问
    SUPER_ADMIN = "super_admin"   # 超级管理员 - 可授予管理员角色


ADMIN_ROLES = (UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value)


class IDORProtection:
    """IDOR 防护服务"""

    @staticmethod
    def check_resource_ownership(user_id: UUID, resource_owner_id: UUID) -> None:
        """
        检查资源所有权

        Args:
            user_id: 当前用户 ID
            resource_owner_id: 资源所有者 ID

        Raises:
            AuthorizationError: 如果用户无权访问资源
        """
        if user_id != resource_owner_id:
            raise AuthorizationError("Access denied: You can only access your own resources")


# ============================================================================
# PII 遮罩
# ============================================================================

class PIIMasker:
    """PII 遮罩服务"""

    EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

    @staticmethod
    def mask_email(email: str) -> str:
        """
        遮罩邮箱地址

        保留首字母和 @ 后的域名，中间用 * 替代
        例如: john.doe@example.com -> j*******@example.com
        """
        if not email or "@" not in email:
            return email

        local, domain = email.rsplit("@", 1)
        if len(local) <= 1:
            masked_local = "*"
        else:
            masked_local = local[0] + "*" * (len(local) - 1)
        return f"{masked_local}@{domain}"

    @staticmethod
    def mask_ip(ip: Optional[str]) -> Optional[str]:
        """
        遮罩 IP 地址

        IPv4: 保留前两段，例如 192.168.1.100 -> 192.168.*.*
        """
        if not ip:
            return ip

        parts = ip.split(".")
        if len(parts) == 4:
            return f"{parts[0]}.{parts[1]}.*.*"

        if ":" in ip:
            parts = ip.split(":")
            half = len(parts) // 2
            return ":".join(parts[:half] + ["*"] * (len(parts) - half))

        return ip

    @staticmethod
    def mask_text(text: str) -> str:
        """遮罩文本中的所有邮箱"""
        if not text:
            return text
        return PIIMasker.EMAIL_PATTERN.sub(lambda m: PIIMasker.mask_email(m.group(0)), text)
