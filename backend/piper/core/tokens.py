"""公开链接令牌

- 订阅确认 / 退订：带 purpose 声明的 JWT
- 打开 / 点击追踪：Fernet 加密令牌，内含投递 ID 与目标 URL，无法伪造
"""

import base64
import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from uuid import UUID

import jwt
from cryptography.fernet import Fernet, InvalidToken

from piper.core.config import get_settings
from piper.core.errors import ValidationError

logger = logging.getLogger(__name__)
settings = get_settings()

PURPOSE_CONFIRM = "subscribe_confirm"
PURPOSE_UNSUBSCRIBE = "unsubscribe"

CONFIRM_TOKEN_DAYS = 7
UNSUBSCRIBE_TOKEN_DAYS = 365


# ============================================================================
# 订阅令牌
# ============================================================================

def create_subscriber_token(
    subscriber_id: UUID,
    purpose: str,
    days: Optional[int] = None,
    campaign_id: Optional[UUID] = None,
) -> str:
    """生成订阅者公开操作令牌（退订令牌可携带来源活动）"""
    if days is None:
        days = CONFIRM_TOKEN_DAYS if purpose == PURPOSE_CONFIRM else UNSUBSCRIBE_TOKEN_DAYS
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(subscriber_id),
        "purpose": purpose,
        "iat": now,
        "exp": now + timedelta(days=days),
    }
    if campaign_id:
        payload["cid"] = str(campaign_id)
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_subscriber_token(token: str, purpose: str) -> Dict[str, Optional[UUID]]:
    """
    解析订阅者令牌

    Raises:
        ValidationError: 令牌无效、过期或用途不符
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise ValidationError("Link has expired")
    except jwt.PyJWTError:
        raise ValidationError("Invalid link")

    if payload.get("purpose") != purpose:
        raise ValidationError("Invalid link")
    try:
        return {
            "subscriber_id": UUID(payload["sub"]),
            "campaign_id": UUID(payload["cid"]) if payload.get("cid") else None,
        }
    except (KeyError, ValueError):
        raise ValidationError("Invalid link")


# ============================================================================
# 追踪令牌
# ============================================================================

def _derive_fernet_key(secret: str) -> bytes:
    """由 JWT 密钥派生 Fernet 密钥（未配置 ENCRYPTION_KEY 时）"""
    digest = hashlib.sha256(f"piper-tracking:{secret}".encode()).digest()
    return base64.urlsafe_b64encode(digest)


class TrackingTokenCodec:
    """追踪令牌编解码"""

    def __init__(self, encryption_key: Optional[str] = None):
        key = encryption_key or settings.encryption_key
        if key:
            try:
                self.cipher = Fernet(key.encode() if isinstance(key, str) else key)
            except ValueError as e:
                logger.error(f"Failed to initialize tracking cipher: {e}")
                raise ValueError("Invalid encryption key")
        else:
            self.cipher = Fernet(_derive_fernet_key(settings.jwt_secret_key))

    def encode(self, delivery_id: UUID, url: Optional[str] = None) -> str:
        data: Dict[str, Any] = {"d": str(delivery_id)}
        if url:
            data["u"] = url
        return self.cipher.encrypt(json.dumps(data, separators=(",", ":")).encode()).decode()

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        """解析令牌，无效返回 None"""
        try:
            raw = self.cipher.decrypt(token.encode())
            data = json.loads(raw)
            return {"delivery_id": UUID(data["d"]), "url": data.get("u")}
        except (InvalidToken, ValueError, KeyError, TypeError):
            return None


tracking_codec = TrackingTokenCodec()
