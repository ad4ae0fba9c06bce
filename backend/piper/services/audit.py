"""审计日志服务"""

import uuid
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.timeutil import utcnow
from piper.models.audit import AuditLog


class AuditAction(str, Enum):
    """审计操作类型"""
    USER_REGISTERED = "USER_REGISTERED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    USER_UPDATED = "USER_UPDATED"
    DATA_EXPORTED = "DATA_EXPORTED"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    CAMPAIGN_SENT = "CAMPAIGN_SENT"
    SUBSCRIBERS_IMPORTED = "SUBSCRIBERS_IMPORTED"


def create_audit_log(
    db: AsyncSession,
    action: AuditAction,
    actor_id: Optional[uuid.UUID] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> AuditLog:
    """创建审计日志（由调用方提交）"""
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action.value,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details,
        ip_address=ip_address,
        created_at=utcnow(),
    )
    db.add(audit_log)
    return audit_log
