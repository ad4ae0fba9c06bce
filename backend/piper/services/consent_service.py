"""用户同意服务"""

from typing import Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from piper.core.config import get_settings
from piper.core.errors import ValidationError
from piper.core.timeutil import utcnow
from piper.models.user import ConsentRecord

settings = get_settings()


class ConsentService:
    """用户同意服务"""

    # 当前版本号
    CURRENT_VERSION = settings.consent_version

    # 同意类型
    CONSENT_TYPES = {
        "terms": "Terms of service",
        "privacy": "Privacy policy",
        "marketing": "Marketing communications",
        "analytics": "Usage analytics",
    }

    REQUIRED_TYPES = ("terms", "privacy")

    def validate_type(self, consent_type: str) -> None:
        if consent_type not in self.CONSENT_TYPES:
            raise ValidationError(
                f"Invalid consent type: {consent_type}",
                validation_errors=[{
                    "field": "consent_type",
                    "message": f"Must be one of: {', '.join(self.CONSENT_TYPES)}",
                    "type": "value_error",
                }],
            )

    async def record_consent(
        self,
        db: AsyncSession,
        user_id: UUID,
        consent_type: str,
        is_agreed: bool,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        version: Optional[str] = None,
        commit: bool = True,
    ) -> ConsentRecord:
        """
        记录用户同意

        Args:
            user_id: 用户 ID
            consent_type: 同意类型
            is_agreed: 是否同意
            ip_address: IP 地址
            user_agent: User Agent
            version: 版本号（默认使用当前版本）
            commit: 是否立即提交

        Returns:
            ConsentRecord 对象
        """
        self.validate_type(consent_type)

        consent = ConsentRecord(
            id=uuid4(),
            user_id=user_id,
            consent_type=consent_type,
            is_agreed=is_agreed,
            version=version or self.CURRENT_VERSION,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )

        db.add(consent)
        if commit:
            await db.commit()
            await db.refresh(consent)
        else:
            await db.flush()

        return consent

    async def record_all_consents(
        self,
        db: AsyncSession,
        user_id: UUID,
        consents: Dict[str, bool],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        commit: bool = True,
    ) -> List[ConsentRecord]:
        """批量记录用户同意 {consent_type: is_agreed}"""
        records = []
        for consent_type, is_agreed in consents.items():
            records.append(await self.record_consent(
                db=db,
                user_id=user_id,
                consent_type=consent_type,
                is_agreed=is_agreed,
                ip_address=ip_address,
                user_agent=user_agent,
                commit=False,
            ))
        if commit:
            await db.commit()
        return records

    async def get_user_consents(
        self,
        db: AsyncSession,
        user_id: UUID,
        consent_type: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[ConsentRecord]:
        """获取用户的同意记录（新的在前）"""
        query = select(ConsentRecord).where(ConsentRecord.user_id == user_id)
        if not include_revoked:
            query = query.where(ConsentRecord.revoked_at.is_(None))
        if consent_type:
            query = query.where(ConsentRecord.consent_type == consent_type)

        query = query.order_by(ConsentRecord.created_at.desc())
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_consent_status(self, db: AsyncSession, user_id: UUID) -> Dict[str, dict]:
        """每种同意类型的当前状态"""
        records = await self.get_user_consents(db, user_id)
        status: Dict[str, dict] = {
            consent_type: {"agreed": False, "version": None, "updated_at": None}
            for consent_type in self.CONSENT_TYPES
        }
        # records 已按时间倒序，只取每类最新一条
        for record in records:
            entry = status.get(record.consent_type)
            if entry is not None and entry["updated_at"] is None:
                entry.update(
                    agreed=record.is_agreed,
                    version=record.version,
                    updated_at=record.created_at.isoformat(),
                )
        return status

    async def revoke_consent(self, db: AsyncSession, user_id: UUID, consent_type: str) -> bool:
        """
        撤销用户同意

        Returns:
            True if revoked, False if not found
        """
        self.validate_type(consent_type)
        records = await self.get_user_consents(db, user_id, consent_type)
        if not records:
            return False

        now = utcnow()
        for record in records:
            record.revoked_at = now
        await db.commit()
        return True


# 全局实例
consent_service = ConsentService()
