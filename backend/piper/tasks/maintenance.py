"""数据保留清理任务"""

from typing import Dict

from celery.utils.log import get_task_logger

from piper.core.celery_app import celery_app
from piper.services.privacy import PrivacyService
from piper.tasks._runner import run_with_session

logger = get_task_logger(__name__)


@celery_app.task
def purge_expired_data() -> Dict[str, int]:
    """清理过期会话、超出保留期的事件与未确认订阅者"""
    purged = run_with_session(lambda db: PrivacyService(db).purge_expired())
    logger.info(f"Purged expired data: {purged}")
    return purged
