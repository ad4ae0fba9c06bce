"""活动投递任务"""

from typing import List
from uuid import UUID

from celery.utils.log import get_task_logger
from kombu.exceptions import KombuError
from sqlalchemy.exc import SQLAlchemyError

from piper.core.celery_app import celery_app
from piper.services.campaign import CampaignService
from piper.services.delivery import CampaignDeliveryService
from piper.tasks._runner import run_with_session

logger = get_task_logger(__name__)


def queue_campaign_delivery(campaign_id: UUID) -> None:
    """将活动投递交给 worker"""
    deliver_campaign.delay(str(campaign_id))
    logger.info(f"Campaign {campaign_id} queued for delivery")


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def deliver_campaign(self, campaign_id: str) -> bool:
    """
    投递活动

    投递记录按批提交，重试时只处理剩余的 pending 记录

    Args:
        campaign_id: 活动 ID

    Returns:
        活动是否已完成
    """
    logger.info(f"Delivering campaign {campaign_id} (attempt {self.request.retries + 1})")
    try:
        return run_with_session(lambda db: CampaignDeliveryService(db).deliver(UUID(campaign_id)))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning(f"Campaign {campaign_id} delivery interrupted: {exc}")
        raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))


async def _due_and_stalled(db) -> List[UUID]:
    service = CampaignService(db)
    return await service.dispatch_due() + await service.claim_stalled()


@celery_app.task
def dispatch_scheduled_campaigns() -> List[str]:
    """启动到期的排程活动，并把停滞的发送中活动重新入队"""
    campaign_ids = run_with_session(_due_and_stalled)
    queued = []
    for campaign_id in campaign_ids:
        try:
            queue_campaign_delivery(campaign_id)
            queued.append(str(campaign_id))
        except (KombuError, OSError) as exc:
            # 未入队的活动保持 sending，超时后由下一轮重新领取
            logger.error(f"Failed to queue campaign {campaign_id}: {exc}")
    if queued:
        logger.info(f"Dispatched {len(queued)} campaigns")
    return queued
