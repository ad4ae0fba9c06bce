"""Celery 配置"""

from celery import Celery
from celery.schedules import crontab

from piper.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "piper_tasks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["piper.tasks.campaigns", "piper.tasks.maintenance"],
)

# Celery 配置
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30分钟超时（大批量投递）
    task_soft_time_limit=1700,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_hijack_root_logger=False,
)

# 定时任务
celery_app.conf.beat_schedule = {
    "dispatch-scheduled-campaigns": {
        "task": "piper.tasks.campaigns.dispatch_scheduled_campaigns",
        "schedule": 60.0,
    },
    "purge-expired-data": {
        "task": "piper.tasks.maintenance.purge_expired_data",
        "schedule": crontab(hour=3, minute=0),
    },
}

