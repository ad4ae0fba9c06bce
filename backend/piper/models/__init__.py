"""数据模型模块"""

from piper.models.user import User, UserSession, ConsentRecord
from piper.models.newsletter import Newsletter
from piper.models.subscriber import Subscriber
from piper.models.campaign import Campaign, CampaignDelivery
from piper.models.content import Content
from piper.models.analytics import AnalyticsEvent
from piper.models.audit import AuditLog

__all__ = [
    "User",
    "UserSession",
    "ConsentRecord",
    "Newsletter",
    "Subscriber",
    "Campaign",
    "CampaignDelivery",
    "Content",
    "AnalyticsEvent",
    "AuditLog",
]
