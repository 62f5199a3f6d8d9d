"""
SQLAlchemy models package.
Import all models here to ensure they're registered with Base.metadata.
"""
from bema_sync.models.campaign import Campaign, CampaignStatus
from bema_sync.models.subscriber import Subscriber, SubscriberStatus
from bema_sync.models.group import Group
from bema_sync.models.field import CampaignField
from bema_sync.models.campaign_subscriber import CampaignSubscriber
from bema_sync.models.transition import TransitionRecord, TransitionStatus, TransitionSubscriber
from bema_sync.models.sync_run import SyncRun
from bema_sync.models.sync_job import SyncJob, SyncJobType, SyncJobStatus
from bema_sync.models.state import StateEntry, SyncLock

__all__ = [
    "Campaign",
    "CampaignStatus",
    "Subscriber",
    "SubscriberStatus",
    "Group",
    "CampaignField",
    "CampaignSubscriber",
    "TransitionRecord",
    "TransitionStatus",
    "TransitionSubscriber",
    "SyncRun",
    "SyncJob",
    "SyncJobType",
    "SyncJobStatus",
    "StateEntry",
    "SyncLock",
]
