"""
API dependencies for FastAPI dependency injection.

The service graph is built once per application (see ``create_app``) and
stored on ``app.state.container``; routes pull the pieces they need from it.
"""
from fastapi import Request

from bema_sync.container import Container
from bema_sync.jobs.scheduler import SyncScheduler
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.services.campaign_service import CampaignService
from bema_sync.services.campaign_transition_service import CampaignTransitionService
from bema_sync.services.sync_log_service import SyncLogService


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_scheduler(request: Request) -> SyncScheduler:
    return get_container(request).scheduler


def get_sync_log(request: Request) -> SyncLogService:
    return get_container(request).sync_log


def get_campaign_service(request: Request) -> CampaignService:
    return get_container(request).campaigns


def get_transition_service(request: Request) -> CampaignTransitionService:
    return get_container(request).transitions


def get_metrics(request: Request) -> MetricsCollector:
    return get_container(request).metrics
