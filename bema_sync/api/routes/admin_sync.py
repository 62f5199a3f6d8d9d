"""
Admin Sync API - scheduling, job control and run history.

Routes:
- POST /admin/sync/schedule - Run now (custom) or register a periodic sync
- POST /admin/sync/jobs - Submit a background sync job
- GET /admin/sync/jobs/{job_id} - Poll a submitted job
- POST /admin/sync/cancel - Stop running syncs and clear the lock
- GET /admin/sync/status - Overall status, failed jobs, stats, next runs
- GET /admin/sync/campaigns - Known campaigns
- POST /admin/sync/campaigns/refresh - Create campaigns for every album in the store
- GET /admin/sync/campaigns/{campaign}/groups - Expected tier groups and which are missing
- POST /admin/sync/campaigns/{campaign}/transitions - Reconcile one campaign now
- POST /admin/sync/campaign-transitions - Move qualified subscribers between campaigns
- GET /admin/sync/campaign-transitions - Recent campaign-to-campaign moves
- GET /admin/sync/runs - Daily run log
- GET /admin/sync/runs/{run_id} - Per-campaign payload of one run

Blocking handlers are plain ``def`` so FastAPI runs them in its threadpool.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from bema_sync.api.dependencies import (
    get_campaign_service,
    get_scheduler,
    get_sync_log,
    get_transition_service,
)
from bema_sync.api.middleware.error_handler import ConflictException, NotFoundException
from bema_sync.jobs.scheduler import FREQUENCIES, SyncScheduler
from bema_sync.lib.config_flags import TransitionRule
from bema_sync.lib.errors import InvalidFrequency
from bema_sync.lib.logging import get_logger
from bema_sync.services.campaign_service import CampaignService
from bema_sync.services.campaign_transition_service import CampaignTransitionService
from bema_sync.services.sync_log_service import SyncLogService
from bema_sync.services.tier_rules import parse_campaign_code


logger = get_logger(__name__)
router = APIRouter(prefix="/admin/sync", tags=["admin_sync"])


# Request/Response Models
class ScheduleRequest(BaseModel):
    frequency: str = Field(..., description="hourly, daily, weekly or custom")
    campaigns: List[str] = Field(default_factory=list, description="Campaign names, e.g. 2025_ETB_EOE")


class ScheduleResponse(BaseModel):
    scheduled: bool = Field(..., description="Custom: run completed. Periodic: schedule registered")
    frequency: str


class JobRequest(BaseModel):
    job_type: str = Field("custom", description="hourly, daily, weekly or custom")
    campaigns: List[str] = Field(..., min_length=1)


class JobSubmittedResponse(BaseModel):
    job_id: str


class JobStatusResponse(BaseModel):
    job_id: str
    type: str
    status: str
    attempts: int
    campaigns: List[str]
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    scheduled_for: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class CancelResponse(BaseModel):
    status: str


class CampaignResponse(BaseModel):
    id: int
    name: str
    product_id: Optional[int] = None
    status: str


class CampaignTransitionRequest(BaseModel):
    source_campaign: str
    destination_campaign: str
    rules: Optional[List[TransitionRule]] = Field(
        default=None,
        description="Transition matrix; the built-in matrix when omitted",
    )


class CampaignTransitionResponse(BaseModel):
    transition_id: Optional[int] = None
    status: Optional[str] = None
    subscriber_count: int


class SyncRunResponse(BaseModel):
    id: int
    sync_date: str
    status: str
    synced_subscribers: int
    notes: Optional[str] = None


# Routes
@router.post("/schedule", response_model=ScheduleResponse)
def schedule_sync(
    body: ScheduleRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> ScheduleResponse:
    """
    Schedule a sync.

    ``custom`` runs synchronously and reports whether it completed; a run
    skipped because another sync holds the lock reports ``scheduled: false``.
    """
    logger.info(f"POST /admin/sync/schedule (frequency={body.frequency}, campaigns={body.campaigns})")
    scheduled = scheduler.schedule_sync(body.frequency, body.campaigns)
    return ScheduleResponse(scheduled=scheduled, frequency=body.frequency.strip().lower())


@router.post("/jobs", response_model=JobSubmittedResponse, status_code=202)
def submit_job(
    body: JobRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JobSubmittedResponse:
    job_type = body.job_type.strip().lower()
    if job_type not in FREQUENCIES:
        raise InvalidFrequency(body.job_type)
    for campaign in body.campaigns:
        parse_campaign_code(campaign)

    job_id = scheduler.submit_job(job_type, body.campaigns)
    logger.info(f"Submitted sync job {job_id} ({job_type})")
    return JobSubmittedResponse(job_id=job_id)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(
    job_id: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JobStatusResponse:
    job = scheduler.get_job_status(job_id)
    if job is None:
        raise NotFoundException("Sync job", job_id)
    return JobStatusResponse(**job)


@router.post("/cancel", response_model=CancelResponse)
def cancel_sync(scheduler: SyncScheduler = Depends(get_scheduler)) -> CancelResponse:
    """Stop running syncs at the next chunk boundary and force-clear the lock."""
    logger.info("POST /admin/sync/cancel")
    scheduler.cancel_sync()
    return CancelResponse(status="stopped")


@router.get("/status")
def sync_status(scheduler: SyncScheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return scheduler.get_sync_status()


@router.get("/campaigns", response_model=List[CampaignResponse])
def list_campaigns(campaigns: CampaignService = Depends(get_campaign_service)) -> List[CampaignResponse]:
    return [
        CampaignResponse(id=c.id, name=c.name, product_id=c.product_id, status=c.status.value)
        for c in campaigns.list_campaigns()
    ]


@router.post("/campaigns/refresh")
def refresh_campaigns(campaigns: CampaignService = Depends(get_campaign_service)) -> Dict[str, Any]:
    """Create or refresh a campaign for every album in the commerce store."""
    names = campaigns.sync_album_campaigns()
    return {"total": len(names), "campaigns": names}


@router.get("/campaigns/{campaign}/groups")
def campaign_group_report(
    campaign: str,
    campaigns: CampaignService = Depends(get_campaign_service),
) -> Dict[str, Any]:
    """Expected tier groups of a campaign and which of them have not been seen."""
    parse_campaign_code(campaign)
    return campaigns.group_report(campaign)


@router.post("/campaigns/{campaign}/transitions", response_model=JobStatusResponse)
def process_campaign(
    campaign: str,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> JobStatusResponse:
    """
    Reconcile one campaign now and return the finished job, including the
    per-campaign counters.

    Returns 409 when another sync holds the lock.
    """
    parse_campaign_code(campaign)
    logger.info(f"POST /admin/sync/campaigns/{campaign}/transitions")

    job = scheduler.process_tier_transitions(campaign)
    if job is None:
        raise ConflictException("Sync already running", details={"campaign": campaign})
    return JobStatusResponse(**job)


@router.post("/campaign-transitions", response_model=CampaignTransitionResponse)
def transition_campaigns(
    body: CampaignTransitionRequest,
    scheduler: SyncScheduler = Depends(get_scheduler),
) -> CampaignTransitionResponse:
    parse_campaign_code(body.source_campaign)
    parse_campaign_code(body.destination_campaign)

    result = scheduler.transition_campaigns(body.source_campaign, body.destination_campaign, body.rules)
    if result is None:
        raise ConflictException("Sync already running", details={"source_campaign": body.source_campaign})
    return CampaignTransitionResponse(**result)


@router.get("/campaign-transitions")
def list_campaign_transitions(
    limit: int = Query(50, ge=1, le=500),
    transitions: CampaignTransitionService = Depends(get_transition_service),
) -> List[Dict[str, Any]]:
    return transitions.list_transitions(limit)


@router.get("/runs", response_model=List[SyncRunResponse])
def list_runs(sync_log: SyncLogService = Depends(get_sync_log)) -> List[SyncRunResponse]:
    return [SyncRunResponse(**run) for run in sync_log.list_runs()]


@router.get("/runs/{run_id}")
def get_run(run_id: int, sync_log: SyncLogService = Depends(get_sync_log)) -> Dict[str, Any]:
    payload = sync_log.get_payload(run_id)
    if payload is None:
        raise NotFoundException("Sync run", str(run_id))
    return {"id": run_id, "campaigns": payload}
