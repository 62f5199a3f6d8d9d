"""
Sync scheduler built on APScheduler.

Reconciliation runs are dispatched from here: immediately (``custom``), on a
periodic trigger (``hourly``, ``daily``, ``weekly``), as submitted background
jobs, or as retries of failed runs. Every run goes through ``can_start``:
no run of that type may already be in progress and the single process-wide
sync lock must be acquired. The lock is always released when the run ends.

Usage:
    sync_scheduler = SyncScheduler(engine=..., lock_manager=..., ...)
    sync_scheduler.start()

    sync_scheduler.schedule_sync("daily", ["2025_ETB_EOE"])
    job_id = sync_scheduler.submit_job("custom", ["2025_ETB_EOE"])
    sync_scheduler.get_job_status(job_id)
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR
from sqlalchemy import select

from bema_sync.lib.cancellation import CancellationRegistry
from bema_sync.lib.db import SessionFactory, session_scope, utcnow
from bema_sync.lib.errors import InvalidFrequency, SyncStopped
from bema_sync.lib.logging import log_with_context, set_job_id
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.state_store import StateStore
from bema_sync.models.sync_job import SyncJob, SyncJobStatus, SyncJobType, TERMINAL_STATUSES
from bema_sync.services.campaign_transition_service import CampaignTransitionService
from bema_sync.services.health_monitor import HealthMonitor
from bema_sync.services.lock_manager import LockManager
from bema_sync.services.reconciliation_service import ReconciliationEngine

logger = logging.getLogger(__name__)


SYNC_LOCK_KEY = "bema_sync_lock"
PERIODIC_FREQUENCIES = ("hourly", "daily", "weekly")
FREQUENCIES = PERIODIC_FREQUENCIES + ("custom",)

REGISTRY_KEY = "sync_schedules"
FAILED_JOBS_KEY = "sync_failed_jobs"
FAILURES_KEY = "sync_failures"
PROGRESS_KEY = "sync_progress"
STATUS_KEY = "sync_status"
TYPE_STATUS_PREFIX = "sync_status:"

BASE_RETRY_DELAY_SECONDS = 300
MAX_RETRY_DELAY_SECONDS = 86400
FAILURE_LOG_LIMIT = 100


def retry_delay_seconds(retries: int) -> int:
    """Wait before retry number ``retries + 1`` of a failed run."""
    return min(BASE_RETRY_DELAY_SECONDS * 2 ** retries, MAX_RETRY_DELAY_SECONDS)


def compute_next_run(frequency: str, now: datetime) -> datetime:
    """
    Next run time for a periodic schedule: the next full hour, tomorrow at
    midnight, or next Monday at midnight.
    """
    if frequency == "hourly":
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == "daily":
        return midnight + timedelta(days=1)
    if frequency == "weekly":
        return midnight + timedelta(days=7 - now.weekday())
    raise InvalidFrequency(frequency)


class SchedulerManager:
    """
    Manager for APScheduler with lifecycle management.
    """

    def __init__(self):
        """Initialize scheduler manager."""
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,  # Only one instance per job
                'misfire_grace_time': 300,  # 5 minutes grace period
            }
        )

        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

        logger.info("SchedulerManager initialized")

    def _on_job_executed(self, event):
        logger.info(f"Job {event.job_id} executed (returned: {event.retval})")

    def _on_job_error(self, event):
        logger.error(
            f"Job {event.job_id} raised {event.exception.__class__.__name__}: "
            f"{event.exception}",
            exc_info=event.exception
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the scheduler."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: Whether to wait for running jobs to finish
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown")
        else:
            logger.warning("Scheduler not running")

    def add_cron_job(
        self,
        func: Callable,
        job_id: str,
        hour: Optional[int] = None,
        minute: Optional[int] = None,
        day_of_week: Optional[str] = None,
        **kwargs
    ) -> None:
        """
        Add a cron-scheduled job.

        Args:
            func: Job function
            job_id: Unique job identifier
            hour: Hour to run (0-23)
            minute: Minute to run (0-59)
            day_of_week: Day of week (mon,tue,wed,thu,fri,sat,sun)
            **kwargs: Additional APScheduler job options
        """
        trigger = CronTrigger(
            hour=hour,
            minute=minute,
            day_of_week=day_of_week,
            timezone="UTC"
        )
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        logger.info(f"Added cron job: {job_id} (hour={hour}, minute={minute}, day_of_week={day_of_week})")

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: Optional[int] = None,
        minutes: Optional[int] = None,
        hours: Optional[int] = None,
        **kwargs
    ) -> None:
        """
        Add an interval-scheduled job.

        Args:
            func: Job function
            job_id: Unique job identifier
            seconds: Interval in seconds
            minutes: Interval in minutes
            hours: Interval in hours
            **kwargs: Additional APScheduler job options
        """
        if not any([seconds, minutes, hours]):
            raise ValueError("At least one of seconds, minutes, or hours must be specified")

        trigger = IntervalTrigger(
            seconds=seconds or 0,
            minutes=minutes or 0,
            hours=hours or 0,
            timezone="UTC"
        )
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        logger.info(f"Added interval job: {job_id} (seconds={seconds}, minutes={minutes}, hours={hours})")

    def add_date_job(self, func: Callable, job_id: str, run_date: Optional[datetime] = None, **kwargs) -> None:
        """Run ``func`` once, as soon as possible unless ``run_date`` is given."""
        trigger = DateTrigger(run_date=run_date, timezone="UTC")
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True, **kwargs)
        logger.info(f"Added one-off job: {job_id}")

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)
        logger.info(f"Removed job: {job_id}")

    def get_job(self, job_id: str):
        return self.scheduler.get_job(job_id)

    def get_jobs(self) -> list:
        """Get list of scheduled jobs."""
        return self.scheduler.get_jobs()


class SyncScheduler:
    """
    Decides when reconciliation runs and guards every run with the sync lock.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        lock_manager: LockManager,
        health: HealthMonitor,
        store: StateStore,
        session_factory: SessionFactory,
        cancellations: Optional[CancellationRegistry] = None,
        transitions: Optional[CampaignTransitionService] = None,
        metrics: Optional[MetricsCollector] = None,
        manager: Optional[SchedulerManager] = None,
        lock_timeout_seconds: int = 900,
        max_execution_seconds: int = 3600,
        max_retries: int = 3,
        health_check_interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.lock_manager = lock_manager
        self.health = health
        self.store = store
        self._session_factory = session_factory
        self.cancellations = cancellations or CancellationRegistry(store)
        self.transitions = transitions
        self.metrics = metrics or MetricsCollector()
        self.manager = manager or SchedulerManager()
        self.lock_timeout_seconds = lock_timeout_seconds
        self.max_execution_seconds = max_execution_seconds
        self.max_retries = max_retries
        self.health_check_interval_seconds = health_check_interval_seconds
        self._clock = clock

    # ===== Lifecycle =====

    def start(self) -> None:
        """Register default schedules and the health check, then start APScheduler."""
        registry = self._registry()
        for frequency in ("hourly", "daily"):
            registry.setdefault(frequency, {
                "campaigns": [],
                "last_run": None,
                "next_run": compute_next_run(frequency, self._clock()).isoformat(),
                "enabled": False,
            })
        self.store.set(REGISTRY_KEY, registry)

        for frequency in registry:
            self._register_trigger(frequency)
        self.manager.add_interval_job(
            self.health_check,
            job_id="sync_health_check",
            seconds=self.health_check_interval_seconds,
        )
        self.manager.start()

    def shutdown(self, wait: bool = True) -> None:
        if self.manager.running:
            self.manager.shutdown(wait=wait)

    # ===== Scheduling =====

    def schedule_sync(self, frequency: str, campaigns: Sequence[str]) -> bool:
        """
        Run now (``custom``) or register a periodic schedule.

        Returns:
            For ``custom``: True if the run executed and completed, False if
            it was skipped because another run holds the lock, or failed.
            For periodic frequencies: True once the schedule is registered.

        Raises:
            InvalidFrequency: unknown frequency
        """
        frequency = (frequency or "").strip().lower()
        if frequency not in FREQUENCIES:
            raise InvalidFrequency(frequency)
        campaigns = list(campaigns or [])

        if frequency == "custom":
            return self.run_sync_job(SyncJobType.CUSTOM, campaigns)

        registry = self._registry()
        previous = registry.get(frequency, {})
        registry[frequency] = {
            "campaigns": campaigns,
            "last_run": previous.get("last_run"),
            "next_run": compute_next_run(frequency, self._clock()).isoformat(),
            "enabled": bool(campaigns),
        }
        self.store.set(REGISTRY_KEY, registry)
        self._register_trigger(frequency)

        log_with_context(logger, "info", "Sync scheduled", frequency=frequency, campaigns=campaigns)
        return True

    def unschedule_sync(self, frequency: str) -> bool:
        registry = self._registry()
        if registry.pop(frequency, None) is None:
            return False
        self.store.set(REGISTRY_KEY, registry)
        if self.manager.get_job(f"sync_{frequency}") is not None:
            self.manager.remove_job(f"sync_{frequency}")
        return True

    def _register_trigger(self, frequency: str) -> None:
        job_id = f"sync_{frequency}"
        if frequency == "hourly":
            self.manager.add_cron_job(self._run_scheduled, job_id, minute=0, args=[frequency])
        elif frequency == "daily":
            self.manager.add_cron_job(self._run_scheduled, job_id, hour=0, minute=0, args=[frequency])
        elif frequency == "weekly":
            self.manager.add_cron_job(self._run_scheduled, job_id, hour=0, minute=0, day_of_week="mon", args=[frequency])

    def _run_scheduled(self, frequency: str) -> bool:
        entry = self._registry().get(frequency)
        if not entry or not entry.get("enabled") or not entry.get("campaigns"):
            logger.info(f"No campaigns scheduled for {frequency} sync, skipping")
            return False

        ran = self.run_sync_job(SyncJobType(frequency), entry["campaigns"])

        registry = self._registry()
        if frequency in registry:
            now = self._clock()
            registry[frequency]["last_run"] = now.isoformat()
            registry[frequency]["next_run"] = compute_next_run(frequency, now).isoformat()
            self.store.set(REGISTRY_KEY, registry)
        return ran

    # ===== Jobs =====

    def submit_job(self, job_type: str, campaigns: Sequence[str]) -> str:
        """
        Queue a run on the scheduler's worker thread.

        Returns:
            The job id to poll with ``get_job_status``
        """
        job_id = self._create_job(SyncJobType(job_type), campaigns)
        self.manager.add_date_job(self.run_job, job_id=f"job_{job_id}", args=[job_id])
        log_with_context(logger, "info", "Sync job submitted", job_id=job_id, job_type=job_type)
        return job_id

    def run_job(self, job_id: str) -> bool:
        """Execute a previously submitted job; terminal jobs are left alone."""
        with session_scope(self._session_factory) as db:
            job = db.get(SyncJob, job_id)
            if job is None:
                log_with_context(logger, "warning", "Submitted job not found", job_id=job_id)
                return False
            if job.status in TERMINAL_STATUSES or job.status == SyncJobStatus.PROCESSING:
                return False
        return self._execute(job_id)

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            job = db.get(SyncJob, job_id)
            return job.to_dict() if job is not None else None

    def run_sync_job(self, job_type: SyncJobType, campaigns: Sequence[str], failure_key: Optional[str] = None) -> bool:
        """Run synchronously on the calling thread, under the sync lock."""
        job_id = self._start_job(job_type, campaigns)
        if job_id is None:
            return False
        return self._execute(job_id, failure_key=failure_key, acquired=True)

    def process_tier_transitions(self, campaign: str) -> Optional[Dict[str, Any]]:
        """
        Reconcile one campaign now.

        Returns:
            The finished job's status, including per-campaign counters, or
            None when another run holds the lock
        """
        job_id = self._start_job(SyncJobType.CUSTOM, [campaign])
        if job_id is None:
            return None
        self._execute(job_id, acquired=True)
        return self.get_job_status(job_id)

    def transition_campaigns(self, source: str, destination: str, rules=None) -> Optional[Dict[str, Any]]:
        """Campaign-to-campaign move under the sync lock; None when another run holds it."""
        if self.transitions is None:
            raise RuntimeError("No campaign transition service configured")
        job_type = SyncJobType.TRANSITION.value
        owner = str(uuid4())
        if not self.can_start(job_type, owner=owner):
            log_with_context(logger, "notice", "Sync already running, transition skipped", source=source)
            return None
        self._set_type_status(job_type, "running")
        try:
            result = self.transitions.transition_campaigns(source, destination, rules)
            self._set_type_status(job_type, "completed")
            return result
        except Exception as exc:
            self._set_type_status(job_type, "failed", error=str(exc))
            log_with_context(logger, "error", "Campaign transition failed", source=source, destination=destination, error=str(exc))
            raise
        finally:
            self.lock_manager.release(SYNC_LOCK_KEY, owner=owner)

    def _start_job(self, job_type: SyncJobType, campaigns: Sequence[str]) -> Optional[str]:
        """
        Take the sync lock before the job row exists, so a caller that loses
        the race leaves nothing behind.

        Returns:
            The new job id, or None when the run was skipped
        """
        job_id = str(uuid4())
        if not self.can_start(job_type.value, owner=job_id):
            self.metrics.increment_sync_runs(job_type.value, "skipped")
            log_with_context(logger, "notice", "Sync already running, skipping", job_type=job_type.value)
            return None
        try:
            return self._create_job(job_type, campaigns, job_id=job_id)
        except Exception:
            self.lock_manager.release(SYNC_LOCK_KEY, owner=job_id)
            raise

    def _create_job(self, job_type: SyncJobType, campaigns: Sequence[str], job_id: Optional[str] = None) -> str:
        with session_scope(self._session_factory) as db:
            job = SyncJob(
                id=job_id or str(uuid4()),
                type=job_type,
                status=SyncJobStatus.PENDING,
                campaigns=list(campaigns or []),
                scheduled_for=self._clock(),
            )
            db.add(job)
            db.flush()
            return job.id

    def _execute(self, job_id: str, failure_key: Optional[str] = None, acquired: bool = False) -> bool:
        """
        Run a job record under the sync lock, owned by ``job_id``.

        A submitted job is marked SKIPPED when ``can_start`` refuses;
        ``acquired`` means the caller already holds the lock. The job is
        PROCESSING while running, then DONE, STOPPED or FAILED. The lock is
        released on every path once acquired, unless a cancel already handed
        it to a newer run.
        """
        with session_scope(self._session_factory) as db:
            job = db.get(SyncJob, job_id)
            job_type = job.type.value
            campaigns = list(job.campaigns or [])
        failure_key = failure_key or job_type

        if not acquired and not self.can_start(job_type, owner=job_id):
            self._update_job(job_id, status=SyncJobStatus.SKIPPED, finished_at=self._clock())
            self.metrics.increment_sync_runs(job_type, "skipped")
            log_with_context(logger, "notice", "Sync already running, skipping", job_id=job_id, job_type=job_type)
            return False

        results: Dict[str, Any] = {}
        failed_campaigns: List[str] = []
        memory_peak = 0
        succeeded = False
        try:
            token = self.cancellations.issue(job_id)
            set_job_id(job_id)
            self.health.start(job_id, job_type=job_type)
            self._set_type_status(job_type, "running")
            self._update_job(job_id, status=SyncJobStatus.PROCESSING, started_at=self._clock(), attempts_delta=1)

            for campaign in campaigns:
                try:
                    outcome = self.engine.process_tier_transitions(
                        campaign,
                        cancellation=token,
                        progress_callback=lambda current, total, info, c=campaign: self._record_progress(job_id, c, current, total, info),
                        failure_callback=lambda chunk, error, c=campaign: self._record_failure(job_id, c, chunk, error),
                    )
                    results[campaign] = outcome.as_dict()
                    memory_peak = max(memory_peak, outcome.memory_peak)
                except SyncStopped:
                    raise
                except Exception as exc:
                    failed_campaigns.append(campaign)
                    results[campaign] = {"state": "failed", "error": str(exc)}
                    log_with_context(
                        logger, "error", "Campaign sync failed",
                        job_id=job_id,
                        campaign=campaign,
                        error_type=exc.__class__.__name__,
                        error=str(exc),
                    )

            if failed_campaigns:
                error = f"{len(failed_campaigns)} campaign(s) failed: {', '.join(failed_campaigns)}"
                self._update_job(job_id, status=SyncJobStatus.FAILED, result=results, last_error=error, finished_at=self._clock())
                self._set_type_status(job_type, "failed", error=error)
                self._register_failed_run(failure_key, failed_campaigns, error)
                self.metrics.increment_sync_runs(job_type, "failed")
                return False

            succeeded = True
            self._update_job(job_id, status=SyncJobStatus.DONE, result=results, finished_at=self._clock())
            self._set_type_status(job_type, "completed")
            self._clear_failed_run(failure_key)
            self.metrics.increment_sync_runs(job_type, "completed")
            return True

        except SyncStopped as exc:
            self._update_job(job_id, status=SyncJobStatus.STOPPED, result=results, last_error=str(exc), finished_at=self._clock())
            self._set_type_status(job_type, "stopped")
            self.metrics.increment_sync_runs(job_type, "stopped")
            log_with_context(logger, "notice", "Sync stopped by user", job_id=job_id)
            return False

        except Exception as exc:
            self._update_job(job_id, status=SyncJobStatus.FAILED, result=results, last_error=str(exc), finished_at=self._clock())
            self._set_type_status(job_type, "failed", error=str(exc))
            self._register_failed_run(failure_key, campaigns, str(exc))
            self.metrics.increment_sync_runs(job_type, "failed")
            logger.error(f"Sync job {job_id} failed: {exc}", exc_info=True)
            return False

        finally:
            self.lock_manager.release(SYNC_LOCK_KEY, owner=job_id)
            self.cancellations.discard(job_id)
            self.health.stop(job_id, success=succeeded, memory_peak=memory_peak)
            set_job_id(None)
            logger.info(f"Sync job {job_id} released lock {SYNC_LOCK_KEY}")

    def _update_job(self, job_id: str, attempts_delta: int = 0, **fields) -> None:
        with session_scope(self._session_factory) as db:
            job = db.get(SyncJob, job_id)
            for name, value in fields.items():
                setattr(job, name, value)
            job.attempts += attempts_delta

    # ===== Concurrency guard =====

    def can_start(self, job_type: str, owner: Optional[str] = None) -> bool:
        """Not already running for this type, and the sync lock was acquired."""
        if self.is_sync_running(job_type):
            return False
        return self.lock_manager.acquire(SYNC_LOCK_KEY, self.lock_timeout_seconds, owner=owner)

    def is_sync_running(self, job_type: str) -> bool:
        entry = self.store.get(f"{TYPE_STATUS_PREFIX}{job_type}") or {}
        if entry.get("status") != "running" or not entry.get("updated_at"):
            return False
        started = datetime.fromisoformat(entry["updated_at"])
        # A run older than the execution ceiling was killed by the host
        return (self._clock() - started).total_seconds() < self.max_execution_seconds

    def cancel(self) -> None:
        """
        Stop every running sync at its next chunk boundary, force-clear the
        lock and mark the status stopped. Each run holds its own stop signal,
        so a run started after this call is unaffected.
        """
        self.cancellations.cancel(set(self.cancellations.active()) | set(self._processing_job_ids()))
        self.lock_manager.release(SYNC_LOCK_KEY)
        for key, entry in self.store.items(TYPE_STATUS_PREFIX).items():
            if (entry or {}).get("status") == "running":
                self._set_type_status(key[len(TYPE_STATUS_PREFIX):], "stopped")
        self.store.set(STATUS_KEY, {"status": "stopped", "updated_at": self._clock().isoformat()})
        log_with_context(logger, "notice", "Sync cancelled")

    cancel_sync = cancel

    def _processing_job_ids(self) -> List[str]:
        with session_scope(self._session_factory) as db:
            return list(db.scalars(select(SyncJob.id).where(SyncJob.status == SyncJobStatus.PROCESSING)))

    # ===== Health =====

    def health_check(self) -> Dict[str, Any]:
        """
        Periodic sweep: clear stale locks, retry failed runs whose backoff has
        elapsed, refresh aggregate stats.

        Returns:
            ``{"stale_locks_cleared": [...], "retried": [...]}``
        """
        now = self._clock()
        cleared = []
        for lock in self.lock_manager.list_active():
            age = (now - lock["timestamp"]).total_seconds()
            if age > self.lock_timeout_seconds:
                self.lock_manager.release(lock["key"])
                self.metrics.increment_stale_locks_cleared()
                cleared.append(lock["key"])
                log_with_context(logger, "warning", "Cleared stale lock", lock=lock["key"], age_seconds=int(age))

        retried = []
        for job_type, entry in self._failed_runs().items():
            retries = int(entry.get("retries", 0))
            if retries >= self.max_retries:
                continue
            last_attempt = datetime.fromisoformat(entry["last_attempt"])
            if (now - last_attempt).total_seconds() < retry_delay_seconds(retries):
                continue

            entry["retries"] = retries + 1
            entry["last_attempt"] = now.isoformat()
            failed = self._failed_runs()
            failed[job_type] = entry
            self.store.set(FAILED_JOBS_KEY, failed)

            log_with_context(logger, "info", "Retrying failed sync", job_type=job_type, attempt=entry["retries"])
            self.run_sync_job(SyncJobType.RETRY, entry.get("campaigns", []), failure_key=job_type)
            retried.append(job_type)

        self.health.update_aggregate_stats()
        self.store.set("sync_last_health_check", now.isoformat())
        return {"stale_locks_cleared": cleared, "retried": retried}

    def _failed_runs(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.store.get(FAILED_JOBS_KEY, {}) or {})

    def _register_failed_run(self, key: str, campaigns: Sequence[str], error: str) -> None:
        failed = self._failed_runs()
        entry = failed.get(key, {"retries": 0})
        entry.update({
            "campaigns": list(campaigns),
            "error": error,
            "last_attempt": self._clock().isoformat(),
        })
        failed[key] = entry
        self.store.set(FAILED_JOBS_KEY, failed)

    def _clear_failed_run(self, key: str) -> None:
        failed = self._failed_runs()
        if failed.pop(key, None) is not None:
            self.store.set(FAILED_JOBS_KEY, failed)

    # ===== Status =====

    def get_sync_status(self) -> Dict[str, Any]:
        """
        Returns:
            ``{status, failed_jobs, stats, next_runs, health}`` plus the last
            error and progress of the current run
        """
        statuses = {
            key[len(TYPE_STATUS_PREFIX):]: entry
            for key, entry in self.store.items(TYPE_STATUS_PREFIX).items()
        }
        overall = self.store.get(STATUS_KEY) or {}
        latest = max(
            list(statuses.values()) + ([overall] if overall else []),
            key=lambda e: (e or {}).get("updated_at") or "",
            default={},
        )
        running = [t for t in statuses if self.is_sync_running(t)]

        return {
            "status": "running" if running else latest.get("status", "idle"),
            "running": running,
            "last_error": latest.get("error"),
            "failed_jobs": self._failed_runs(),
            "stats": self.store.get("sync_stats", {}) or {},
            "next_runs": {
                frequency: entry.get("next_run")
                for frequency, entry in self._registry().items()
                if entry.get("enabled")
            },
            "schedules": self._registry(),
            "progress": self.store.get(PROGRESS_KEY),
            "health": self.health.get_status(),
        }

    def _registry(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.store.get(REGISTRY_KEY, {}) or {})

    def _set_type_status(self, job_type: str, status: str, error: Optional[str] = None) -> None:
        entry = {"status": status, "updated_at": self._clock().isoformat()}
        if error:
            entry["error"] = error
        self.store.set(f"{TYPE_STATUS_PREFIX}{job_type}", entry)

    def _record_progress(self, job_id: str, campaign: str, current: int, total: int, info: Dict[str, Any]) -> None:
        self.store.set(PROGRESS_KEY, {
            "job_id": job_id,
            "campaign": campaign,
            "chunk": current,
            "total_chunks": total,
            **info,
        })

    def _record_failure(self, job_id: str, campaign: str, chunk, error: Exception) -> None:
        self.store.append_bounded(FAILURES_KEY, {
            "job_id": job_id,
            "campaign": campaign,
            "items": len(chunk) if chunk else 0,
            "error": str(error),
            "timestamp": self._clock().isoformat(),
        }, FAILURE_LOG_LIMIT)
