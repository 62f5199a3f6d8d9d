"""
Health and stats recorder.

Purely observational bookkeeping: which jobs are running, how long runs
take, how often memory had to be reclaimed. Nothing here gates control
flow, and unknown or already-stopped job ids are logged and ignored.
"""
import time
from typing import Any, Callable, Dict, Optional

from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.memory import current_memory_usage
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.state_store import StateStore


logger = get_logger(__name__)

ACTIVE_JOBS_KEY = "health:active_jobs"
STATS_KEY = "sync_stats"

_EMPTY_STATS = {
    "total_runs": 0,
    "successful_runs": 0,
    "failed_runs": 0,
    "memory_cleanups": 0,
    "total_duration": 0.0,
    "average_duration": 0.0,
    "peak_memory": 0,
    "active_jobs": 0,
    "last_updated": None,
}


class HealthMonitor:
    """Records start/stop of units of work and aggregate counters."""

    def __init__(
        self,
        store: StateStore,
        metrics: Optional[MetricsCollector] = None,
        max_execution_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
        memory_reader: Callable[[], int] = current_memory_usage,
    ):
        self.store = store
        self.metrics = metrics or MetricsCollector()
        self.max_execution_seconds = max_execution_seconds
        self._clock = clock
        self._memory_reader = memory_reader

    def _active(self) -> Dict[str, Dict[str, Any]]:
        return dict(self.store.get(ACTIVE_JOBS_KEY, {}) or {})

    def _stats(self) -> Dict[str, Any]:
        return {**_EMPTY_STATS, **(self.store.get(STATS_KEY, {}) or {})}

    def start(self, job_id: str, **context) -> None:
        active = self._active()
        if job_id in active:
            logger.warning(f"Health monitor: job {job_id} already started, restarting its clock")
        active[job_id] = {"started_at": self._clock(), **context}
        self.store.set(ACTIVE_JOBS_KEY, active)

    def stop(self, job_id: str, success: bool = True, memory_peak: int = 0) -> None:
        """
        Mark a job finished and fold its duration into the aggregate stats.

        Args:
            job_id: Job identifier passed to ``start``
            success: Whether the run completed without error
            memory_peak: Peak memory observed during the run, in bytes
        """
        active = self._active()
        entry = active.pop(job_id, None)
        if entry is None:
            log_with_context(logger, "warning", "Health monitor: stop for unknown job", job_id=job_id)
            return
        self.store.set(ACTIVE_JOBS_KEY, active)

        duration = max(0.0, self._clock() - float(entry.get("started_at", self._clock())))
        stats = self._stats()
        stats["total_runs"] += 1
        stats["successful_runs" if success else "failed_runs"] += 1
        stats["total_duration"] += duration
        stats["average_duration"] = stats["total_duration"] / stats["total_runs"]
        stats["peak_memory"] = max(int(stats["peak_memory"]), int(memory_peak))
        stats["last_updated"] = self._clock()
        self.store.set(STATS_KEY, stats)

    def record_memory_cleanup(self) -> None:
        stats = self._stats()
        stats["memory_cleanups"] += 1
        self.store.set(STATS_KEY, stats)
        self.metrics.increment_memory_cleanups()

    def update_aggregate_stats(self) -> None:
        """Refresh the active-job count and drop entries older than the execution ceiling."""
        now = self._clock()
        active = self._active()
        stale = [
            job_id for job_id, entry in active.items()
            if now - float(entry.get("started_at", now)) > self.max_execution_seconds
        ]
        for job_id in stale:
            log_with_context(logger, "warning", "Dropping stale active job", job_id=job_id)
            active.pop(job_id)
        if stale:
            self.store.set(ACTIVE_JOBS_KEY, active)

        stats = self._stats()
        stats["active_jobs"] = len(active)
        stats["last_updated"] = now
        self.store.set(STATS_KEY, stats)

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for observability endpoints."""
        now = self._clock()
        active = self._active()
        long_running = [
            job_id for job_id, entry in active.items()
            if now - float(entry.get("started_at", now)) > self.max_execution_seconds
        ]
        return {
            "healthy": not long_running,
            "active_jobs": active,
            "long_running_jobs": long_running,
            "memory_usage": self._memory_reader(),
            "stats": self._stats(),
            "checked_at": now,
        }
