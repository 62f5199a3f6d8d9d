"""
Tests for the sync scheduler: exclusivity, scheduling, cancellation and the
health sweep.
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select

from bema_sync.jobs.scheduler import (
    FAILED_JOBS_KEY,
    REGISTRY_KEY,
    SYNC_LOCK_KEY,
    SchedulerManager,
    SyncScheduler,
    compute_next_run,
    retry_delay_seconds,
)
from bema_sync.lib.errors import ApiError, InvalidFrequency, SyncStopped
from bema_sync.models import SyncJob, SyncJobType
from bema_sync.services.health_monitor import HealthMonitor
from bema_sync.services.lock_manager import LockManager
from bema_sync.services.reconciliation_service import ReconciliationResult, RunState


CAMPAIGN = "2025_ETB_EOE"


class Clock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 10, 30, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def manager():
    return MagicMock(spec=SchedulerManager)


@pytest.fixture
def lock_manager(session_factory, clock):
    return LockManager(session_factory, timeout_seconds=900, clock=clock)


@pytest.fixture
def make_scheduler(session_factory, store, metrics, manager, lock_manager, clock):
    def _make(engine, **kwargs):
        health = HealthMonitor(store, metrics, memory_reader=lambda: 0)
        return SyncScheduler(
            engine=engine,
            lock_manager=lock_manager,
            health=health,
            store=store,
            session_factory=session_factory,
            metrics=metrics,
            manager=manager,
            clock=clock,
            **kwargs,
        )
    return _make


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.process_tier_transitions.side_effect = lambda campaign, **kwargs: ReconciliationResult(
        campaign=campaign, state=RunState.COMPLETED
    )
    return engine


@pytest.mark.unit
def test_scheduler_manager_initialization():
    manager = SchedulerManager()

    assert manager.scheduler is not None
    assert not manager.running


@pytest.mark.unit
def test_scheduler_manager_registers_jobs():
    manager = SchedulerManager()

    manager.add_cron_job(lambda: None, job_id="sync_daily", hour=0, minute=0)
    manager.add_interval_job(lambda: None, job_id="sync_health_check", seconds=300)

    assert {job.id for job in manager.get_jobs()} == {"sync_daily", "sync_health_check"}
    manager.remove_job("sync_daily")
    assert manager.get_job("sync_daily") is None
    with pytest.raises(ValueError):
        manager.add_interval_job(lambda: None, job_id="bad")


@pytest.mark.unit
def test_compute_next_run():
    now = datetime(2025, 1, 1, 10, 30)  # a Wednesday

    assert compute_next_run("hourly", now) == datetime(2025, 1, 1, 11, 0)
    assert compute_next_run("daily", now) == datetime(2025, 1, 2, 0, 0)
    assert compute_next_run("weekly", now) == datetime(2025, 1, 6, 0, 0)
    with pytest.raises(InvalidFrequency):
        compute_next_run("monthly", now)


@pytest.mark.unit
def test_retry_delay_backs_off_to_a_day():
    assert retry_delay_seconds(0) == 300
    assert retry_delay_seconds(1) == 600
    assert retry_delay_seconds(2) == 1200
    assert retry_delay_seconds(20) == 86400


@pytest.mark.unit
def test_custom_sync_runs_and_releases_lock(make_engine, make_scheduler, email_provider, campaign, lock_manager, metrics):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])
    scheduler = make_scheduler(make_engine())

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is True

    assert lock_manager.is_locked(SYNC_LOCK_KEY) is False
    assert metrics.get_counter_value("sync_runs_total", {"job_type": "custom", "status": "completed"}) == 1
    status = scheduler.get_sync_status()
    assert status["status"] == "completed"
    assert status["stats"]["successful_runs"] == 1
    assert status["progress"]["campaign"] == CAMPAIGN


@pytest.mark.unit
def test_sync_skipped_while_lock_held(make_scheduler, mock_engine, lock_manager, metrics):
    scheduler = make_scheduler(mock_engine)
    lock_manager.acquire(SYNC_LOCK_KEY)

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is False

    mock_engine.process_tier_transitions.assert_not_called()
    assert lock_manager.is_locked(SYNC_LOCK_KEY) is True
    assert metrics.get_counter_value("sync_runs_total", {"job_type": "custom", "status": "skipped"}) == 1
    assert scheduler.process_tier_transitions(CAMPAIGN) is None


@pytest.mark.unit
def test_skipped_run_leaves_no_job_row(make_scheduler, mock_engine, lock_manager, session_factory):
    scheduler = make_scheduler(mock_engine)
    lock_manager.acquire(SYNC_LOCK_KEY)

    scheduler.schedule_sync("custom", [CAMPAIGN])
    scheduler.process_tier_transitions(CAMPAIGN)

    with session_factory() as db:
        assert db.scalar(select(func.count()).select_from(SyncJob)) == 0


@pytest.mark.unit
def test_nested_sync_is_skipped(make_scheduler, mock_engine):
    scheduler = make_scheduler(mock_engine)
    nested = []

    def run(campaign, **kwargs):
        nested.append(scheduler.schedule_sync("custom", [campaign]))
        return ReconciliationResult(campaign=campaign, state=RunState.COMPLETED)

    mock_engine.process_tier_transitions.side_effect = run

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is True
    assert nested == [False]
    assert mock_engine.process_tier_transitions.call_count == 1


@pytest.mark.unit
def test_invalid_frequency(make_scheduler, mock_engine):
    with pytest.raises(InvalidFrequency):
        make_scheduler(mock_engine).schedule_sync("monthly", [CAMPAIGN])


@pytest.mark.unit
def test_periodic_schedule_is_registered(make_scheduler, mock_engine, manager, store):
    scheduler = make_scheduler(mock_engine)

    assert scheduler.schedule_sync("Daily", [CAMPAIGN]) is True

    entry = store.get(REGISTRY_KEY)["daily"]
    assert entry["campaigns"] == [CAMPAIGN]
    assert entry["enabled"] is True
    assert entry["next_run"] == "2025-01-02T00:00:00"
    manager.add_cron_job.assert_called_once()
    assert manager.add_cron_job.call_args.args[1] == "sync_daily"
    assert manager.add_cron_job.call_args.kwargs["hour"] == 0
    mock_engine.process_tier_transitions.assert_not_called()
    assert scheduler.get_sync_status()["next_runs"] == {"daily": "2025-01-02T00:00:00"}


@pytest.mark.unit
def test_scheduled_run_uses_registry(make_scheduler, mock_engine, store, clock):
    scheduler = make_scheduler(mock_engine)
    scheduler.schedule_sync("hourly", [CAMPAIGN])
    clock.advance(1800)

    assert scheduler._run_scheduled("hourly") is True

    mock_engine.process_tier_transitions.assert_called_once()
    entry = store.get(REGISTRY_KEY)["hourly"]
    assert entry["last_run"] == "2025-01-01T11:00:00"
    assert entry["next_run"] == "2025-01-01T12:00:00"


@pytest.mark.unit
def test_scheduled_run_without_campaigns_is_noop(make_scheduler, mock_engine):
    scheduler = make_scheduler(mock_engine)
    scheduler.start()

    assert scheduler._run_scheduled("hourly") is False
    mock_engine.process_tier_transitions.assert_not_called()


@pytest.mark.unit
def test_start_registers_defaults_and_health_check(make_scheduler, mock_engine, manager, store):
    scheduler = make_scheduler(mock_engine)

    scheduler.start()

    registry = store.get(REGISTRY_KEY)
    assert set(registry) == {"hourly", "daily"}
    assert registry["hourly"]["enabled"] is False
    manager.add_interval_job.assert_called_once()
    assert manager.add_interval_job.call_args.kwargs["job_id"] == "sync_health_check"
    manager.start.assert_called_once()


@pytest.mark.unit
def test_failed_run_is_registered_for_retry(make_scheduler, mock_engine, store, lock_manager):
    mock_engine.process_tier_transitions.side_effect = ApiError("down", status_code=503)
    scheduler = make_scheduler(mock_engine)

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is False

    failed = store.get(FAILED_JOBS_KEY)
    assert failed["custom"]["retries"] == 0
    assert failed["custom"]["campaigns"] == [CAMPAIGN]
    assert lock_manager.is_locked(SYNC_LOCK_KEY) is False
    status = scheduler.get_sync_status()
    assert status["status"] == "failed"
    assert "1 campaign(s) failed" in status["last_error"]


@pytest.mark.unit
def test_health_check_retries_after_backoff(make_scheduler, mock_engine, store, clock):
    mock_engine.process_tier_transitions.side_effect = ApiError("down", status_code=503)
    scheduler = make_scheduler(mock_engine)
    scheduler.schedule_sync("custom", [CAMPAIGN])

    clock.advance(100)
    assert scheduler.health_check()["retried"] == []

    mock_engine.process_tier_transitions.side_effect = lambda campaign, **kwargs: ReconciliationResult(campaign=campaign)
    clock.advance(250)
    assert scheduler.health_check()["retried"] == ["custom"]

    assert mock_engine.process_tier_transitions.call_count == 2
    assert store.get(FAILED_JOBS_KEY) == {}


@pytest.mark.unit
def test_health_check_gives_up_after_max_retries(make_scheduler, mock_engine, store, clock):
    mock_engine.process_tier_transitions.side_effect = ApiError("down", status_code=503)
    scheduler = make_scheduler(mock_engine, max_retries=2)
    scheduler.schedule_sync("custom", [CAMPAIGN])

    for _ in range(4):
        clock.advance(86400)
        scheduler.health_check()

    assert mock_engine.process_tier_transitions.call_count == 3
    assert store.get(FAILED_JOBS_KEY)["custom"]["retries"] == 2


@pytest.mark.unit
def test_health_check_clears_stale_lock(make_scheduler, mock_engine, lock_manager, clock, metrics):
    scheduler = make_scheduler(mock_engine)
    lock_manager.acquire(SYNC_LOCK_KEY)
    clock.advance(901)

    result = scheduler.health_check()

    assert result["stale_locks_cleared"] == [SYNC_LOCK_KEY]
    assert lock_manager.list_active() == []
    assert metrics.get_counter_value("stale_locks_cleared_total", {}) == 1


@pytest.mark.unit
def test_cancel_stops_run_between_chunks(make_engine, make_scheduler, email_provider, campaign, lock_manager):
    for i in range(3):
        email_provider.add(str(1001 + i), f"fan{i}@example.com", ["g-opt-in"])
    scheduler = make_scheduler(make_engine(batch_size=1))
    original_add = email_provider.add_subscriber_to_group

    def add_then_cancel(subscriber_id, group_id):
        scheduler.cancel()
        return original_add(subscriber_id, group_id)

    email_provider.add_subscriber_to_group = add_then_cancel

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is False

    assert len([c for c in email_provider.calls if c[0] == "add"]) == 1
    assert scheduler.get_sync_status()["status"] == "stopped"
    assert lock_manager.is_locked(SYNC_LOCK_KEY) is False


@pytest.mark.unit
def test_cancelled_run_stays_cancelled_when_next_run_starts(make_scheduler, mock_engine, lock_manager):
    scheduler = make_scheduler(mock_engine)
    observed = {}

    def run(campaign, cancellation, **kwargs):
        if not observed:
            observed["first"] = cancellation
            scheduler.cancel()
            observed["second_ran"] = scheduler.schedule_sync("custom", [campaign])
            # Someone else takes the lock before the cancelled run winds down
            lock_manager.acquire(SYNC_LOCK_KEY, owner="next-run")
            observed["first_still_cancelled"] = cancellation.is_cancelled()
            if cancellation.is_cancelled():
                raise SyncStopped("Sync stopped by user")
        return ReconciliationResult(campaign=campaign, state=RunState.COMPLETED)

    mock_engine.process_tier_transitions.side_effect = run

    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is False

    assert observed["second_ran"] is True
    assert observed["first_still_cancelled"] is True
    assert mock_engine.process_tier_transitions.call_count == 2
    # The cancelled run did not release a lock it no longer owns
    assert lock_manager.list_active()[0]["owner"] == "next-run"
    assert scheduler.cancellations.active() == []


@pytest.mark.unit
def test_cancel_when_idle_clears_lock(make_scheduler, mock_engine, lock_manager):
    scheduler = make_scheduler(mock_engine)
    lock_manager.acquire(SYNC_LOCK_KEY)

    scheduler.cancel()

    assert lock_manager.is_locked(SYNC_LOCK_KEY) is False
    assert scheduler.get_sync_status()["status"] == "stopped"
    # The next run starts with a fresh stop signal
    assert scheduler.schedule_sync("custom", [CAMPAIGN]) is True


@pytest.mark.unit
def test_stopped_engine_marks_job_stopped(make_scheduler, mock_engine, metrics):
    mock_engine.process_tier_transitions.side_effect = SyncStopped("Sync stopped by user")
    scheduler = make_scheduler(mock_engine)

    job = scheduler.process_tier_transitions(CAMPAIGN)

    assert job["status"] == "stopped"
    assert metrics.get_counter_value("sync_runs_total", {"job_type": "custom", "status": "stopped"}) == 1


@pytest.mark.unit
def test_submit_and_run_job(make_scheduler, mock_engine, manager):
    scheduler = make_scheduler(mock_engine)

    job_id = scheduler.submit_job("custom", [CAMPAIGN])

    assert scheduler.get_job_status(job_id)["status"] == "pending"
    manager.add_date_job.assert_called_once()
    assert manager.add_date_job.call_args.kwargs["args"] == [job_id]

    assert scheduler.run_job(job_id) is True
    job = scheduler.get_job_status(job_id)
    assert job["status"] == "done"
    assert job["attempts"] == 1
    assert job["result"][CAMPAIGN]["state"] == "completed"

    # Terminal jobs are not re-run
    assert scheduler.run_job(job_id) is False
    assert scheduler.get_job_status("missing") is None


@pytest.mark.unit
def test_process_tier_transitions_returns_counters(make_engine, make_scheduler, email_provider, campaign):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])
    scheduler = make_scheduler(make_engine())

    job = scheduler.process_tier_transitions(CAMPAIGN)

    assert job["status"] == "done"
    assert job["type"] == SyncJobType.CUSTOM.value
    assert job["result"][CAMPAIGN]["applied"] == 1


@pytest.mark.unit
def test_transition_campaigns_requires_lock(make_scheduler, mock_engine, lock_manager):
    transitions = MagicMock()
    transitions.transition_campaigns.return_value = {"transition_id": 1, "status": "Complete", "subscriber_count": 0}
    scheduler = make_scheduler(mock_engine, transitions=transitions)

    assert scheduler.transition_campaigns(CAMPAIGN, "2026_ETB_ROF")["transition_id"] == 1
    assert lock_manager.is_locked(SYNC_LOCK_KEY) is False

    lock_manager.acquire(SYNC_LOCK_KEY)
    assert scheduler.transition_campaigns(CAMPAIGN, "2026_ETB_ROF") is None
    assert transitions.transition_campaigns.call_count == 1
