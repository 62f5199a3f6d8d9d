"""
Composition root: builds every service from settings and wires them together.

Tests and the API both go through ``build_container`` so there is exactly one
place where providers, the database and the scheduler are constructed.
"""
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.engine import Engine

from bema_sync.jobs.scheduler import SchedulerManager, SyncScheduler
from bema_sync.lib.cancellation import CancellationRegistry
from bema_sync.lib.config_flags import BatchTuning
from bema_sync.lib.db import SessionFactory, create_db_engine, create_session_factory, init_db
from bema_sync.lib.logging import get_logger, setup_logging
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.settings import Settings
from bema_sync.lib.state_store import StateStore
from bema_sync.providers.base import CommerceProvider, Provider
from bema_sync.providers.edd import EDDProvider
from bema_sync.providers.mailerlite import MailerLiteProvider
from bema_sync.services.campaign_service import CampaignService, FieldService
from bema_sync.services.campaign_transition_service import CampaignTransitionService
from bema_sync.services.health_monitor import HealthMonitor
from bema_sync.services.lock_manager import LockManager
from bema_sync.services.reconciliation_service import ReconciliationEngine
from bema_sync.services.sync_log_service import SyncLogService

logger = get_logger(__name__)


@dataclass
class Container:
    settings: Settings
    db_engine: Engine
    session_factory: SessionFactory
    email_provider: Provider
    commerce_provider: CommerceProvider
    store: StateStore
    metrics: MetricsCollector
    lock_manager: LockManager
    health: HealthMonitor
    cancellations: CancellationRegistry
    tuning: BatchTuning
    sync_log: SyncLogService
    engine: ReconciliationEngine
    campaigns: CampaignService
    transitions: CampaignTransitionService
    scheduler: SyncScheduler
    owns_providers: bool = field(default=True)

    def close(self) -> None:
        """Stop the scheduler and release HTTP clients and DB connections."""
        self.scheduler.shutdown(wait=False)
        if self.owns_providers:
            for provider in (self.email_provider, self.commerce_provider):
                close = getattr(provider, "close", None)
                if close is not None:
                    close()
        self.db_engine.dispose()


def build_container(
    settings: Optional[Settings] = None,
    email_provider: Optional[Provider] = None,
    commerce_provider: Optional[CommerceProvider] = None,
    db_engine: Optional[Engine] = None,
    configure_logging: bool = True,
) -> Container:
    """
    Build the service graph.

    Args:
        settings: Configuration; read from the environment when omitted
        email_provider: Email-marketing platform, MailerLite by default
        commerce_provider: Commerce store, EDD by default
        db_engine: Pre-built engine, e.g. an in-memory SQLite engine in tests
        configure_logging: Install the root log handler

    Returns:
        Container with every service wired
    """
    settings = settings or Settings()
    if configure_logging:
        setup_logging(level="DEBUG" if settings.debug else "INFO", json_format=settings.log_json)

    db_engine = db_engine or create_db_engine(settings.database_url, echo=settings.debug)
    init_db(db_engine)
    session_factory = create_session_factory(db_engine)

    owns_providers = email_provider is None and commerce_provider is None
    email_provider = email_provider or MailerLiteProvider.from_settings(settings)
    commerce_provider = commerce_provider or EDDProvider.from_settings(settings)

    store = StateStore(session_factory)
    metrics = MetricsCollector()
    lock_manager = LockManager(session_factory, timeout_seconds=settings.lock_timeout_seconds)
    health = HealthMonitor(store, metrics, max_execution_seconds=settings.max_execution_seconds)
    cancellations = CancellationRegistry(store)
    tuning = BatchTuning.from_settings(settings)
    sync_log = SyncLogService(session_factory, retention=settings.sync_log_retention)

    engine = ReconciliationEngine(
        session_factory,
        email_provider,
        commerce_provider,
        store,
        tuning=tuning,
        health=health,
        metrics=metrics,
        sync_log=sync_log,
    )
    transitions = CampaignTransitionService(session_factory, email_provider, commerce_provider, metrics)

    scheduler = SyncScheduler(
        engine=engine,
        lock_manager=lock_manager,
        health=health,
        store=store,
        session_factory=session_factory,
        cancellations=cancellations,
        transitions=transitions,
        metrics=metrics,
        manager=SchedulerManager(),
        lock_timeout_seconds=settings.lock_timeout_seconds,
        max_execution_seconds=settings.max_execution_seconds,
        max_retries=settings.max_job_retries,
        health_check_interval_seconds=settings.health_check_interval_seconds,
    )

    logger.info("Sync container built", extra={"extra_fields": {"database": db_engine.url.render_as_string(hide_password=True)}})

    return Container(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        email_provider=email_provider,
        commerce_provider=commerce_provider,
        store=store,
        metrics=metrics,
        lock_manager=lock_manager,
        health=health,
        cancellations=cancellations,
        tuning=tuning,
        sync_log=sync_log,
        engine=engine,
        campaigns=CampaignService(
            session_factory, commerce_provider, fields=FieldService(session_factory, email_provider)
        ),
        transitions=transitions,
        scheduler=scheduler,
        owns_providers=owns_providers,
    )
