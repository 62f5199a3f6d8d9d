"""
SyncJob model - scheduler bookkeeping for reconciliation runs.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4
import enum

from sqlalchemy import String, Integer, DateTime, Text, JSON, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from bema_sync.lib.db import Base, utcnow


class SyncJobType(str, enum.Enum):
    """What triggered the run."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"
    RETRY = "retry"
    TRANSITION = "transition"


class SyncJobStatus(str, enum.Enum):
    """Job execution status."""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    STOPPED = "stopped"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({
    SyncJobStatus.DONE,
    SyncJobStatus.FAILED,
    SyncJobStatus.STOPPED,
    SyncJobStatus.SKIPPED,
})


class SyncJob(Base):
    """
    SyncJob entity - one submitted or scheduled reconciliation run.
    Exclusivity is enforced by the lock manager, not by this table.
    """
    __tablename__ = "bemacrm_sync_jobs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    type: Mapped[SyncJobType] = mapped_column(
        SQLEnum(SyncJobType, name="sync_job_type", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    status: Mapped[SyncJobStatus] = mapped_column(
        SQLEnum(SyncJobStatus, name="sync_job_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SyncJobStatus.PENDING,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    campaigns: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    result: Mapped[Optional[dict]] = mapped_column(
        JSON,
        nullable=True,
        comment="Per-campaign counters from the finished run",
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "campaigns": list(self.campaigns or []),
            "result": self.result,
            "last_error": self.last_error,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return f"<SyncJob(id={self.id}, type={self.type}, status={self.status})>"
