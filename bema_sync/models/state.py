"""
Small key/value state and named locks.

StateEntry holds engine bookkeeping (batch checkpoints, the schedule
registry, stop flags, aggregate stats). SyncLock rows are mutual-exclusion
tokens; the primary key makes acquisition atomic.
"""
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from bema_sync.lib.db import Base, utcnow


class StateEntry(Base):
    __tablename__ = "bemacrm_state"

    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    value: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class SyncLock(Base):
    __tablename__ = "bemacrm_locks"

    key: Mapped[str] = mapped_column(String(191), primary_key=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncLock(key={self.key}, owner={self.owner}, expires_at={self.expires_at})>"
