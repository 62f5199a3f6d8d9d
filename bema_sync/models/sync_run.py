"""
Sync run record - one row per calendar day, overwritten on reruns.
"""
from datetime import date, datetime
from typing import Optional

from sqlalchemy import String, Integer, Date, DateTime, Text, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from bema_sync.lib.db import Base, utcnow


class SyncRun(Base):
    __tablename__ = "bemacrm_sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_date: Mapped[date] = mapped_column(Date, nullable=False, unique=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    synced_subscribers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        comment="zlib-compressed JSON, one entry per campaign",
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<SyncRun(date={self.sync_date}, status={self.status}, synced={self.synced_subscribers})>"
