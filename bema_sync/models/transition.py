"""
Transition audit log.

A TransitionRecord is appended for every tier change the engine applies and
for every campaign-to-campaign move; only a failed run's final status and
counts are ever corrected afterwards.
"""
from datetime import datetime
from typing import List, Optional
import enum

from sqlalchemy import String, Integer, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base, utcnow


class TransitionStatus(str, enum.Enum):
    COMPLETE = "Complete"
    FAILED = "Failed"


class TransitionRecord(Base):
    __tablename__ = "bemacrm_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_campaign_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    destination_campaign_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    subscriber_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    from_tier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    to_tier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[TransitionStatus] = mapped_column(
        SQLEnum(TransitionStatus, name="transition_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=TransitionStatus.COMPLETE,
    )
    subscriber_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    subscribers: Mapped[List["TransitionSubscriber"]] = relationship(
        back_populates="transition",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<TransitionRecord(id={self.id}, {self.from_tier}->{self.to_tier}, "
            f"status={self.status}, count={self.subscriber_count})>"
        )


class TransitionSubscriber(Base):
    """Subscriber moved as part of a campaign-to-campaign transition."""
    __tablename__ = "bemacrm_transition_subscribers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transition_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("bemacrm_transitions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscriber_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(191), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    transition: Mapped[TransitionRecord] = relationship(back_populates="subscribers")
