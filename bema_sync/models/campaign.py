"""
Campaign model - one album/artist/year release driven through the tier funnel.
"""
from datetime import date, datetime
from typing import List, Optional
import enum

from sqlalchemy import String, Integer, Date, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base, utcnow


class CampaignStatus(str, enum.Enum):
    """Campaign lifecycle status."""
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"


# Legal forward moves; a status may also stay where it is
_NEXT_STATUS = {
    CampaignStatus.DRAFT: CampaignStatus.PENDING,
    CampaignStatus.PENDING: CampaignStatus.ACTIVE,
    CampaignStatus.ACTIVE: CampaignStatus.COMPLETED,
}


class Campaign(Base):
    """
    Campaign entity, named YEAR_ARTIST_CAMPAIGN (e.g. 2025_ETB_EOE).
    Deleting a campaign removes its groups, purchase fields and subscriber links.
    """
    __tablename__ = "bemacrm_campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(191), nullable=False, unique=True, index=True)
    product_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Linked product in the commerce store",
    )
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[CampaignStatus] = mapped_column(
        SQLEnum(CampaignStatus, name="campaign_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=CampaignStatus.DRAFT,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    groups: Mapped[List["Group"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    subscriber_links: Mapped[List["CampaignSubscriber"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    fields: Mapped[List["CampaignField"]] = relationship(
        back_populates="campaign",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def advance_status(self, target: CampaignStatus) -> None:
        """
        Move the campaign forward to ``target`` through every intermediate status.

        Raises:
            ValueError: if ``target`` lies behind the current status
        """
        target = CampaignStatus(target)
        current = self.status or CampaignStatus.DRAFT
        while current != target:
            nxt = _NEXT_STATUS.get(current)
            if nxt is None:
                raise ValueError(f"Cannot move campaign {self.name} from {current.value} to {target.value}")
            current = nxt
        self.status = current

    def __repr__(self) -> str:
        return f"<Campaign(id={self.id}, name={self.name}, status={self.status})>"
