"""
Campaign-Subscriber link - a subscriber's current tier within one campaign.

This row is the authoritative "current state" the reconciliation engine
reads before computing a transition.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base, utcnow


class CampaignSubscriber(Base):
    __tablename__ = "bemacrm_campaign_subscribers"
    __table_args__ = (
        UniqueConstraint("subscriber_id", "campaign_id", name="uq_campaign_subscriber"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscriber_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("bemacrm_subscribers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    campaign_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("bemacrm_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    purchase_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Last order that advanced this subscriber",
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    subscriber: Mapped["Subscriber"] = relationship(back_populates="campaign_links")
    campaign: Mapped["Campaign"] = relationship(back_populates="subscriber_links")

    def __repr__(self) -> str:
        return (
            f"<CampaignSubscriber(subscriber_id={self.subscriber_id}, "
            f"campaign_id={self.campaign_id}, tier={self.tier})>"
        )
