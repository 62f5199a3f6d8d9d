"""
Subscriber model - a person known to the email-marketing platform.
"""
from datetime import datetime
from typing import List, Optional
import enum

from sqlalchemy import String, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base, utcnow


class SubscriberStatus(str, enum.Enum):
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"
    UNCONFIRMED = "unconfirmed"
    BOUNCED = "bounced"
    JUNK = "junk"


class Subscriber(Base):
    """
    Subscriber entity, keyed by the external subscriber id.
    Upserted on every fetch; only an explicit delete removes it.
    """
    __tablename__ = "bemacrm_subscribers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(191), nullable=False, unique=True, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[SubscriberStatus] = mapped_column(
        SQLEnum(SubscriberStatus, name="subscriber_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=SubscriberStatus.ACTIVE,
    )

    subscribed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    unsubscribed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    campaign_links: Mapped[List["CampaignSubscriber"]] = relationship(
        back_populates="subscriber",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Subscriber(id={self.id}, email={self.email})>"
