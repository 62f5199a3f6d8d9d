"""
Group model - an email-marketing group mapped to a (campaign, tier) pair.
"""
from typing import Optional

from sqlalchemy import String, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base


class Group(Base):
    __tablename__ = "bemacrm_groups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="External group id")
    name: Mapped[str] = mapped_column(String(191), nullable=False, index=True)
    campaign_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("bemacrm_campaigns.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    tier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    campaign: Mapped[Optional["Campaign"]] = relationship(back_populates="groups")

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, name={self.name})>"
