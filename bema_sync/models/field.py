"""
CampaignField model - the email-marketing custom field flagging a purchase
of a campaign's album (``<CAMPAIGN>_PURCHASE``).
"""
from typing import Optional

from sqlalchemy import String, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bema_sync.lib.db import Base


class CampaignField(Base):
    __tablename__ = "bemacrm_fields"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, comment="External field id")
    name: Mapped[str] = mapped_column(String(191), nullable=False, unique=True, index=True)
    key: Mapped[Optional[str]] = mapped_column(String(191), nullable=True, comment="Key used in subscriber field payloads")
    campaign_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("bemacrm_campaigns.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    field_type: Mapped[str] = mapped_column(String(16), nullable=False, default="number")

    campaign: Mapped[Optional["Campaign"]] = relationship(back_populates="fields")

    def __repr__(self) -> str:
        return f"<CampaignField(id={self.id}, name={self.name})>"
