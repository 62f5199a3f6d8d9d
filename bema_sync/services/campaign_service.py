"""
Campaign and group bookkeeping.

Campaigns are created from commerce albums (or by an admin) and their
email-marketing groups are mapped back to (campaign, tier) pairs by name.
"""
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select

from bema_sync.lib.config_flags import TierSettings
from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope
from bema_sync.lib.errors import CampaignNotFound
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.models.campaign import Campaign, CampaignStatus
from bema_sync.models.field import CampaignField
from bema_sync.models.group import Group
from bema_sync.providers.base import CommerceProvider, FieldRecord, GroupRecord, Provider
from bema_sync.services.tier_rules import (
    Tier,
    campaign_code_from_album,
    campaign_name_from_group,
    group_name,
    normalize_group_name,
    parse_campaign_code,
    purchase_field_name,
    tier_from_group_name,
)


logger = get_logger(__name__)


class CampaignService:
    """Create, look up and retire campaigns."""

    def __init__(
        self,
        session_factory: SessionFactory,
        commerce: Optional[CommerceProvider] = None,
        tiers: Optional[TierSettings] = None,
        fields: Optional["FieldService"] = None,
    ):
        self._session_factory = session_factory
        self.commerce = commerce
        self.tiers = tiers or TierSettings()
        self.fields = fields

    def get_campaign(self, name: str) -> Campaign:
        with session_scope(self._session_factory) as db:
            campaign = db.scalar(select(Campaign).where(Campaign.name == name))
            if campaign is None:
                raise CampaignNotFound(name)
            return campaign

    def list_campaigns(self) -> List[Campaign]:
        with session_scope(self._session_factory) as db:
            return list(db.scalars(select(Campaign).order_by(Campaign.name)))

    def expected_group_names(self, name: str) -> List[str]:
        """One group name per configured tier, e.g. 2025_ETB_EOE_GOLD_PURCHASED."""
        return [group_name(name, tier) for tier in self.tiers.tiers]

    def group_report(self, name: str) -> Dict[str, Any]:
        """
        Compare the configured tier groups of a campaign with the groups
        stored locally by the last group sync.

        Returns:
            ``{"campaign", "expected", "missing"}``

        Raises:
            CampaignNotFound: unknown campaign
        """
        campaign = self.get_campaign(name)
        local = GroupService(self._session_factory).groups_by_name(campaign.id)
        expected = self.expected_group_names(campaign.name)
        return {
            "campaign": campaign.name,
            "expected": expected,
            "missing": [g for g in expected if normalize_group_name(g) not in local],
        }

    @retry_on_deadlock
    def upsert_campaign(
        self,
        name: str,
        product_id: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Campaign:
        """
        Create a campaign, or refresh the product link of an existing one.

        Raises:
            InvalidCampaignFormat: ``name`` is not YEAR_ARTIST_CAMPAIGN
        """
        parse_campaign_code(name)
        with session_scope(self._session_factory) as db:
            campaign = db.scalar(select(Campaign).where(Campaign.name == name))
            if campaign is None:
                campaign = Campaign(name=name, status=CampaignStatus.DRAFT)
                db.add(campaign)
                logger.info(f"Created campaign {name}")
            if product_id is not None:
                campaign.product_id = product_id
            if start_date is not None:
                campaign.start_date = start_date
            if end_date is not None:
                campaign.end_date = end_date
            db.flush()
            return campaign

    def advance_status(self, name: str, status: CampaignStatus) -> Campaign:
        with session_scope(self._session_factory) as db:
            campaign = db.scalar(select(Campaign).where(Campaign.name == name))
            if campaign is None:
                raise CampaignNotFound(name)
            campaign.advance_status(status)
            return campaign

    def delete_campaign(self, name: str) -> bool:
        """Delete a campaign together with its groups, purchase fields and subscriber links."""
        with session_scope(self._session_factory) as db:
            campaign = db.scalar(select(Campaign).where(Campaign.name == name))
            if campaign is None:
                return False
            db.delete(campaign)
            logger.info(f"Deleted campaign {name}")
            return True

    def sync_album_campaigns(self) -> List[str]:
        """
        Make sure every album sold in the commerce store has a campaign.

        Returns:
            Campaign names created or refreshed
        """
        if self.commerce is None:
            raise RuntimeError("No commerce provider configured")

        names = []
        for album in self.commerce.get_albums():
            name = campaign_code_from_album(album.year, album.artist, album.album)
            try:
                self.upsert_campaign(name, product_id=album.product_id)
            except Exception as exc:
                log_with_context(
                    logger, "error", "Failed to upsert album campaign",
                    campaign=name,
                    product_id=album.product_id,
                    error=str(exc),
                )
                raise
            names.append(name)

        if self.fields is not None and names:
            self.fields.ensure_purchase_fields(names)
        logger.info(f"Synced {len(names)} album campaigns")
        return names


class GroupService:
    """Maps external groups to (campaign, tier) pairs."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    @retry_on_deadlock
    def sync_campaign_groups(self, groups: Iterable[GroupRecord]) -> int:
        """
        Upsert groups named ``<CAMPAIGN>_<TIER>``; other groups are ignored.

        Returns:
            Number of groups stored
        """
        stored = 0
        with session_scope(self._session_factory) as db:
            campaigns = {
                normalize_group_name(c.name): c.id
                for c in db.scalars(select(Campaign))
            }
            for record in groups:
                campaign_name = campaign_name_from_group(record.name)
                tier = tier_from_group_name(record.name)
                if campaign_name is None or tier is None:
                    continue

                group = db.get(Group, record.id)
                if group is None:
                    group = Group(id=record.id, name=record.name)
                    db.add(group)
                group.name = record.name
                group.tier = tier.value
                group.campaign_id = campaigns.get(normalize_group_name(campaign_name))
                stored += 1
        return stored

    def groups_by_name(self, campaign_id: int) -> Dict[str, Group]:
        """Local groups of a campaign keyed by normalized group name."""
        with session_scope(self._session_factory) as db:
            return {
                normalize_group_name(g.name): g
                for g in db.scalars(select(Group).where(Group.campaign_id == campaign_id))
            }


class FieldService:
    """
    Keeps one purchase field per campaign (``<CAMPAIGN>_PURCHASE``) on the
    email-marketing platform and mirrors it locally.

    Reconciliation sets the field to 1 for subscribers whose purchase moved
    them up a tier, so the platform can segment buyers without reading groups.
    """

    def __init__(self, session_factory: SessionFactory, provider: Provider):
        self._session_factory = session_factory
        self.provider = provider

    def ensure_purchase_fields(self, campaign_names: Optional[Iterable[str]] = None) -> Dict[str, FieldRecord]:
        """
        Create missing purchase fields and store them locally.

        Args:
            campaign_names: Campaigns to cover; all stored campaigns when None

        Returns:
            Field records keyed by campaign name. Campaigns whose field could
            not be created, or that are not stored locally, are left out.
        """
        with session_scope(self._session_factory) as db:
            query = select(Campaign)
            if campaign_names is not None:
                query = query.where(Campaign.name.in_(list(campaign_names)))
            campaigns = {c.name: c.id for c in db.scalars(query)}
        if not campaigns:
            return {}

        existing = {f.name.strip().upper(): f for f in self.provider.get_fields()}
        resolved: Dict[str, FieldRecord] = {}
        for name, campaign_id in sorted(campaigns.items()):
            field_name = purchase_field_name(name)
            record = existing.get(field_name)
            if record is None:
                record = self.provider.create_field(field_name, "number")
                if record is None:
                    log_with_context(
                        logger, "warning", "Purchase field could not be created",
                        campaign=name,
                        field=field_name,
                    )
                    continue
                logger.info(f"Created purchase field {field_name}")
            self._store(campaign_id, record)
            resolved[name] = record
        return resolved

    @retry_on_deadlock
    def _store(self, campaign_id: int, record: FieldRecord) -> None:
        with session_scope(self._session_factory) as db:
            stale = db.scalar(
                select(CampaignField).where(CampaignField.name == record.name, CampaignField.id != record.id)
            )
            if stale is not None:
                db.delete(stale)
                db.flush()
            stored = db.get(CampaignField, record.id)
            if stored is None:
                stored = CampaignField(id=record.id, name=record.name)
                db.add(stored)
            stored.name = record.name
            stored.key = record.key
            stored.field_type = record.type
            stored.campaign_id = campaign_id

    def fields_for(self, campaign_id: int) -> List[CampaignField]:
        with session_scope(self._session_factory) as db:
            return list(db.scalars(select(CampaignField).where(CampaignField.campaign_id == campaign_id)))


def campaign_groups(campaign_name: str, groups: Iterable[GroupRecord]) -> Dict[Tier, GroupRecord]:
    """Pick the groups belonging to ``campaign_name`` out of a provider listing, keyed by tier."""
    target = normalize_group_name(campaign_name)
    mapped: Dict[Tier, GroupRecord] = {}
    for group in groups:
        prefix = campaign_name_from_group(group.name)
        if prefix is None or normalize_group_name(prefix) != target:
            continue
        tier = tier_from_group_name(group.name)
        if tier is not None:
            mapped[tier] = group
    return mapped
