"""
Campaign-to-campaign funnel movement.

When a new release starts, subscribers of an earlier campaign are carried
into it according to the transition matrix: everyone at ``current_tier`` in
the source campaign joins ``next_tier`` in the destination campaign,
optionally only if their recorded purchase is a real order placed with
their email address.
"""
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select

from bema_sync.lib.config_flags import DEFAULT_TRANSITION_RULES, TransitionRule
from bema_sync.lib.db import SessionFactory, session_scope
from bema_sync.lib.errors import ApiError, CampaignNotFound
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.models.campaign import Campaign
from bema_sync.models.campaign_subscriber import CampaignSubscriber
from bema_sync.models.group import Group
from bema_sync.models.subscriber import Subscriber
from bema_sync.models.transition import TransitionRecord, TransitionStatus, TransitionSubscriber
from bema_sync.providers.base import CommerceProvider, Provider
from bema_sync.services.tier_rules import group_name, normalize_group_name, normalize_tier


logger = get_logger(__name__)


class CampaignTransitionService:
    def __init__(
        self,
        session_factory: SessionFactory,
        email_provider: Provider,
        commerce_provider: CommerceProvider,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._session_factory = session_factory
        self.email = email_provider
        self.commerce = commerce_provider
        self.metrics = metrics or MetricsCollector()

    def transition_campaigns(
        self,
        source_campaign: str,
        destination_campaign: str,
        rules: Optional[Sequence[TransitionRule]] = None,
    ) -> Dict[str, Any]:
        """
        Move subscribers from one campaign into another.

        Args:
            source_campaign: Campaign subscribers come from
            destination_campaign: Campaign they are carried into
            rules: Transition matrix (defaults to the built-in matrix)

        Returns:
            ``{"transition_id", "status", "subscriber_count"}``; the id and
            status are None when there were no rules or nobody moved, in
            which case no Transition Record is written

        Raises:
            CampaignNotFound: either campaign does not exist locally
        """
        rules = list(DEFAULT_TRANSITION_RULES if rules is None else rules)
        if not rules:
            logger.info("Transition rules are not defined")
            return {"transition_id": None, "status": None, "subscriber_count": 0}

        with session_scope(self._session_factory) as db:
            source = self._campaign(db, source_campaign)
            destination = self._campaign(db, destination_campaign)
            destination_groups = {
                normalize_group_name(g.name): g
                for g in db.scalars(select(Group).where(Group.campaign_id == destination.id))
            }

            moved: List[TransitionSubscriber] = []
            for rule in rules:
                moved.extend(self._apply_rule(db, rule, source, destination, destination_groups))

            transition_id = None
            if moved:
                record = TransitionRecord(
                    source_campaign_id=source.id,
                    destination_campaign_id=destination.id,
                    status=TransitionStatus.COMPLETE,
                    subscriber_count=len(moved),
                    subscribers=moved,
                )
                db.add(record)
                db.flush()
                transition_id = record.id

        log_with_context(
            logger, "info", "Campaign transition complete",
            source=source_campaign,
            destination=destination_campaign,
            transition_id=transition_id,
            subscriber_count=len(moved),
        )
        return {
            "transition_id": transition_id,
            "status": TransitionStatus.COMPLETE.value if moved else None,
            "subscriber_count": len(moved),
        }

    def _campaign(self, db, name: str) -> Campaign:
        campaign = db.scalar(select(Campaign).where(Campaign.name == name))
        if campaign is None:
            raise CampaignNotFound(name)
        return campaign

    def _apply_rule(
        self,
        db,
        rule: TransitionRule,
        source: Campaign,
        destination: Campaign,
        destination_groups: Dict[str, Group],
    ) -> List[TransitionSubscriber]:
        current_tier = normalize_tier(rule.current_tier)
        target_tier = normalize_tier(rule.next_tier)
        if current_tier is None or target_tier is None:
            log_with_context(logger, "warning", "Transition rule names an unknown tier", rule=rule.model_dump())
            return []

        target_group = destination_groups.get(normalize_group_name(group_name(destination.name, target_tier)))
        if target_group is None:
            log_with_context(
                logger, "warning", "Destination group not found",
                group=group_name(destination.name, target_tier),
            )
            return []

        rows = db.execute(
            select(CampaignSubscriber, Subscriber.email)
            .join(Subscriber, Subscriber.id == CampaignSubscriber.subscriber_id)
            .where(
                CampaignSubscriber.campaign_id == source.id,
                CampaignSubscriber.tier == current_tier.value,
            )
            .order_by(CampaignSubscriber.subscriber_id)
        ).all()

        eligible = [(link, email) for link, email in rows if self._eligible(rule, link, email)]
        moved: List[TransitionSubscriber] = []
        for link, email in eligible:
            try:
                self.email.add_subscriber_to_group(link.subscriber_id, target_group.id)
            except ApiError as exc:
                self.metrics.increment_push_failures("add_to_group")
                log_with_context(
                    logger, "error", "Failed to transition subscriber",
                    subscriber_id=link.subscriber_id,
                    destination_group=target_group.name,
                    error=str(exc),
                )
                continue

            destination_link = db.scalar(
                select(CampaignSubscriber).where(
                    CampaignSubscriber.subscriber_id == link.subscriber_id,
                    CampaignSubscriber.campaign_id == destination.id,
                )
            )
            if destination_link is None:
                destination_link = CampaignSubscriber(subscriber_id=link.subscriber_id, campaign_id=destination.id)
                db.add(destination_link)
            destination_link.tier = target_tier.value
            destination_link.group_id = target_group.id

            moved.append(TransitionSubscriber(subscriber_id=link.subscriber_id, email=email))

        logger.debug(
            f"Rule {current_tier.value}->{target_tier.value}: {len(moved)}/{len(rows)} subscribers moved"
        )
        return moved

    def _eligible(self, rule: TransitionRule, link: CampaignSubscriber, email: str) -> bool:
        if not rule.requires_purchase:
            return True
        if not link.purchase_id:
            return False
        try:
            return self.commerce.validate_order(link.purchase_id, email)
        except ApiError as exc:
            log_with_context(logger, "warning", "Order validation failed", email=email, error=str(exc))
            return False

    def list_transitions(self, limit: int = 50) -> List[Dict[str, Any]]:
        with session_scope(self._session_factory) as db:
            records = db.scalars(
                select(TransitionRecord)
                .where(TransitionRecord.subscriber_id.is_(None))
                .order_by(TransitionRecord.created_at.desc(), TransitionRecord.id.desc())
                .limit(limit)
            )
            return [
                {
                    "id": r.id,
                    "source_campaign_id": r.source_campaign_id,
                    "destination_campaign_id": r.destination_campaign_id,
                    "status": r.status.value,
                    "subscriber_count": r.subscriber_count,
                    "created_at": r.created_at.isoformat(),
                }
                for r in records
            ]
