"""
Reconciliation engine.

Runs one campaign through ``idle -> fetching -> computing -> applying ->
completed|failed``:

- fetching: subscribers and groups from the email-marketing platform, orders
  for the campaign's product from the commerce store. A failure here aborts
  before any subscriber state is touched.
- computing: for every subscriber in one of the campaign's groups, derive
  the next tier from the stored tier and whether a new purchase exists.
  Subscribers without a campaign link enter at opt-in.
- applying: each planned transition is written locally (campaign link upsert
  plus transition record) and then pushed to the email-marketing platform
  (leave the old tier's group, join the new one). The batch processor
  chunks, retries and checkpoints this step. Local and external writes are
  not atomic: a non-retryable push failure is logged, its transition record
  is marked Failed and the run moves on. A purchase that moved the
  subscriber also sets the campaign's ``<CAMPAIGN>_PURCHASE`` field to 1.

A subscriber's purchase counts once: the order that advanced them is stored
on the link, so rerunning with no new orders changes nothing.
"""
import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select

from bema_sync.lib.cancellation import CancellationToken
from bema_sync.lib.config_flags import BatchTuning
from bema_sync.lib.db import SessionFactory, retry_on_deadlock, session_scope
from bema_sync.lib.errors import ApiError, BatchError, CampaignNotFound, MissingRequiredGroups, SyncError
from bema_sync.lib.logging import get_logger, log_with_context
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.state_store import StateStore
from bema_sync.models.campaign import Campaign, CampaignStatus
from bema_sync.models.campaign_subscriber import CampaignSubscriber
from bema_sync.models.subscriber import Subscriber
from bema_sync.models.transition import TransitionRecord, TransitionStatus
from bema_sync.providers.base import CommerceProvider, FieldRecord, OrderRecord, Provider, SubscriberRecord
from bema_sync.services.batch_processor import BatchProcessor, stable_item_id
from bema_sync.services.campaign_service import FieldService, GroupService, campaign_groups
from bema_sync.services.health_monitor import HealthMonitor
from bema_sync.services.subscriber_service import SubscriberService
from bema_sync.services.sync_log_service import SyncLogService
from bema_sync.services.tier_rules import (
    Tier,
    next_tier,
    normalize_tier,
    parse_campaign_code,
    validate_required_groups,
)


logger = get_logger(__name__)


class RunState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    COMPUTING = "computing"
    APPLYING = "applying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ReconciliationResult:
    campaign: str
    state: RunState = RunState.IDLE
    fetched: int = 0
    evaluated: int = 0
    planned: int = 0
    unchanged: int = 0
    applied: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    memory_peak: int = 0
    error: Optional[str] = None
    transitions: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class ReconciliationEngine:
    """Computes and applies tier transitions for one campaign at a time."""

    def __init__(
        self,
        session_factory: SessionFactory,
        email_provider: Provider,
        commerce_provider: CommerceProvider,
        store: StateStore,
        tuning: Optional[BatchTuning] = None,
        health: Optional[HealthMonitor] = None,
        metrics: Optional[MetricsCollector] = None,
        sync_log: Optional[SyncLogService] = None,
        sleep: Optional[Callable[[float], None]] = None,
        memory_reader: Optional[Callable[[], int]] = None,
    ):
        self._session_factory = session_factory
        self.email = email_provider
        self.commerce = commerce_provider
        self.store = store
        self.tuning = tuning or BatchTuning()
        self.health = health
        self.metrics = metrics or MetricsCollector()
        self.sync_log = sync_log or SyncLogService(session_factory)
        self.subscribers = SubscriberService(session_factory)
        self.groups = GroupService(session_factory)
        self.fields = FieldService(session_factory, email_provider)
        self._batch_overrides = {
            k: v for k, v in (("sleep", sleep), ("memory_reader", memory_reader)) if v is not None
        }
        self.run_states: Dict[str, RunState] = {}

    def process_tier_transitions(
        self,
        campaign_name: str,
        cancellation: Optional[CancellationToken] = None,
        progress_callback: Optional[Callable[[int, int, Dict[str, Any]], None]] = None,
        failure_callback: Optional[Callable] = None,
    ) -> ReconciliationResult:
        """
        Reconcile one campaign.

        Args:
            campaign_name: Campaign name, e.g. 2025_ETB_EOE
            cancellation: Stop signal checked between chunks
            progress_callback: Receives (chunk, total_chunks, info) after each chunk
            failure_callback: Receives (chunk or None, error) on chunk or run failure

        Returns:
            ReconciliationResult with the final state and counters

        Raises:
            InvalidCampaignFormat, CampaignNotFound, MissingRequiredGroups:
                the campaign cannot be reconciled
            ApiError: fetching from a provider failed
            BatchError: applying aborted (stopped, retries exhausted, ceilings)
        """
        result = ReconciliationResult(campaign=campaign_name)
        parse_campaign_code(campaign_name)
        campaign = self._load_campaign(campaign_name)

        try:
            self._set_state(result, RunState.FETCHING)
            subscribers, groups, orders = self._fetch(campaign)
            result.fetched = len(subscribers)

            validation = validate_required_groups(campaign.name, [g.name for g in groups])
            if not validation.valid:
                raise MissingRequiredGroups(campaign.name, validation.missing)

            self._set_state(result, RunState.COMPUTING)
            tier_groups = {tier: group.id for tier, group in campaign_groups(campaign.name, groups).items()}
            members = [s for s in subscribers if set(s.groups) & set(tier_groups.values())]
            self.groups.sync_campaign_groups(groups)
            purchase_field = self.fields.ensure_purchase_fields([campaign.name]).get(campaign.name)
            self.subscribers.sync_subscribers(members)

            items = self._plan(campaign, members, orders, tier_groups, result, purchase_field)

            self._set_state(result, RunState.APPLYING)
            self._activate(campaign)
            if items:
                processor = BatchProcessor(
                    lambda item: self._apply_transition(campaign, item),
                    store=self.store,
                    tuning=self.tuning,
                    scope=campaign.name,
                    cancellation=cancellation,
                    health=self.health,
                    metrics=self.metrics,
                    progress_callback=progress_callback,
                    failure_callback=failure_callback,
                    **self._batch_overrides,
                )
                batch = processor.process(items)
                result.applied = batch.success
                result.failed = batch.failed
                result.skipped = batch.skipped
                result.retried = batch.retried
                result.memory_peak = batch.memory_peak

            self._set_state(result, RunState.COMPLETED)
            self.sync_log.record(campaign.name, result.state.value, result.as_dict())
            log_with_context(logger, "info", "Reconciliation completed", **result.as_dict())
            return result

        except Exception as exc:
            if isinstance(exc, BatchError):
                result.applied = exc.results.get("success", result.applied)
                result.failed = exc.results.get("failed", result.failed)
                result.skipped = exc.results.get("skipped", result.skipped)
                result.retried = exc.results.get("retried", result.retried)
                result.memory_peak = exc.results.get("memory_peak", result.memory_peak)
            failed_in = result.state
            result.error = str(exc)
            self._set_state(result, RunState.FAILED)
            log_with_context(
                logger, "error", "Reconciliation failed",
                campaign=campaign.name,
                stage=failed_in.value,
                error_type=exc.__class__.__name__,
                error=str(exc),
                retryable=getattr(exc, "retryable", False),
            )
            self.sync_log.record(campaign.name, result.state.value, result.as_dict(), notes=str(exc))
            raise

    # ===== Stages =====

    def _load_campaign(self, name: str) -> Campaign:
        with session_scope(self._session_factory) as db:
            campaign = db.scalar(select(Campaign).where(Campaign.name == name))
            if campaign is None:
                raise CampaignNotFound(name)
            return campaign

    def _fetch(self, campaign: Campaign):
        try:
            subscribers = self.email.get_subscribers()
            groups = self.email.get_groups()
            orders = self.commerce.get_orders(campaign.product_id) if campaign.product_id else []
        except SyncError:
            raise
        except Exception as exc:
            raise ApiError(f"Fetching provider data failed: {exc}") from exc
        return subscribers, groups, orders

    def _plan(
        self,
        campaign: Campaign,
        members: List[SubscriberRecord],
        orders: List[OrderRecord],
        tier_groups: Dict[Tier, str],
        result: ReconciliationResult,
        purchase_field: Optional[FieldRecord] = None,
    ) -> List[Dict[str, Any]]:
        latest_order: Dict[str, OrderRecord] = {}
        for order in orders:
            key = order.email.strip().lower()
            current = latest_order.get(key)
            if current is None or _order_sort_key(order) > _order_sort_key(current):
                latest_order[key] = order

        with session_scope(self._session_factory) as db:
            links = {
                link.subscriber_id: (link.tier, link.group_id, link.purchase_id)
                for link in db.scalars(
                    select(CampaignSubscriber).where(CampaignSubscriber.campaign_id == campaign.id)
                )
            }
            known = set(db.scalars(
                select(Subscriber.id).where(Subscriber.id.in_([s.id for s in members]))
            ))

        items = []
        for subscriber in members:
            result.evaluated += 1
            if subscriber.id not in known:
                log_with_context(
                    logger, "warning", "Subscriber not stored locally, skipping",
                    campaign=campaign.name,
                    subscriber_id=subscriber.id,
                )
                result.unchanged += 1
                continue
            order = latest_order.get(subscriber.email.strip().lower())
            link = links.get(subscriber.id)

            has_purchased = False
            if link is None:
                from_tier, to_tier = None, Tier.OPT_IN
                purchase_id, old_group = None, None
            else:
                stored_tier, old_group, purchase_id = link
                from_tier = normalize_tier(stored_tier)
                if from_tier is None:
                    logger.debug(f"Unknown stored tier '{stored_tier}' for {subscriber.id}, leaving it")
                    result.unchanged += 1
                    continue
                has_purchased = order is not None and order.id != purchase_id
                to_tier = next_tier(from_tier, has_purchased)
                if to_tier == from_tier:
                    result.unchanged += 1
                    continue
                if has_purchased:
                    purchase_id = order.id
                old_group = old_group or tier_groups.get(from_tier)

            items.append({
                "id": stable_item_id(subscriber.id),
                "subscriber_id": subscriber.id,
                "email": subscriber.email,
                "from_tier": from_tier.value if from_tier else None,
                "to_tier": to_tier.value,
                "purchase_id": purchase_id,
                "old_group_id": old_group,
                "new_group_id": tier_groups.get(to_tier),
                "purchase_field": purchase_field.payload_key if purchase_field and has_purchased else None,
            })
            key = f"{from_tier.value if from_tier else 'none'}->{to_tier.value}"
            result.transitions[key] = result.transitions.get(key, 0) + 1

        items.sort(key=lambda item: item["id"])
        result.planned = len(items)
        return items

    def _activate(self, campaign: Campaign) -> None:
        if campaign.status in (CampaignStatus.DRAFT, CampaignStatus.PENDING):
            with session_scope(self._session_factory) as db:
                stored = db.get(Campaign, campaign.id)
                stored.advance_status(CampaignStatus.ACTIVE)
            campaign.status = CampaignStatus.ACTIVE
            logger.info(f"Campaign {campaign.name} activated")

    # ===== Per-subscriber apply =====

    def _apply_transition(self, campaign: Campaign, item: Dict[str, Any]) -> bool:
        transition_id = self._write_local(campaign, item)

        operation = "group_swap"
        try:
            if item["old_group_id"] and item["old_group_id"] != item["new_group_id"]:
                self.email.remove_subscriber_from_group(item["subscriber_id"], item["old_group_id"])
            if item["new_group_id"]:
                added = self.email.add_subscriber_to_group(item["subscriber_id"], item["new_group_id"])
                if added is False:
                    raise ApiError(
                        "Provider refused group membership change",
                        endpoint=f"groups/{item['new_group_id']}",
                        method="POST",
                        status_code=400,
                    )
            if item.get("purchase_field"):
                operation = "purchase_field"
                updated = self.email.update_subscriber(
                    item["subscriber_id"], {"fields": {item["purchase_field"]: 1}}
                )
                if updated is False:
                    raise ApiError(
                        "Provider refused purchase field update",
                        endpoint=f"subscribers/{item['subscriber_id']}",
                        method="PUT",
                        status_code=400,
                    )
        except ApiError as exc:
            if exc.retryable:
                raise
            self.metrics.increment_push_failures(operation)
            log_with_context(
                logger, "error", "Subscriber push failed, local tier kept",
                operation=operation,
                campaign=campaign.name,
                subscriber_id=item["subscriber_id"],
                from_tier=item["from_tier"],
                to_tier=item["to_tier"],
                error=str(exc),
            )
            if transition_id is not None:
                self._mark_transition_failed(transition_id)
            return False

        self.metrics.increment_transitions(campaign.name, item["from_tier"] or "none", item["to_tier"])
        return True

    @retry_on_deadlock
    def _write_local(self, campaign: Campaign, item: Dict[str, Any]) -> Optional[int]:
        """
        Upsert the campaign link and append a transition record.

        Returns:
            The new transition record id, or None when the link already holds
            the target tier (re-delivery of an applied item)
        """
        with session_scope(self._session_factory) as db:
            link = db.scalar(
                select(CampaignSubscriber).where(
                    CampaignSubscriber.subscriber_id == item["subscriber_id"],
                    CampaignSubscriber.campaign_id == campaign.id,
                )
            )
            if link is not None and link.tier == item["to_tier"]:
                return None

            if link is None:
                link = CampaignSubscriber(subscriber_id=item["subscriber_id"], campaign_id=campaign.id)
                db.add(link)
            link.tier = item["to_tier"]
            link.group_id = item["new_group_id"]
            link.purchase_id = item["purchase_id"]

            record = TransitionRecord(
                source_campaign_id=campaign.id,
                destination_campaign_id=campaign.id,
                subscriber_id=item["subscriber_id"],
                from_tier=item["from_tier"],
                to_tier=item["to_tier"],
                status=TransitionStatus.COMPLETE,
                subscriber_count=1,
            )
            db.add(record)
            db.flush()
            return record.id

    def _mark_transition_failed(self, transition_id: int) -> None:
        with session_scope(self._session_factory) as db:
            record = db.get(TransitionRecord, transition_id)
            if record is not None:
                record.status = TransitionStatus.FAILED

    def _set_state(self, result: ReconciliationResult, state: RunState) -> None:
        result.state = state
        self.run_states[result.campaign] = state
        logger.debug(f"Campaign {result.campaign} -> {state.value}")


def _order_sort_key(order: OrderRecord):
    return (order.date.timestamp() if order.date else 0.0, stable_item_id(order.id) or 0)
