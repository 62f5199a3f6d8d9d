"""
Shared fixtures: in-memory database, state store and in-memory providers.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest

from bema_sync.lib.config_flags import BatchTuning
from bema_sync.lib.db import create_db_engine, create_session_factory, init_db, session_scope
from bema_sync.lib.errors import ApiError
from bema_sync.lib.metrics import MetricsCollector
from bema_sync.lib.state_store import StateStore
from bema_sync.models import CampaignSubscriber, Subscriber
from bema_sync.providers.base import (
    AlbumRecord,
    CommerceProvider,
    FieldRecord,
    GroupRecord,
    OrderRecord,
    Provider,
    SubscriberRecord,
)
from bema_sync.services.campaign_service import CampaignService, GroupService
from bema_sync.services.reconciliation_service import ReconciliationEngine
from bema_sync.services.tier_rules import Tier, group_name


CAMPAIGN = "2025_ETB_EOE"
NEXT_CAMPAIGN = "2026_ETB_ROF"
PRODUCT_ID = 42


def campaign_group_records(campaign: str, prefix: str = "g") -> List[GroupRecord]:
    """One group per tier, with ids like ``g-bronze``."""
    return [
        GroupRecord(id=f"{prefix}-{tier.value}", name=group_name(campaign, tier))
        for tier in Tier
        if tier is not Tier.UNASSIGNED
    ]


class FakeEmailProvider(Provider):
    """Email-marketing platform held in memory; records every membership call."""

    def __init__(self, groups: Optional[List[GroupRecord]] = None):
        self.subscribers: Dict[str, SubscriberRecord] = {}
        self.groups: List[GroupRecord] = list(groups or [])
        self.calls: List[tuple] = []
        self.fail_add: Dict[str, Exception] = {}
        self.fields: List[FieldRecord] = []
        self.updates: List[tuple] = []

    def add(self, subscriber_id: str, email: str, groups: List[str]) -> SubscriberRecord:
        record = SubscriberRecord(id=subscriber_id, email=email, groups=list(groups))
        self.subscribers[subscriber_id] = record
        return record

    def validate_connection(self) -> bool:
        return True

    def get_subscribers(self, status: Optional[str] = None) -> List[SubscriberRecord]:
        return [s.model_copy(deep=True) for s in self.subscribers.values()]

    def update_subscriber(self, subscriber_id: str, data: Dict[str, Any]) -> bool:
        self.updates.append((subscriber_id, data))
        subscriber = self.subscribers.get(subscriber_id)
        if subscriber is None:
            return False
        subscriber.fields.update(data.get("fields") or {})
        return True

    def get_fields(self) -> List[FieldRecord]:
        return list(self.fields)

    def create_field(self, name: str, field_type: str = "number") -> Optional[FieldRecord]:
        record = FieldRecord(id=f"f-{len(self.fields) + 1}", name=name, key=name.lower(), type=field_type)
        self.fields.append(record)
        return record

    def add_subscriber_to_group(self, subscriber_id: str, group_id: str) -> bool:
        self.calls.append(("add", subscriber_id, group_id))
        error = self.fail_add.get(group_id)
        if error is not None:
            raise error
        subscriber = self.subscribers.get(subscriber_id)
        if subscriber is not None and group_id not in subscriber.groups:
            subscriber.groups.append(group_id)
        return True

    def remove_subscriber_from_group(self, subscriber_id: str, group_id: str) -> bool:
        self.calls.append(("remove", subscriber_id, group_id))
        subscriber = self.subscribers.get(subscriber_id)
        if subscriber is not None and group_id in subscriber.groups:
            subscriber.groups.remove(group_id)
        return True

    def get_groups(self) -> List[GroupRecord]:
        return list(self.groups)

    def add_or_update_subscriber(self, data: Dict[str, Any]) -> str:
        subscriber_id = data.get("id") or str(len(self.subscribers) + 1)
        self.add(subscriber_id, data["email"], data.get("groups", []))
        return subscriber_id


class FakeCommerceProvider(CommerceProvider):
    """Commerce store held in memory."""

    def __init__(self):
        self.orders: List[OrderRecord] = []
        self.albums: List[AlbumRecord] = []

    def add_order(self, order_id: str, email: str, product_id: int = PRODUCT_ID, date: Optional[datetime] = None) -> OrderRecord:
        order = OrderRecord(id=order_id, email=email, product_ids=[product_id], date=date or datetime(2025, 3, 1))
        self.orders.append(order)
        return order

    def validate_connection(self) -> bool:
        return True

    def get_subscribers(self, status: Optional[str] = None) -> List[SubscriberRecord]:
        return []

    def update_subscriber(self, subscriber_id: str, data: Dict[str, Any]) -> bool:
        return False

    def add_subscriber_to_group(self, subscriber_id: str, group_id: str) -> bool:
        return False

    def remove_subscriber_from_group(self, subscriber_id: str, group_id: str) -> bool:
        return False

    def get_groups(self) -> List[GroupRecord]:
        return []

    def add_or_update_subscriber(self, data: Dict[str, Any]) -> str:
        raise ApiError("Not supported", endpoint="customers", method="POST", status_code=405)

    def get_orders(self, product_id: Optional[int] = None) -> List[OrderRecord]:
        return [o for o in self.orders if product_id is None or product_id in o.product_ids]

    def get_albums(self) -> List[AlbumRecord]:
        return list(self.albums)

    def validate_order(self, order_id: str, email: str) -> bool:
        return any(o.id == order_id and o.email.lower() == email.lower() for o in self.orders)


@pytest.fixture
def db_engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory):
    return StateStore(session_factory)


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def email_provider():
    return FakeEmailProvider(groups=campaign_group_records(CAMPAIGN))


@pytest.fixture
def commerce_provider():
    return FakeCommerceProvider()


@pytest.fixture
def campaign(session_factory):
    """The campaign under test, stored locally and linked to its product."""
    return CampaignService(session_factory).upsert_campaign(CAMPAIGN, product_id=PRODUCT_ID)


@pytest.fixture
def tuning():
    return BatchTuning(
        batch_size=2,
        retry_attempts=2,
        retry_delay_seconds=1,
        memory_limit="unlimited",
        failure_rate_threshold=1.0,
    )


@pytest.fixture
def make_engine(session_factory, email_provider, commerce_provider, store, metrics, tuning):
    """Factory for a reconciliation engine that never sleeps."""

    def _make(**tuning_overrides) -> ReconciliationEngine:
        return ReconciliationEngine(
            session_factory,
            email_provider,
            commerce_provider,
            store,
            tuning=tuning.model_copy(update=tuning_overrides),
            metrics=metrics,
            sleep=lambda seconds: None,
            memory_reader=lambda: 0,
        )

    return _make


@pytest.fixture
def seed_link(session_factory):
    """Store a subscriber with an existing tier in a campaign."""

    def _seed(campaign, subscriber_id: str, email: str, tier: Tier, group_id: Optional[str] = None, purchase_id: Optional[str] = None):
        with session_scope(session_factory) as db:
            if db.get(Subscriber, subscriber_id) is None:
                db.add(Subscriber(id=subscriber_id, email=email))
                db.flush()
            db.add(CampaignSubscriber(
                subscriber_id=subscriber_id,
                campaign_id=campaign.id,
                tier=tier.value,
                group_id=group_id,
                purchase_id=purchase_id,
            ))

    return _seed


@pytest.fixture
def store_groups(session_factory):
    """Map provider groups to local campaigns."""

    def _store(groups: List[GroupRecord]) -> int:
        return GroupService(session_factory).sync_campaign_groups(groups)

    return _store
