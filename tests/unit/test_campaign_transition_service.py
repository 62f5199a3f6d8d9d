"""
Tests for moving qualified subscribers from one campaign into the next.
"""
import pytest
from sqlalchemy import select

from bema_sync.lib.config_flags import TransitionRule
from bema_sync.lib.db import session_scope
from bema_sync.lib.errors import ApiError, CampaignNotFound
from bema_sync.models import CampaignSubscriber, TransitionSubscriber
from bema_sync.providers.base import GroupRecord
from bema_sync.services.campaign_service import CampaignService
from bema_sync.services.campaign_transition_service import CampaignTransitionService
from bema_sync.services.tier_rules import Tier, group_name


SOURCE = "2025_ETB_EOE"
DESTINATION = "2026_ETB_ROF"


@pytest.fixture
def destination(session_factory, store_groups):
    campaign = CampaignService(session_factory).upsert_campaign(DESTINATION, product_id=43)
    store_groups([
        GroupRecord(id=f"n-{tier.value}", name=group_name(DESTINATION, tier))
        for tier in (Tier.OPT_IN, Tier.GOLD, Tier.SILVER)
    ])
    return campaign


@pytest.fixture
def service(session_factory, email_provider, commerce_provider, metrics):
    return CampaignTransitionService(session_factory, email_provider, commerce_provider, metrics)


def _destination_links(session_factory, campaign_id):
    with session_scope(session_factory) as db:
        return {
            link.subscriber_id: (link.tier, link.group_id)
            for link in db.scalars(select(CampaignSubscriber).where(CampaignSubscriber.campaign_id == campaign_id))
        }


@pytest.mark.unit
def test_default_rules_move_validated_buyers(service, campaign, destination, seed_link, commerce_provider, email_provider, session_factory):
    seed_link(campaign, "3001", "gold@example.com", Tier.GOLD, purchase_id="7001")
    seed_link(campaign, "3002", "silver@example.com", Tier.SILVER, purchase_id="7002")
    seed_link(campaign, "3003", "bronze@example.com", Tier.BRONZE)
    seed_link(campaign, "3004", "plain@example.com", Tier.GOLD)
    seed_link(campaign, "3005", "label@example.com", Tier.GOLD_PURCHASED, purchase_id="7005")
    commerce_provider.add_order("7001", "GOLD@example.com")
    commerce_provider.add_order("7005", "label@example.com")

    result = service.transition_campaigns(SOURCE, DESTINATION)

    assert result["status"] == "Complete"
    assert result["subscriber_count"] == 2
    assert _destination_links(session_factory, destination.id) == {
        "3001": (Tier.GOLD.value, "n-gold"),
        "3003": (Tier.OPT_IN.value, "n-opt-in"),
    }
    assert email_provider.calls == [("add", "3001", "n-gold"), ("add", "3003", "n-opt-in")]
    with session_scope(session_factory) as db:
        moved = db.scalars(
            select(TransitionSubscriber).where(TransitionSubscriber.transition_id == result["transition_id"])
        ).all()
        assert sorted(s.email for s in moved) == ["bronze@example.com", "gold@example.com"]

    history = service.list_transitions()
    assert len(history) == 1
    assert history[0]["subscriber_count"] == 2
    assert history[0]["destination_campaign_id"] == destination.id


@pytest.mark.unit
def test_rule_without_purchase_requirement(service, campaign, destination, seed_link, session_factory):
    seed_link(campaign, "3004", "plain@example.com", Tier.SILVER)
    rules = [TransitionRule(current_tier="Silver", next_tier="Silver")]

    result = service.transition_campaigns(SOURCE, DESTINATION, rules)

    assert result["subscriber_count"] == 1
    assert _destination_links(session_factory, destination.id) == {"3004": (Tier.SILVER.value, "n-silver")}


@pytest.mark.unit
def test_push_failure_skips_subscriber(service, campaign, destination, seed_link, email_provider, metrics, session_factory):
    seed_link(campaign, "3004", "plain@example.com", Tier.SILVER)
    email_provider.fail_add["n-silver"] = ApiError("Bad request", endpoint="groups", method="POST", status_code=400)

    result = service.transition_campaigns(SOURCE, DESTINATION, [TransitionRule(current_tier="silver", next_tier="silver")])

    assert result["subscriber_count"] == 0
    assert result["transition_id"] is None
    assert service.list_transitions() == []
    assert _destination_links(session_factory, destination.id) == {}
    assert metrics.get_counter_value("external_push_failures_total", {"operation": "add_to_group"}) == 1


@pytest.mark.unit
def test_unknown_campaign(service, campaign):
    with pytest.raises(CampaignNotFound):
        service.transition_campaigns(SOURCE, DESTINATION)


@pytest.mark.unit
def test_no_rules(service, campaign, destination):
    assert service.transition_campaigns(SOURCE, DESTINATION, []) == {
        "transition_id": None,
        "status": None,
        "subscriber_count": 0,
    }


@pytest.mark.unit
def test_reconciled_subscribers_carry_into_next_campaign(service, make_engine, campaign, destination, email_provider, commerce_provider, session_factory):
    email_provider.add("4001", "buyer@example.com", ["g-opt-in"])
    email_provider.add("4002", "fan@example.com", ["g-opt-in"])
    commerce_provider.add_order("8001", "buyer@example.com")
    engine = make_engine()
    engine.process_tier_transitions(SOURCE)
    engine.process_tier_transitions(SOURCE)

    result = service.transition_campaigns(SOURCE, DESTINATION)

    assert result["status"] == "Complete"
    assert result["subscriber_count"] == 2
    assert _destination_links(session_factory, destination.id) == {
        "4001": (Tier.GOLD.value, "n-gold"),
        "4002": (Tier.OPT_IN.value, "n-opt-in"),
    }
    assert [h["subscriber_count"] for h in service.list_transitions()] == [2]
