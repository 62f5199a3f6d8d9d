"""
Reconciliation engine scenarios against in-memory providers.
"""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from bema_sync.lib.db import session_scope
from bema_sync.lib.errors import ApiError, CampaignNotFound, FailureRateExceeded, InvalidCampaignFormat, MissingRequiredGroups
from bema_sync.models import Campaign, CampaignField, CampaignStatus, CampaignSubscriber, SyncRun, TransitionRecord, TransitionStatus
from bema_sync.services.reconciliation_service import RunState
from bema_sync.services.tier_rules import Tier


CAMPAIGN = "2025_ETB_EOE"


def _link(session_factory, subscriber_id):
    with session_scope(session_factory) as db:
        return db.scalar(select(CampaignSubscriber).where(CampaignSubscriber.subscriber_id == subscriber_id))


def _transitions(session_factory):
    with session_scope(session_factory) as db:
        return list(db.scalars(select(TransitionRecord).order_by(TransitionRecord.id)))


@pytest.mark.unit
def test_new_subscriber_enters_at_opt_in(make_engine, email_provider, campaign, session_factory):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.state == RunState.COMPLETED
    assert result.applied == 1
    link = _link(session_factory, "1001")
    assert link.tier == Tier.OPT_IN.value
    assert link.group_id == "g-opt-in"

    records = _transitions(session_factory)
    assert len(records) == 1
    assert records[0].from_tier is None
    assert records[0].to_tier == "opt-in"
    assert records[0].status == TransitionStatus.COMPLETE
    assert ("add", "1001", "g-opt-in") in email_provider.calls
    assert not any(call[0] == "remove" for call in email_provider.calls)
    assert email_provider.updates == []


@pytest.mark.unit
def test_purchase_moves_bronze_to_silver(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory, metrics):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    commerce_provider.add_order("5001", "Buyer@Example.com")

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.applied == 1
    assert result.transitions == {"bronze->silver": 1}
    link = _link(session_factory, "1002")
    assert link.tier == Tier.SILVER.value
    assert link.purchase_id == "5001"
    assert email_provider.calls == [("remove", "1002", "g-bronze"), ("add", "1002", "g-silver")]
    assert email_provider.subscribers["1002"].groups == ["g-silver"]
    assert metrics.get_counter_value(
        "tier_transitions_total", {"campaign": CAMPAIGN, "from_tier": "bronze", "to_tier": "silver"}
    ) == 1


@pytest.mark.unit
def test_purchase_sets_campaign_purchase_field(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    email_provider.add("1003", "fan@example.com", ["g-opt-in"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    seed_link(campaign, "1003", "fan@example.com", Tier.OPT_IN, group_id="g-opt-in")
    commerce_provider.add_order("5001", "buyer@example.com")
    engine = make_engine()

    engine.process_tier_transitions(CAMPAIGN)
    engine.process_tier_transitions(CAMPAIGN)

    assert [f.name for f in email_provider.fields] == ["2025_ETB_EOE_PURCHASE"]
    assert email_provider.updates == [("1002", {"fields": {"2025_etb_eoe_purchase": 1}})]
    assert email_provider.subscribers["1002"].fields == {"2025_etb_eoe_purchase": 1}
    assert email_provider.subscribers["1003"].fields == {}
    with session_scope(session_factory) as db:
        stored = db.scalar(select(CampaignField))
        assert stored.campaign_id == campaign.id
        assert stored.name == "2025_ETB_EOE_PURCHASE"


@pytest.mark.unit
def test_refused_purchase_field_marks_transition_failed(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory, metrics):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    commerce_provider.add_order("5001", "buyer@example.com")
    email_provider.update_subscriber = lambda subscriber_id, data: False

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.failed == 1
    assert email_provider.subscribers["1002"].groups == ["g-silver"]
    assert [r.status for r in _transitions(session_factory)] == [TransitionStatus.FAILED]
    assert metrics.get_counter_value("external_push_failures_total", {"operation": "purchase_field"}) == 1
    assert metrics.get_counter_value("external_push_failures_total", {"operation": "group_swap"}) == 0


@pytest.mark.unit
def test_rerun_without_new_orders_is_idempotent(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    email_provider.add("1003", "gold@example.com", ["g-gold"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    seed_link(campaign, "1003", "gold@example.com", Tier.GOLD, group_id="g-gold")
    commerce_provider.add_order("5001", "buyer@example.com")
    engine = make_engine()

    engine.process_tier_transitions(CAMPAIGN)
    calls_after_first = list(email_provider.calls)
    records_after_first = len(_transitions(session_factory))

    second = engine.process_tier_transitions(CAMPAIGN)

    assert second.planned == 0
    assert second.unchanged == 2
    assert email_provider.calls == calls_after_first
    assert len(_transitions(session_factory)) == records_after_first
    assert _link(session_factory, "1002").tier == Tier.SILVER.value


@pytest.mark.unit
def test_new_order_after_upgrade_advances_again(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    commerce_provider.add_order("5001", "buyer@example.com")
    engine = make_engine()
    engine.process_tier_transitions(CAMPAIGN)

    commerce_provider.add_order("5002", "buyer@example.com", date=datetime(2025, 4, 1))
    engine.process_tier_transitions(CAMPAIGN)

    link = _link(session_factory, "1002")
    assert link.tier == Tier.GOLD.value
    assert link.purchase_id == "5002"


@pytest.mark.unit
def test_fetch_failure_changes_no_subscriber_state(make_engine, email_provider, campaign, seed_link, session_factory):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")

    def broken(status=None):
        raise ApiError("Service unavailable", endpoint="subscribers", status_code=503)

    email_provider.get_subscribers = broken
    engine = make_engine()

    with pytest.raises(ApiError):
        engine.process_tier_transitions(CAMPAIGN)

    assert engine.run_states[CAMPAIGN] == RunState.FAILED
    assert _link(session_factory, "1002").tier == Tier.BRONZE.value
    assert _transitions(session_factory) == []
    assert email_provider.calls == []
    with session_scope(session_factory) as db:
        run = db.scalar(select(SyncRun))
        assert run.status == "failed"
        assert "Service unavailable" in run.notes


@pytest.mark.unit
def test_missing_groups_abort_before_applying(make_engine, email_provider, campaign, session_factory):
    email_provider.groups = [g for g in email_provider.groups if not g.name.endswith("_WOOD")]
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])

    with pytest.raises(MissingRequiredGroups) as exc_info:
        make_engine().process_tier_transitions(CAMPAIGN)

    assert exc_info.value.missing == [f"{CAMPAIGN}_WOOD"]
    assert _transitions(session_factory) == []


@pytest.mark.unit
def test_invalid_or_unknown_campaign(make_engine):
    engine = make_engine()

    with pytest.raises(InvalidCampaignFormat):
        engine.process_tier_transitions("BADFORMAT")
    with pytest.raises(CampaignNotFound):
        engine.process_tier_transitions("2030_XX_YY")


@pytest.mark.unit
def test_non_retryable_push_failure_keeps_local_tier(make_engine, email_provider, commerce_provider, campaign, seed_link, session_factory, metrics):
    email_provider.add("1002", "buyer@example.com", ["g-bronze"])
    seed_link(campaign, "1002", "buyer@example.com", Tier.BRONZE, group_id="g-bronze")
    commerce_provider.add_order("5001", "buyer@example.com")
    email_provider.fail_add["g-silver"] = ApiError("Unprocessable", endpoint="groups", method="POST", status_code=422)

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.state == RunState.COMPLETED
    assert result.failed == 1
    assert result.applied == 0
    assert _link(session_factory, "1002").tier == Tier.SILVER.value
    records = _transitions(session_factory)
    assert [r.status for r in records] == [TransitionStatus.FAILED]
    assert metrics.get_counter_value("external_push_failures_total", {"operation": "group_swap"}) == 1


@pytest.mark.unit
def test_push_failures_trip_failure_rate(make_engine, email_provider, campaign):
    for i in range(4):
        email_provider.add(str(2000 + i), f"fan{i}@example.com", ["g-opt-in"])
    email_provider.fail_add["g-opt-in"] = ApiError("Forbidden", endpoint="groups", method="POST", status_code=403)
    engine = make_engine(failure_rate_threshold=0.2)

    with pytest.raises(FailureRateExceeded) as exc_info:
        engine.process_tier_transitions(CAMPAIGN)

    assert exc_info.value.results["failed"] == 2
    assert engine.run_states[CAMPAIGN] == RunState.FAILED


@pytest.mark.unit
def test_retryable_push_failure_converges(make_engine, email_provider, campaign, session_factory):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])
    original_add = email_provider.add_subscriber_to_group
    attempts = []

    def flaky_add(subscriber_id, group_id):
        attempts.append(group_id)
        if len(attempts) == 1:
            raise ApiError("Rate limited", endpoint="groups", method="POST", status_code=429)
        return original_add(subscriber_id, group_id)

    email_provider.add_subscriber_to_group = flaky_add

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.applied == 1
    assert result.retried == 1
    assert len(attempts) == 2
    records = _transitions(session_factory)
    assert len(records) == 1
    assert records[0].status == TransitionStatus.COMPLETE


@pytest.mark.unit
def test_opt_in_advances_to_bronze_on_next_run(make_engine, email_provider, campaign, session_factory):
    """
    Opt-in always advances to bronze, purchase or not, so a second run over
    unchanged provider data still moves a fresh opt-in one step. Reruns are
    idempotent only once a subscriber sits on a tier whose no-purchase step
    is itself (bronze, silver, gold); opt-in is the one tier that trades
    that for getting new fans onto the bronze ladder without an order.
    """
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])
    engine = make_engine()

    engine.process_tier_transitions(CAMPAIGN)
    engine.process_tier_transitions(CAMPAIGN)

    assert _link(session_factory, "1001").tier == Tier.BRONZE.value
    assert [r.to_tier for r in _transitions(session_factory)] == ["opt-in", "bronze"]


@pytest.mark.unit
def test_run_activates_campaign_and_logs_run(make_engine, email_provider, campaign, session_factory):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])

    make_engine().process_tier_transitions(CAMPAIGN)

    with session_scope(session_factory) as db:
        stored = db.scalar(select(Campaign).where(Campaign.name == CAMPAIGN))
        assert stored.status == CampaignStatus.ACTIVE
        assert db.scalar(select(func.count()).select_from(SyncRun)) == 1
        assert db.scalar(select(SyncRun)).synced_subscribers == 1


@pytest.mark.unit
def test_subscribers_outside_campaign_groups_are_ignored(make_engine, email_provider, campaign, session_factory):
    email_provider.add("1001", "fan@example.com", ["g-opt-in"])
    email_provider.add("1009", "other@example.com", ["newsletter"])

    result = make_engine().process_tier_transitions(CAMPAIGN)

    assert result.fetched == 2
    assert result.evaluated == 1
    assert _link(session_factory, "1009") is None
