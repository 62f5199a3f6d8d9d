"""
Tests for the key/value state store and cooperative cancellation.
"""
import pytest

from bema_sync.lib.cancellation import CancellationRegistry, CancellationToken


@pytest.mark.unit
def test_set_get_delete(store):
    assert store.get("missing") is None
    assert store.get("missing", {}) == {}

    store.set("sync_schedules", {"hourly": {"campaigns": ["2025_ETB_EOE"]}})
    assert store.get("sync_schedules") == {"hourly": {"campaigns": ["2025_ETB_EOE"]}}

    store.set("sync_schedules", {})
    assert store.get("sync_schedules") == {}

    assert store.delete("sync_schedules") is True
    assert store.delete("sync_schedules") is False


@pytest.mark.unit
def test_prefix_queries(store):
    store.set("sync_status:hourly", {"status": "running"})
    store.set("sync_status:daily", {"status": "completed"})
    store.set("sync_stats", {"total_runs": 1})

    assert store.keys("sync_status:") == ["sync_status:daily", "sync_status:hourly"]
    assert store.items("sync_status:") == {
        "sync_status:daily": {"status": "completed"},
        "sync_status:hourly": {"status": "running"},
    }


@pytest.mark.unit
def test_append_bounded_keeps_newest(store):
    for i in range(5):
        store.append_bounded("sync_failures", {"n": i}, limit=3)

    assert [entry["n"] for entry in store.get("sync_failures")] == [4, 3, 2]


@pytest.mark.unit
def test_append_bounded_oldest_first(store):
    for i in range(5):
        store.append_bounded("log", i, limit=3, newest_first=False)

    assert store.get("log") == [2, 3, 4]


@pytest.mark.unit
def test_cancellation_is_visible_across_tokens(store):
    requester = CancellationToken("hourly", store)
    worker = CancellationToken("hourly", store)

    assert worker.is_cancelled() is False
    requester.cancel()
    assert worker.is_cancelled() is True

    worker.reset()
    assert CancellationToken("hourly", store).is_cancelled() is False


@pytest.mark.unit
def test_new_run_gets_a_fresh_token(store):
    registry = CancellationRegistry(store)
    first = registry.issue("job-1")

    registry.cancel()
    second = registry.issue("job-2")

    assert first.is_cancelled() is True
    assert second.is_cancelled() is False

    registry.discard("job-2")
    assert first.is_cancelled() is True
    assert registry.active() == ["job-1"]
