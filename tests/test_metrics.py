"""Tests for the operation counters."""

import threading

import pytest

from audited_db.metrics import COUNTERS, Metrics, MetricsSnapshot


@pytest.mark.unit
def test_counters_start_at_zero():
    snapshot = Metrics().snapshot()

    assert snapshot == MetricsSnapshot()
    assert set(snapshot.as_dict()) == set(COUNTERS)
    assert all(value == 0 for value in snapshot.as_dict().values())


@pytest.mark.unit
def test_increment_adds_to_the_named_counter():
    metrics = Metrics()
    metrics.increment("inserts")
    metrics.increment("inserts", 2)
    metrics.increment("replay_skipped")

    assert metrics.snapshot().inserts == 3
    assert metrics.snapshot().replay_skipped == 1
    assert metrics.snapshot().updates == 0


@pytest.mark.unit
def test_unknown_counter_is_rejected():
    metrics = Metrics()

    with pytest.raises(KeyError, match="Unknown metric"):
        metrics.increment("bogus")


@pytest.mark.unit
def test_snapshot_is_a_copy():
    metrics = Metrics()
    before = metrics.snapshot()
    metrics.increment("errors")

    assert before.errors == 0
    assert metrics.snapshot().errors == 1


@pytest.mark.unit
def test_concurrent_increments_are_not_lost():
    metrics = Metrics()

    def bump():
        for _ in range(1000):
            metrics.increment("queries")

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert metrics.snapshot().queries == 8000
