"""Tests for latencykit.registry module."""

from __future__ import annotations

import threading

import pytest

from latencykit.aggregator import BucketLayout
from latencykit.config import LatencyConfig
from latencykit.diagnostics import DiagnosticCounter, Diagnostics
from latencykit.exceptions import AggregatorMismatchError, MetricsError
from latencykit.registry import MetricKey, MetricsRegistry, RegistrySnapshot
from latencykit.spans import TimerSample


MS = 1_000_000


class TestMetricKey:
    """Tests for MetricKey."""

    def test_label_order_does_not_matter(self):
        """Test keys built from differently ordered labels are equal."""
        a = MetricKey.of("http", {"route": "/a", "method": "GET"})
        b = MetricKey.of("http", {"method": "GET", "route": "/a"})
        assert a == b
        assert hash(a) == hash(b)

    def test_values_are_stringified(self):
        """Test label values become strings."""
        key = MetricKey.of("http", {"status_code": 200})
        assert key.label_dict == {"status_code": "200"}

    def test_empty_name_raises(self):
        """Test an empty metric name is rejected."""
        with pytest.raises(MetricsError):
            MetricKey("")

    def test_str(self):
        """Test string rendering."""
        assert str(MetricKey("http")) == "http"
        assert str(MetricKey.of("http", {"route": "/a"})) == "http{route=/a}"


class TestMetricsRegistry:
    """Tests for MetricsRegistry."""

    def test_record_creates_aggregator(self, registry):
        """Test the first sample for a key creates its aggregator."""
        registry.record(TimerSample("http", {"route": "/users"}, 12 * MS))
        registry.record(TimerSample("http", {"route": "/users"}, 14 * MS))

        assert len(registry) == 1
        aggregator = registry.get(MetricKey.of("http", {"route": "/users"}))
        assert aggregator is not None
        assert aggregator.snapshot().count == 2

    def test_distinct_label_sets_are_distinct_series(self, registry):
        """Test different label sets aggregate separately."""
        registry.record(TimerSample("http", {"route": "/a"}, MS))
        registry.record(TimerSample("http", {"route": "/b"}, MS))
        assert len(registry) == 2

    def test_get_or_create_returns_same_instance(self, registry):
        """Test repeated lookups return the same aggregator."""
        key = MetricKey("db")
        assert registry.get_or_create(key) is registry.get_or_create(key)

    def test_concurrent_first_touch_shares_aggregator(self, registry):
        """Test concurrent first samples for one key end in one aggregator."""
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(500):
                registry.record(TimerSample("hot", {}, MS))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 1
        assert registry.snapshot_all().get("hot").count == 4_000

    def test_layout_mismatch_raises(self, registry):
        """Test requesting an existing key with another layout raises."""
        key = MetricKey("db")
        registry.get_or_create(key)
        with pytest.raises(AggregatorMismatchError):
            registry.get_or_create(key, BucketLayout(base=1.5))

    def test_per_name_layout(self, registry):
        """Test set_layout applies to aggregators created afterwards."""
        coarse = BucketLayout(base=2.0, bucket_count=40)
        registry.set_layout("batch_job", coarse)
        registry.record(TimerSample("batch_job", {}, 10 * MS))
        assert registry.get(MetricKey("batch_job")).layout == coarse
        assert registry.layout_for("other") == registry.default_layout

    def test_label_keys_allowlist(self):
        """Test label_keys limits which labels form the key."""
        registry = MetricsRegistry(LatencyConfig(label_keys=("route",)))
        registry.record(TimerSample("http", {"route": "/a", "request_id": "1"}, MS))
        registry.record(TimerSample("http", {"route": "/a", "request_id": "2"}, MS))
        assert registry.keys() == [MetricKey.of("http", {"route": "/a"})]

    def test_label_keys_empty_aggregates_by_name(self):
        """Test an empty label_keys tuple aggregates by name only."""
        registry = MetricsRegistry(LatencyConfig(label_keys=()))
        registry.record(TimerSample("http", {"route": "/a"}, MS))
        registry.record(TimerSample("http", {"route": "/b"}, MS))
        assert registry.keys() == [MetricKey("http")]

    def test_reset_and_remove(self, registry):
        """Test administrative reset/remove, including unknown keys."""
        key = MetricKey("db")
        registry.record(TimerSample("db", {}, MS))

        assert registry.reset(key) is True
        assert registry.get(key).snapshot().is_empty
        assert registry.remove(key) is True
        assert registry.get(key) is None

        assert registry.reset(key) is False
        assert registry.remove(key) is False

    def test_clear(self, registry):
        """Test clear drops every aggregator."""
        registry.record(TimerSample("a", {}, MS))
        registry.record(TimerSample("b", {}, MS))
        registry.clear()
        assert len(registry) == 0

    def test_diagnostics_shared(self):
        """Test an injected Diagnostics object is used."""
        diagnostics = Diagnostics()
        registry = MetricsRegistry(diagnostics=diagnostics)
        diagnostics.increment(DiagnosticCounter.DROPPED_EXPORTS)
        assert registry.snapshot_all().diagnostics.dropped_exports == 1


class TestRegistrySnapshot:
    """Tests for RegistrySnapshot."""

    def test_snapshot_is_sorted(self, registry):
        """Test series are ordered by name and labels."""
        registry.record(TimerSample("zeta", {}, MS))
        registry.record(TimerSample("alpha", {"b": "2"}, MS))
        registry.record(TimerSample("alpha", {"a": "1"}, MS))
        snapshot = registry.snapshot_all()
        assert [str(key) for key, _ in snapshot] == ["alpha{a=1}", "alpha{b=2}", "zeta"]
        assert snapshot.names() == ["alpha", "zeta"]

    def test_by_name_merges_label_sets(self, registry):
        """Test by_name merges every label set of a metric."""
        registry.record(TimerSample("http", {"route": "/a"}, MS))
        registry.record(TimerSample("http", {"route": "/b"}, 3 * MS))
        snapshot = registry.snapshot_all()
        merged = snapshot.by_name("http")
        assert merged.count == 2
        assert merged.sum == 4 * MS
        assert snapshot.by_name("missing") is None

    def test_contains_and_get(self, registry):
        """Test membership and lookup helpers."""
        registry.record(TimerSample("http", {"route": "/a"}, MS))
        snapshot = registry.snapshot_all()
        assert MetricKey.of("http", {"route": "/a"}) in snapshot
        assert snapshot.get("http", route="/b") is None
        assert len(snapshot) == 1

    def test_to_dict(self, registry):
        """Test serialization."""
        registry.record(TimerSample("http", {"route": "/a"}, MS))
        data = registry.snapshot_all().to_dict()
        assert data["metrics"][0]["name"] == "http"
        assert data["metrics"][0]["labels"] == {"route": "/a"}
        assert data["metrics"][0]["count"] == 1
        assert "dropped_exports" in data["diagnostics"]

    def test_empty_snapshot(self):
        """Test an empty RegistrySnapshot."""
        snapshot = RegistrySnapshot()
        assert len(snapshot) == 0
        assert snapshot.names() == []
