"""Tests for latencykit.aggregator module."""

from __future__ import annotations

import random
import threading

import pytest

from latencykit.aggregator import (
    Aggregator,
    AggregatorSnapshot,
    BucketLayout,
    merge_snapshots,
    quantile,
    quantile_rank,
)
from latencykit.exceptions import AggregatorMismatchError, InvalidConfigValueError, MetricsError
from latencykit.testing import assert_quantile_within_bound, true_quantile


MS = 1_000_000


@pytest.fixture
def layout() -> BucketLayout:
    """Base 1.1, 200 buckets, microsecond resolution (about 1us to 190s)."""
    return BucketLayout(base=1.1, bucket_count=200, resolution_ns=1_000)


# =============================================================================
# Bucket Layout
# =============================================================================


class TestBucketLayout:
    """Tests for BucketLayout."""

    def test_defaults(self):
        """Test default layout values."""
        layout = BucketLayout()
        assert layout.base == 1.15
        assert layout.bucket_count == 160
        assert layout.resolution_ns == 1_000

    @pytest.mark.parametrize(
        ("kwargs", "key"),
        [
            ({"base": 1.0}, "base"),
            ({"bucket_count": 0}, "bucket_count"),
            ({"resolution_ns": 0}, "resolution_ns"),
        ],
    )
    def test_validation(self, kwargs, key):
        """Test invalid parameters are rejected."""
        with pytest.raises(InvalidConfigValueError) as exc_info:
            BucketLayout(**kwargs)
        assert exc_info.value.config_key == key

    def test_value_lies_inside_its_bucket(self, layout):
        """Test lower_bound <= value < upper_bound for in-range values."""
        for value in (1_500, 12_345, 2 * MS, 47 * MS, 3_000 * MS):
            index = layout.index(value)
            assert layout.lower_bound(index) <= value < layout.upper_bound(index)

    def test_below_resolution_goes_to_first_bucket(self, layout):
        """Test tiny and zero durations collapse into bucket 0."""
        assert layout.index(0) == 0
        assert layout.index(999) == 0

    def test_overflow_goes_to_last_bucket(self, layout):
        """Test durations past the range collapse into the last bucket."""
        assert layout.index(layout.max_duration_ns * 10) == layout.bucket_count - 1

    def test_equality_ignores_cached_log(self):
        """Test equal parameters give equal layouts."""
        assert BucketLayout(base=1.1) == BucketLayout(base=1.1)
        assert BucketLayout(base=1.1) != BucketLayout(base=1.2)

    def test_upper_bounds(self, layout):
        """Test upper_bounds are strictly increasing."""
        bounds = layout.upper_bounds()
        assert len(bounds) == layout.bucket_count
        assert all(a < b for a, b in zip(bounds, bounds[1:]))


# =============================================================================
# Quantiles
# =============================================================================


class TestQuantile:
    """Tests for quantile estimation."""

    def test_quantile_rank(self):
        """Test nearest-rank computation."""
        assert quantile_rank(0.5, 5) == 3
        assert quantile_rank(0.0, 5) == 1
        assert quantile_rank(1.0, 5) == 5
        assert quantile_rank(0.7, 10) == 7

    def test_empty_snapshot_returns_zero(self, layout):
        """Test an empty snapshot estimates 0."""
        assert AggregatorSnapshot.empty(layout).quantile(0.5) == 0.0

    @pytest.mark.parametrize("q", [-0.1, 1.5])
    def test_out_of_range_quantile_raises(self, layout, q):
        """Test quantiles outside [0, 1] are rejected."""
        with pytest.raises(MetricsError):
            AggregatorSnapshot.empty(layout).quantile(q)

    def test_five_values_scenario(self, layout):
        """Test 10, 20, 30, 40, 50 ms against the documented bound."""
        aggregator = Aggregator(layout)
        values = [10 * MS, 20 * MS, 30 * MS, 40 * MS, 50 * MS]
        for value in values:
            aggregator.ingest(value)

        snapshot = aggregator.snapshot()
        assert snapshot.count == 5
        assert snapshot.sum == 150 * MS
        assert snapshot.mean == 30 * MS

        p50 = quantile(snapshot, 0.5)
        p99 = quantile(snapshot, 0.99)
        assert 30 * MS <= p50 <= 33 * MS
        assert 50 * MS <= p99 <= 55 * MS
        assert_quantile_within_bound(p50, true_quantile(values, 0.5), layout.base)
        assert_quantile_within_bound(p99, true_quantile(values, 0.99), layout.base)

    def test_random_values_within_bound(self, layout):
        """Test estimates stay within Q * (base - 1) for random inputs."""
        rng = random.Random(1234)
        values = [int(rng.lognormvariate(16, 1.2)) for _ in range(5_000)]
        aggregator = Aggregator(layout)
        for value in values:
            aggregator.ingest(value)

        snapshot = aggregator.snapshot()
        for q in (0.01, 0.25, 0.5, 0.75, 0.9, 0.99, 0.999, 1.0):
            expected = true_quantile(values, q)
            estimate = snapshot.quantile(q)
            assert estimate >= expected
            assert_quantile_within_bound(estimate, expected, layout.base)

    def test_quantiles_mapping(self, layout):
        """Test quantiles() returns one estimate per requested quantile."""
        aggregator = Aggregator(layout)
        aggregator.ingest(5 * MS)
        result = aggregator.snapshot().quantiles((0.5, 0.9))
        assert set(result) == {0.5, 0.9}


# =============================================================================
# Aggregator
# =============================================================================


class TestAggregator:
    """Tests for Aggregator ingestion and snapshots."""

    def test_negative_duration_counts_as_zero(self, layout):
        """Test negative durations are clamped to 0."""
        aggregator = Aggregator(layout)
        aggregator.ingest(-5)
        snapshot = aggregator.snapshot()
        assert snapshot.count == 1
        assert snapshot.sum == 0
        assert snapshot.bucket_counts[0] == 1

    def test_snapshot_is_immutable_copy(self, layout):
        """Test later ingests do not change an earlier snapshot."""
        aggregator = Aggregator(layout)
        aggregator.ingest(MS)
        before = aggregator.snapshot()
        aggregator.ingest(MS)
        assert before.count == 1
        assert aggregator.snapshot().count == 2

    def test_concurrent_ingest(self, layout):
        """Test no ingest is lost across threads."""
        aggregator = Aggregator(layout)
        threads_count, per_thread = 8, 5_000

        def worker(seed):
            rng = random.Random(seed)
            for _ in range(per_thread):
                aggregator.ingest(rng.randint(1_000, 100 * MS))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = aggregator.snapshot()
        assert snapshot.count == threads_count * per_thread
        assert sum(snapshot.bucket_counts) == snapshot.count

    def test_snapshot_during_ingest_is_consistent(self, layout):
        """Test snapshots taken while ingesting never show a torn state."""
        aggregator = Aggregator(layout)
        stop = threading.Event()

        def worker():
            while not stop.is_set():
                aggregator.ingest(2 * MS)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        try:
            for _ in range(200):
                snapshot = aggregator.snapshot()
                assert sum(snapshot.bucket_counts) == snapshot.count
                assert snapshot.sum == snapshot.count * 2 * MS
        finally:
            stop.set()
            for t in threads:
                t.join()

    def test_dead_thread_counts_are_kept(self, layout):
        """Test samples from finished threads survive in later snapshots."""
        aggregator = Aggregator(layout)
        thread = threading.Thread(target=lambda: [aggregator.ingest(MS) for _ in range(10)])
        thread.start()
        thread.join()

        assert aggregator.snapshot().count == 10
        assert aggregator.shard_count == 0
        assert aggregator.snapshot().count == 10

    def test_thread_churn_keeps_shards_bounded(self, layout):
        """Test short-lived threads do not accumulate shards between snapshots."""
        aggregator = Aggregator(layout)
        for _ in range(200):
            thread = threading.Thread(target=aggregator.ingest, args=(MS,))
            thread.start()
            thread.join()

        assert aggregator.shard_count <= 1
        assert aggregator.snapshot().count == 200

    def test_reset(self, layout):
        """Test reset zeroes all counts."""
        aggregator = Aggregator(layout)
        aggregator.ingest(MS)
        aggregator.reset()
        assert aggregator.snapshot().is_empty

    def test_merge_aggregators(self, layout):
        """Test merging another aggregator adds its counts."""
        left, right = Aggregator(layout), Aggregator(layout)
        left.ingest(MS)
        right.ingest(2 * MS)
        right.ingest(3 * MS)
        left.merge(right)
        assert left.snapshot().count == 3
        assert left.snapshot().sum == 6 * MS

    def test_merge_different_layouts_raises(self, layout):
        """Test merging mismatched layouts raises."""
        with pytest.raises(AggregatorMismatchError):
            Aggregator(layout).merge(Aggregator(BucketLayout(base=1.2)))


# =============================================================================
# Snapshot Merge
# =============================================================================


def _snapshot_of(layout, values):
    aggregator = Aggregator(layout)
    for value in values:
        aggregator.ingest(value)
    return aggregator.snapshot()


class TestSnapshotMerge:
    """Tests for merging snapshots."""

    def test_merge_is_commutative_and_associative(self, layout):
        """Test merge order does not matter."""
        a = _snapshot_of(layout, [MS, 5 * MS])
        b = _snapshot_of(layout, [10 * MS])
        c = _snapshot_of(layout, [2 * MS, 80 * MS, 300 * MS])

        assert a.merge(b) == b.merge(a)
        assert a.merge(b).merge(c) == a.merge(b.merge(c))

    def test_merge_equals_combined_ingest(self, layout):
        """Test merging equals ingesting all values into one aggregator."""
        first, second = [MS, 3 * MS], [7 * MS, 9 * MS]
        merged = _snapshot_of(layout, first).merge(_snapshot_of(layout, second))
        assert merged == _snapshot_of(layout, first + second)

    def test_merge_with_empty_is_identity(self, layout):
        """Test the empty snapshot is the identity element."""
        a = _snapshot_of(layout, [MS])
        assert a.merge(AggregatorSnapshot.empty(layout)) == a

    def test_merge_mismatched_layouts_raises(self, layout):
        """Test snapshot merge rejects different layouts."""
        with pytest.raises(AggregatorMismatchError):
            AggregatorSnapshot.empty(layout).merge(AggregatorSnapshot.empty(BucketLayout()))

    def test_merge_snapshots(self, layout):
        """Test merging a sequence of snapshots."""
        merged = merge_snapshots(_snapshot_of(layout, [MS]) for _ in range(4))
        assert merged.count == 4

    def test_merge_snapshots_empty_raises(self):
        """Test merging nothing raises."""
        with pytest.raises(MetricsError):
            merge_snapshots([])

    def test_bucket_length_mismatch_raises(self, layout):
        """Test a snapshot with the wrong number of buckets is rejected."""
        with pytest.raises(MetricsError):
            AggregatorSnapshot(layout=layout, count=1, sum=1, bucket_counts=(1,))

    def test_cumulative_buckets(self, layout):
        """Test cumulative counts end at the total count."""
        snapshot = _snapshot_of(layout, [MS, MS, 50 * MS])
        cumulative = list(snapshot.cumulative_buckets())
        assert len(cumulative) == 2
        assert cumulative[-1][1] == 3
        assert cumulative[0][0] < cumulative[1][0]
