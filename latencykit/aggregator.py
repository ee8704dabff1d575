"""Logarithmic-bucket latency aggregator.

An ``Aggregator`` turns an unbounded stream of durations into a fixed-size
summary: a count, a sum and one counter per logarithmic bucket. Bucket ``i``
covers ``[base**i, base**(i + 1))`` resolution units, so reporting a bucket's
upper boundary over-estimates any value inside it by less than a factor of
``base``. Quantiles are therefore approximate by construction:

    estimate - Q <= Q * (base - 1)

for any true quantile ``Q`` that lies inside the layout's range. Durations
below the resolution collapse into bucket 0 and durations beyond the last
boundary collapse into the last bucket; nothing is rejected.

Ingestion is sharded per thread. Each thread updates its own shard under the
shard's own lock, so there is no global lock on the hot path and a snapshot
never sees a count without its bucket increment. ``snapshot()`` adds up
consistent per-shard copies; ingests racing with it may land on either side.

Example:
    >>> layout = BucketLayout(base=1.1, bucket_count=200, resolution_ns=1_000)
    >>> aggregator = Aggregator(layout)
    >>> for ms in (10, 20, 30, 40, 50):
    ...     aggregator.ingest(ms * 1_000_000)
    >>> snapshot = aggregator.snapshot()
    >>> snapshot.count, snapshot.sum
    (5, 150000000)
"""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from functools import reduce
from typing import Any

from latencykit.exceptions import AggregatorMismatchError, InvalidConfigValueError, MetricsError


# =============================================================================
# Bucket Layout
# =============================================================================


@dataclass(frozen=True, slots=True)
class BucketLayout:
    """Immutable logarithmic bucket boundaries.

    Attributes:
        base: Growth factor between consecutive boundaries. Controls the
            relative error of quantile estimates.
        bucket_count: Number of buckets. Together with ``base`` and
            ``resolution_ns`` this fixes the covered range.
        resolution_ns: Size of one unit in nanoseconds; the smallest duration
            that is distinguished from zero.
    """

    base: float = 1.15
    bucket_count: int = 160
    resolution_ns: int = 1_000
    _log_base: float = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.base > 1.0:
            raise InvalidConfigValueError(
                "base must be greater than 1",
                config_key="base",
                value=self.base,
                expected="> 1.0",
            )
        if self.bucket_count < 1:
            raise InvalidConfigValueError(
                "bucket_count must be at least 1",
                config_key="bucket_count",
                value=self.bucket_count,
                expected=">= 1",
            )
        if self.resolution_ns < 1:
            raise InvalidConfigValueError(
                "resolution_ns must be at least 1",
                config_key="resolution_ns",
                value=self.resolution_ns,
                expected=">= 1",
            )
        object.__setattr__(self, "_log_base", math.log(self.base))

    def index(self, duration_ns: int | float) -> int:
        """Bucket index for a duration, clamped to ``[0, bucket_count - 1]``."""
        units = duration_ns / self.resolution_ns
        if units < self.base:
            return 0
        idx = int(math.log(units) / self._log_base)
        return min(idx, self.bucket_count - 1)

    def lower_bound(self, index: int) -> float:
        """Lower boundary of bucket ``index`` in nanoseconds (0 for bucket 0)."""
        if index == 0:
            return 0.0
        return self.resolution_ns * self.base**index

    def upper_bound(self, index: int) -> float:
        """Upper boundary of bucket ``index`` in nanoseconds."""
        return self.resolution_ns * self.base ** (index + 1)

    @property
    def max_duration_ns(self) -> float:
        """Largest duration that does not overflow into the last bucket."""
        return self.upper_bound(self.bucket_count - 1)

    def upper_bounds(self) -> tuple[float, ...]:
        return tuple(self.upper_bound(i) for i in range(self.bucket_count))

    def to_dict(self) -> dict[str, Any]:
        return {
            "base": self.base,
            "bucket_count": self.bucket_count,
            "resolution_ns": self.resolution_ns,
        }


# =============================================================================
# Snapshot
# =============================================================================


def quantile_rank(q: float, count: int) -> int:
    """1-based rank of the ``q`` quantile among ``count`` values (nearest rank)."""
    # Rounding first keeps e.g. 0.7 * 10 from becoming rank 8
    return max(1, math.ceil(round(q * count, 9)))


@dataclass(frozen=True, slots=True)
class AggregatorSnapshot:
    """Immutable point-in-time summary of an Aggregator.

    Attributes:
        layout: Bucket layout the counts refer to.
        count: Number of ingested durations.
        sum: Sum of ingested durations in nanoseconds.
        bucket_counts: One counter per bucket.
    """

    layout: BucketLayout
    count: int = 0
    sum: int = 0
    bucket_counts: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            object.__setattr__(self, "bucket_counts", (0,) * self.layout.bucket_count)
        elif len(self.bucket_counts) != self.layout.bucket_count:
            raise MetricsError(
                "bucket_counts length does not match layout",
                details={
                    "bucket_count": self.layout.bucket_count,
                    "received": len(self.bucket_counts),
                },
            )

    @classmethod
    def empty(cls, layout: BucketLayout) -> AggregatorSnapshot:
        return cls(layout=layout)

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    @property
    def mean(self) -> float:
        """Exact mean in nanoseconds (0.0 when empty)."""
        if self.count == 0:
            return 0.0
        return self.sum / self.count

    def quantile(self, q: float) -> float:
        """Estimate the ``q`` quantile in nanoseconds.

        Walks buckets from smallest to largest until the running total reaches
        ``ceil(q * count)`` and returns that bucket's upper boundary. The
        result never under-estimates an in-range value and over-estimates it
        by at most a factor of ``base``.

        Args:
            q: Quantile in ``[0, 1]``.

        Returns:
            Estimate in nanoseconds, or 0.0 for an empty snapshot.

        Raises:
            MetricsError: If ``q`` is outside ``[0, 1]``.
        """
        if not 0.0 <= q <= 1.0:
            raise MetricsError(
                "Quantile must be between 0 and 1",
                details={"quantile": q},
            )
        if self.count == 0:
            return 0.0

        target = quantile_rank(q, self.count)
        running = 0
        for index, bucket_count in enumerate(self.bucket_counts):
            running += bucket_count
            if running >= target:
                return self.layout.upper_bound(index)
        return self.layout.upper_bound(self.layout.bucket_count - 1)

    def quantiles(self, qs: Iterable[float]) -> dict[float, float]:
        return {q: self.quantile(q) for q in qs}

    def merge(self, other: AggregatorSnapshot) -> AggregatorSnapshot:
        """Combine two snapshots by pairwise summation.

        Pure, associative and commutative.

        Raises:
            AggregatorMismatchError: If the layouts differ.
        """
        if other.layout != self.layout:
            raise AggregatorMismatchError(
                "Cannot merge snapshots with different bucket layouts",
                details={"left": self.layout.to_dict(), "right": other.layout.to_dict()},
            )
        return AggregatorSnapshot(
            layout=self.layout,
            count=self.count + other.count,
            sum=self.sum + other.sum,
            bucket_counts=tuple(
                a + b for a, b in zip(self.bucket_counts, other.bucket_counts, strict=True)
            ),
        )

    def cumulative_buckets(self) -> Iterator[tuple[float, int]]:
        """Yield ``(upper_bound_ns, cumulative_count)`` for each non-empty bucket."""
        running = 0
        for index, bucket_count in enumerate(self.bucket_counts):
            if bucket_count:
                running += bucket_count
                yield self.layout.upper_bound(index), running

    def to_dict(self) -> dict[str, Any]:
        return {
            "layout": self.layout.to_dict(),
            "count": self.count,
            "sum": self.sum,
            "bucket_counts": list(self.bucket_counts),
        }


def quantile(snapshot: AggregatorSnapshot, q: float) -> float:
    """Estimate the ``q`` quantile of ``snapshot`` in nanoseconds."""
    return snapshot.quantile(q)


def merge_snapshots(snapshots: Iterable[AggregatorSnapshot]) -> AggregatorSnapshot:
    """Merge any number of snapshots sharing one layout.

    Raises:
        MetricsError: If ``snapshots`` is empty.
        AggregatorMismatchError: If layouts differ.
    """
    items = list(snapshots)
    if not items:
        raise MetricsError("Cannot merge an empty sequence of snapshots")
    return reduce(AggregatorSnapshot.merge, items)


# =============================================================================
# Aggregator
# =============================================================================


class _Shard:
    """Partial state updated by a single thread."""

    __slots__ = ("buckets", "count", "lock", "owner", "sum")

    def __init__(self, bucket_count: int, owner: threading.Thread) -> None:
        self.lock = threading.Lock()
        self.count = 0
        self.sum = 0
        self.buckets = [0] * bucket_count
        self.owner = owner

    def zero(self) -> None:
        self.count = 0
        self.sum = 0
        self.buckets = [0] * len(self.buckets)


class Aggregator:
    """Concurrent latency histogram with per-thread shards.

    Args:
        layout: Bucket layout, fixed for the aggregator's lifetime.
        name: Optional metric name used in error details.

    Example:
        >>> aggregator = Aggregator(BucketLayout(base=1.1))
        >>> aggregator.ingest(2_500_000)
        >>> aggregator.snapshot().quantile(0.5)
    """

    def __init__(self, layout: BucketLayout | None = None, name: str | None = None) -> None:
        self.layout = layout or BucketLayout()
        self.name = name
        self._local = threading.local()
        self._shards: list[_Shard] = []
        self._shards_lock = threading.Lock()
        self._retired = [0, 0, [0] * self.layout.bucket_count]

    def _shard(self) -> _Shard:
        shard = getattr(self._local, "shard", None)
        if shard is None:
            shard = _Shard(self.layout.bucket_count, threading.current_thread())
            with self._shards_lock:
                # Bounded by the number of live threads
                self._collect_dead_shards()
                self._shards.append(shard)
            self._local.shard = shard
        return shard

    def ingest(self, duration_ns: int) -> None:
        """Record one duration in nanoseconds. Negative values count as 0."""
        if duration_ns < 0:
            duration_ns = 0
        index = self.layout.index(duration_ns)
        shard = self._shard()
        with shard.lock:
            shard.count += 1
            shard.sum += duration_ns
            shard.buckets[index] += 1

    def _fold_into_retired(self, shard: _Shard) -> None:
        # Caller holds _shards_lock
        with shard.lock:
            self._retired[0] += shard.count
            self._retired[1] += shard.sum
            retired_buckets = self._retired[2]
            for i, value in enumerate(shard.buckets):
                if value:
                    retired_buckets[i] += value
            shard.zero()

    def _collect_dead_shards(self) -> None:
        # Caller holds _shards_lock
        alive: list[_Shard] = []
        for shard in self._shards:
            if shard.owner.is_alive():
                alive.append(shard)
            else:
                self._fold_into_retired(shard)
        self._shards = alive

    @property
    def shard_count(self) -> int:
        """Number of live per-thread shards."""
        with self._shards_lock:
            return len(self._shards)

    def snapshot(self) -> AggregatorSnapshot:
        """Immutable, tear-free copy of the current state."""
        with self._shards_lock:
            self._collect_dead_shards()
            count, total, retired_buckets = self._retired
            buckets = list(retired_buckets)
            for shard in self._shards:
                with shard.lock:
                    count += shard.count
                    total += shard.sum
                    shard_buckets = list(shard.buckets)
                for i, value in enumerate(shard_buckets):
                    if value:
                        buckets[i] += value
        return AggregatorSnapshot(
            layout=self.layout,
            count=count,
            sum=total,
            bucket_counts=tuple(buckets),
        )

    def merge(self, other: Aggregator | AggregatorSnapshot) -> None:
        """Absorb another aggregator's (or snapshot's) counts into this one.

        Raises:
            AggregatorMismatchError: If the layouts differ.
        """
        snapshot = other.snapshot() if isinstance(other, Aggregator) else other
        if snapshot.layout != self.layout:
            raise AggregatorMismatchError(
                "Cannot merge aggregators with different bucket layouts",
                metric_name=self.name,
                details={"left": self.layout.to_dict(), "right": snapshot.layout.to_dict()},
            )
        with self._shards_lock:
            self._retired[0] += snapshot.count
            self._retired[1] += snapshot.sum
            retired_buckets = self._retired[2]
            for i, value in enumerate(snapshot.bucket_counts):
                if value:
                    retired_buckets[i] += value

    def reset(self) -> None:
        """Zero all state. Administrative; not used on the hot path."""
        with self._shards_lock:
            for shard in self._shards:
                with shard.lock:
                    shard.zero()
            self._retired = [0, 0, [0] * self.layout.bucket_count]

    def __repr__(self) -> str:
        return f"Aggregator(name={self.name!r}, layout={self.layout!r})"
