"""Metrics registry: one Aggregator per (metric name, label set).

The registry is an explicit object owned by the process (or by a test) and
injected into the tracer and exporters; there is no module-level default
instance. Aggregators are created lazily on the first sample for a key and
are only removed through the administrative ``remove``/``reset`` calls, both
of which are no-ops for unknown keys.

Lookup is a plain dictionary read; only first-touch creation takes the
registry lock, and the key is re-checked under the lock so concurrent first
samples for the same key share a single Aggregator.

Example:
    >>> registry = MetricsRegistry(LatencyConfig(base=1.1))
    >>> registry.record(TimerSample("http_request", {"route": "/users"}, 12_000_000))
    >>> snapshot = registry.snapshot_all()
    >>> snapshot.get("http_request", route="/users").count
    1
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from latencykit.aggregator import Aggregator, AggregatorSnapshot, merge_snapshots
from latencykit.config import DEFAULT_LATENCY_CONFIG, LatencyConfig
from latencykit.diagnostics import Diagnostics, DiagnosticsSnapshot
from latencykit.exceptions import AggregatorMismatchError, MetricsError
from latencykit.logging import get_logger


if TYPE_CHECKING:
    from latencykit.aggregator import BucketLayout
    from latencykit.spans import TimerSample


logger = get_logger(__name__)


# =============================================================================
# Keys
# =============================================================================


@dataclass(frozen=True, slots=True)
class MetricKey:
    """Identity of one aggregated series.

    Labels are stored as a sorted tuple of pairs so equal label sets hash
    equally regardless of insertion order.
    """

    name: str
    labels: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise MetricsError("Metric name must not be empty")

    @classmethod
    def of(cls, name: str, labels: Mapping[str, Any] | None = None) -> MetricKey:
        """Build a key from a label mapping (values are stringified)."""
        if not labels:
            return cls(name)
        return cls(name, tuple(sorted((str(k), str(v)) for k, v in labels.items())))

    @property
    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)

    def __str__(self) -> str:
        if not self.labels:
            return self.name
        rendered = ",".join(f"{k}={v}" for k, v in self.labels)
        return f"{self.name}{{{rendered}}}"


# =============================================================================
# Registry Snapshot
# =============================================================================


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    """Immutable view of every aggregator plus the diagnostic counters.

    Attributes:
        metrics: Snapshot per key, ordered by key.
        diagnostics: Diagnostic counters at snapshot time.
    """

    metrics: Mapping[MetricKey, AggregatorSnapshot] = field(default_factory=dict)
    diagnostics: DiagnosticsSnapshot = field(default_factory=DiagnosticsSnapshot)

    def __len__(self) -> int:
        return len(self.metrics)

    def __iter__(self) -> Iterator[tuple[MetricKey, AggregatorSnapshot]]:
        return iter(self.metrics.items())

    def __contains__(self, key: object) -> bool:
        return key in self.metrics

    def get(self, name: str, **labels: Any) -> AggregatorSnapshot | None:
        """Snapshot for ``name`` with exactly ``labels``, if recorded."""
        return self.metrics.get(MetricKey.of(name, labels))

    def names(self) -> list[str]:
        return sorted({key.name for key in self.metrics})

    def by_name(self, name: str) -> AggregatorSnapshot | None:
        """All label sets of ``name`` merged into one snapshot."""
        matching = [snap for key, snap in self.metrics.items() if key.name == name]
        if not matching:
            return None
        return merge_snapshots(matching)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": [
                {"name": key.name, "labels": key.label_dict, **snap.to_dict()}
                for key, snap in self.metrics.items()
            ],
            "diagnostics": self.diagnostics.to_dict(),
        }


# =============================================================================
# Registry
# =============================================================================


class MetricsRegistry:
    """Owner of all Aggregators of one process.

    Args:
        config: Layout and label policy. Defaults to ``DEFAULT_LATENCY_CONFIG``.
        diagnostics: Shared diagnostic counters; a fresh set is created if
            omitted and is reachable through ``registry.diagnostics``.
    """

    def __init__(
        self,
        config: LatencyConfig | None = None,
        diagnostics: Diagnostics | None = None,
    ) -> None:
        self._config = config or DEFAULT_LATENCY_CONFIG
        self._diagnostics = diagnostics or Diagnostics()
        self._default_layout = self._config.bucket_layout()
        self._layouts: dict[str, BucketLayout] = {}
        self._aggregators: dict[MetricKey, Aggregator] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> LatencyConfig:
        return self._config

    @property
    def diagnostics(self) -> Diagnostics:
        return self._diagnostics

    @property
    def default_layout(self) -> BucketLayout:
        return self._default_layout

    def set_layout(self, name: str, layout: BucketLayout) -> None:
        """Use ``layout`` for aggregators of ``name`` created from now on."""
        with self._lock:
            self._layouts[name] = layout

    def layout_for(self, name: str) -> BucketLayout:
        return self._layouts.get(name, self._default_layout)

    def key_for(self, name: str, labels: Mapping[str, Any] | None = None) -> MetricKey:
        """Build the aggregator key for a sample, applying ``label_keys``."""
        label_keys = self._config.label_keys
        if label_keys is None or not labels:
            return MetricKey.of(name, labels)
        return MetricKey.of(name, {k: v for k, v in labels.items() if k in label_keys})

    def get_or_create(self, key: MetricKey, layout: BucketLayout | None = None) -> Aggregator:
        """Return the Aggregator for ``key``, creating it on first use.

        Concurrent first touches of the same key all receive the same
        instance.

        Raises:
            AggregatorMismatchError: If ``layout`` is given and differs from
                the layout of an existing aggregator for ``key``.
        """
        aggregator = self._aggregators.get(key)
        if aggregator is None:
            with self._lock:
                aggregator = self._aggregators.get(key)
                if aggregator is None:
                    aggregator = Aggregator(
                        layout or self.layout_for(key.name),
                        name=key.name,
                    )
                    self._aggregators[key] = aggregator
                    logger.debug("Created aggregator", metric=str(key))

        if layout is not None and aggregator.layout != layout:
            raise AggregatorMismatchError(
                f"Metric {key} already exists with a different bucket layout",
                metric_name=key.name,
                details={
                    "existing": aggregator.layout.to_dict(),
                    "requested": layout.to_dict(),
                },
            )
        return aggregator

    def get(self, key: MetricKey) -> Aggregator | None:
        return self._aggregators.get(key)

    def record(self, sample: TimerSample) -> None:
        """Route a TimerSample to its aggregator."""
        key = self.key_for(sample.metric_name, sample.labels)
        self.get_or_create(key).ingest(sample.duration_ns)

    def keys(self) -> list[MetricKey]:
        with self._lock:
            return list(self._aggregators)

    def __len__(self) -> int:
        return len(self._aggregators)

    def snapshot_all(self) -> RegistrySnapshot:
        """Snapshot every aggregator and the diagnostic counters.

        Never blocks ingestion into existing aggregators; only creation of
        new keys waits for the key list to be copied.
        """
        with self._lock:
            items = list(self._aggregators.items())
        items.sort(key=lambda item: (item[0].name, item[0].labels))
        return RegistrySnapshot(
            metrics={key: aggregator.snapshot() for key, aggregator in items},
            diagnostics=self._diagnostics.snapshot(),
        )

    def reset(self, key: MetricKey) -> bool:
        """Zero the aggregator for ``key``. Returns False if the key is unknown."""
        aggregator = self._aggregators.get(key)
        if aggregator is None:
            return False
        aggregator.reset()
        logger.info("Reset aggregator", metric=str(key))
        return True

    def remove(self, key: MetricKey) -> bool:
        """Drop the aggregator for ``key``. Returns False if the key is unknown."""
        with self._lock:
            removed = self._aggregators.pop(key, None)
        if removed is None:
            return False
        logger.info("Removed aggregator", metric=str(key))
        return True

    def clear(self) -> None:
        """Drop every aggregator."""
        with self._lock:
            self._aggregators.clear()
