"""OpenTelemetry bridge for registry snapshots.

Registers observable instruments on an OpenTelemetry meter whose callbacks
read ``MetricsRegistry.snapshot_all()`` whenever the OpenTelemetry SDK
collects. No background thread of its own is started; the SDK's metric
reader decides when to pull.

Instruments (``<prefix>`` defaults to ``latencykit``):
    <prefix>.duration.count     observable counter, attribute ``metric`` + labels
    <prefix>.duration.sum       observable counter in seconds
    <prefix>.duration.quantile  observable gauge in seconds, attribute ``quantile``
    <prefix>.diagnostics        observable counter, attribute ``counter``

Requires the ``otel`` extra (``opentelemetry-api``).

Example:
    >>> from opentelemetry.sdk.metrics import MeterProvider
    >>> bridge = OpenTelemetryBridge(registry, meter_provider=MeterProvider())
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from latencykit.exceptions import OTelNotInstalledError
from latencykit.exposition import export_labels, to_seconds
from latencykit.logging import get_logger


if TYPE_CHECKING:
    from latencykit.registry import MetricsRegistry


logger = get_logger(__name__)

OTEL_RESERVED_ATTRIBUTES = frozenset({"metric", "quantile"})


def _check_otel_installed() -> None:
    """Check if the OpenTelemetry API is installed."""
    try:
        import opentelemetry.metrics  # noqa: F401
    except ImportError as e:
        raise OTelNotInstalledError(feature="metrics bridge", cause=e) from e


class OpenTelemetryBridge:
    """Publishes registry aggregates as OpenTelemetry observable instruments.

    Args:
        registry: Source of snapshots.
        meter_provider: OpenTelemetry MeterProvider. If None, uses the global one.
        meter_name: Name of the meter to create.
        prefix: Instrument name prefix.
        quantiles: Quantiles reported by the quantile gauge (defaults to
            ``registry.config.quantiles``).

    Raises:
        OTelNotInstalledError: If ``opentelemetry-api`` is missing.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        meter_provider: Any = None,
        meter_name: str = "latencykit",
        prefix: str = "latencykit",
        quantiles: Sequence[float] | None = None,
    ) -> None:
        _check_otel_installed()

        from opentelemetry.metrics import get_meter_provider

        self._registry = registry
        self._quantiles = tuple(quantiles if quantiles is not None else registry.config.quantiles)
        self._provider = meter_provider or get_meter_provider()
        self._meter = self._provider.get_meter(meter_name)
        self._instruments = [
            self._meter.create_observable_counter(
                f"{prefix}.duration.count",
                callbacks=[self._observe_count],
                unit="1",
                description="Number of timed spans",
            ),
            self._meter.create_observable_counter(
                f"{prefix}.duration.sum",
                callbacks=[self._observe_sum],
                unit="s",
                description="Total time spent in timed spans",
            ),
            self._meter.create_observable_gauge(
                f"{prefix}.duration.quantile",
                callbacks=[self._observe_quantiles],
                unit="s",
                description="Estimated duration quantiles (upper bucket boundary)",
            ),
            self._meter.create_observable_counter(
                f"{prefix}.diagnostics",
                callbacks=[self._observe_diagnostics],
                unit="1",
                description="Instrumentation repairs, anomalies and export outcomes",
            ),
        ]
        logger.debug("OpenTelemetry bridge registered", meter=meter_name, prefix=prefix)

    @property
    def instruments(self) -> tuple[Any, ...]:
        return tuple(self._instruments)

    @staticmethod
    def _attributes(name: str, labels: dict[str, str]) -> dict[str, str]:
        return {**export_labels(labels, OTEL_RESERVED_ATTRIBUTES, sanitize=False), "metric": name}

    def _observe_count(self, options: Any = None) -> Iterable[Any]:
        from opentelemetry.metrics import Observation

        for key, aggregate in self._registry.snapshot_all():
            yield Observation(aggregate.count, self._attributes(key.name, key.label_dict))

    def _observe_sum(self, options: Any = None) -> Iterable[Any]:
        from opentelemetry.metrics import Observation

        for key, aggregate in self._registry.snapshot_all():
            yield Observation(
                to_seconds(aggregate.sum),
                self._attributes(key.name, key.label_dict),
            )

    def _observe_quantiles(self, options: Any = None) -> Iterable[Any]:
        from opentelemetry.metrics import Observation

        for key, aggregate in self._registry.snapshot_all():
            if aggregate.is_empty:
                continue
            attributes = self._attributes(key.name, key.label_dict)
            for q in self._quantiles:
                yield Observation(
                    to_seconds(aggregate.quantile(q)),
                    {**attributes, "quantile": str(q)},
                )

    def _observe_diagnostics(self, options: Any = None) -> Iterable[Any]:
        from opentelemetry.metrics import Observation

        for counter, value in self._registry.diagnostics.to_dict().items():
            yield Observation(value, {"counter": counter})
