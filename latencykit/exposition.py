"""Serialized forms of a registry snapshot.

Two versioned formats are provided. Both report durations in seconds.

Text (``text/plain; version=1``)::

    # latencykit-exposition-version: 1
    # TYPE http_request summary
    http_request{route="/users",quantile="0.5"} 0.031
    http_request{route="/users",quantile="0.99"} 0.052
    http_request_sum{route="/users"} 0.15
    http_request_count{route="/users"} 5
    # TYPE latencykit_dropped_exports_total counter
    latencykit_dropped_exports_total 0

With ``include_buckets`` each series also lists cumulative
``<name>_bucket{le="..."}`` lines for its non-empty buckets plus ``le="+Inf"``.

JSON (``application/json``)::

    {"version": 1, "metrics": [{"name": ..., "labels": {...}, "count": 5,
     "sum": 0.15, "quantiles": {"0.5": 0.031}, "buckets": [...]}],
     "diagnostics": {"dropped_exports": 0, ...}}

The version line lets collectors reject output they do not understand;
any incompatible change to either format must bump ``EXPOSITION_VERSION``.
"""

from __future__ import annotations

import json
import math
import re
from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from latencykit.exceptions import ExportError


if TYPE_CHECKING:
    from latencykit.aggregator import AggregatorSnapshot
    from latencykit.config import LatencyConfig
    from latencykit.registry import MetricKey, RegistrySnapshot


EXPOSITION_VERSION = 1
VERSION_HEADER = "# latencykit-exposition-version:"
DIAGNOSTICS_PREFIX = "latencykit"
TEXT_RESERVED_LABELS = frozenset({"quantile", "le"})
NS_PER_SECOND = 1_000_000_000


# =============================================================================
# Name Helpers
# =============================================================================


def _sanitize_metric_name(name: str) -> str:
    """Metric names must match ``[a-zA-Z_:][a-zA-Z0-9_:]*``."""
    sanitized = re.sub(r"[^a-zA-Z0-9_:]", "_", name)
    if sanitized and sanitized[0].isdigit():
        sanitized = "_" + sanitized
    sanitized = re.sub(r"_+", "_", sanitized)
    return sanitized.strip("_") or "metric"


def _sanitize_label_name(name: str) -> str:
    """Label names must match ``[a-zA-Z_][a-zA-Z0-9_]*``; ``__`` is reserved."""
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", name)
    sanitized = re.sub(r"_+", "_", sanitized).strip("_") or "label"
    if sanitized[0].isdigit():
        sanitized = "_" + sanitized
    return sanitized


def export_labels(
    labels: dict[str, str],
    reserved: frozenset[str] = frozenset(),
    sanitize: bool = True,
) -> dict[str, str]:
    """Output label names for a series, never overwriting one another.

    A user label that clashes with a name the format adds itself (``quantile``,
    ``le``) or with an earlier label after sanitizing is renamed with an
    ``exported_`` prefix, so distinct label sets stay distinct.
    """
    exported: dict[str, str] = {}
    for key in sorted(labels):
        name = _sanitize_label_name(key) if sanitize else key
        while name in reserved or name in exported:
            name = f"exported_{name}"
        exported[name] = labels[key]
    return exported


def _escape_label_value(value: str) -> str:
    value = value.replace("\\", "\\\\")
    value = value.replace("\n", "\\n")
    value = value.replace('"', '\\"')
    return value


def _unescape_label_value(value: str) -> str:
    return re.sub(r"\\(.)", lambda m: "\n" if m.group(1) == "n" else m.group(1), value)


def _format_value(value: float) -> str:
    if value == math.inf:
        return "+Inf"
    if value == -math.inf:
        return "-Inf"
    if value != value:
        return "NaN"
    if value == int(value):
        return str(int(value))
    return repr(value)


def _format_quantile(q: float) -> str:
    return repr(float(q))


def to_seconds(duration_ns: float) -> float:
    return duration_ns / NS_PER_SECOND


# =============================================================================
# Formatter Protocol
# =============================================================================


@runtime_checkable
class ExpositionFormatter(Protocol):
    """Turns a RegistrySnapshot into a payload for collectors."""

    content_type: str

    @abstractmethod
    def format(self, snapshot: RegistrySnapshot) -> str:
        ...


# =============================================================================
# Text Format
# =============================================================================


class TextExpositionFormatter:
    """Versioned, line-oriented text exposition.

    Args:
        quantiles: Quantiles listed per series.
        include_buckets: Also list cumulative bucket counts.
        include_diagnostics: Append ``latencykit_<counter>_total`` lines.
        namespace: Optional prefix joined to every metric name with ``_``.
    """

    content_type = f"text/plain; version={EXPOSITION_VERSION}; charset=utf-8"

    def __init__(
        self,
        quantiles: Sequence[float] = (0.5, 0.9, 0.99),
        include_buckets: bool = False,
        include_diagnostics: bool = True,
        namespace: str = "",
    ) -> None:
        self.quantiles = tuple(quantiles)
        self.include_buckets = include_buckets
        self.include_diagnostics = include_diagnostics
        self.namespace = namespace

    def _metric_name(self, name: str) -> str:
        if self.namespace:
            return _sanitize_metric_name(f"{self.namespace}_{name}")
        return _sanitize_metric_name(name)

    @staticmethod
    def _format_labels(labels: dict[str, str]) -> str:
        parts = []
        for key, value in labels.items():
            parts.append(f'{key}="{_escape_label_value(str(value))}"')
        return ",".join(parts)

    def _line(self, name: str, labels: dict[str, str], value: float) -> str:
        label_str = self._format_labels(labels)
        if label_str:
            return f"{name}{{{label_str}}} {_format_value(value)}"
        return f"{name} {_format_value(value)}"

    def format(self, snapshot: RegistrySnapshot) -> str:
        lines = [f"{VERSION_HEADER} {EXPOSITION_VERSION}"]

        grouped: dict[str, list[tuple[MetricKey, AggregatorSnapshot]]] = {}
        for key, aggregate in snapshot:
            grouped.setdefault(self._metric_name(key.name), []).append((key, aggregate))

        for name, series in grouped.items():
            lines.append(f"# TYPE {name} summary")
            for key, aggregate in series:
                labels = export_labels(key.label_dict, TEXT_RESERVED_LABELS)
                lines.extend(self._series_lines(name, labels, aggregate))

        if self.include_diagnostics:
            for counter, value in snapshot.diagnostics.to_dict().items():
                diag_name = f"{DIAGNOSTICS_PREFIX}_{counter}_total"
                lines.append(f"# TYPE {diag_name} counter")
                lines.append(f"{diag_name} {value}")

        return "\n".join(lines) + "\n"

    def _series_lines(
        self,
        name: str,
        labels: dict[str, str],
        aggregate: AggregatorSnapshot,
    ) -> list[str]:
        lines = []
        for q in self.quantiles:
            estimate = to_seconds(aggregate.quantile(q))
            lines.append(self._line(name, {**labels, "quantile": _format_quantile(q)}, estimate))
        lines.append(self._line(f"{name}_sum", labels, to_seconds(aggregate.sum)))
        lines.append(self._line(f"{name}_count", labels, aggregate.count))
        if self.include_buckets:
            for upper_ns, cumulative in aggregate.cumulative_buckets():
                le = _format_value(to_seconds(upper_ns))
                lines.append(self._line(f"{name}_bucket", {**labels, "le": le}, cumulative))
            lines.append(self._line(f"{name}_bucket", {**labels, "le": "+Inf"}, aggregate.count))
        return lines


# =============================================================================
# JSON Format
# =============================================================================


class JSONExpositionFormatter:
    """Versioned JSON exposition with the same content as the text format."""

    content_type = "application/json"

    def __init__(
        self,
        quantiles: Sequence[float] = (0.5, 0.9, 0.99),
        include_buckets: bool = False,
        include_diagnostics: bool = True,
        indent: int | None = None,
    ) -> None:
        self.quantiles = tuple(quantiles)
        self.include_buckets = include_buckets
        self.include_diagnostics = include_diagnostics
        self.indent = indent

    def to_document(self, snapshot: RegistrySnapshot) -> dict[str, Any]:
        metrics = []
        for key, aggregate in snapshot:
            entry: dict[str, Any] = {
                "name": key.name,
                "labels": key.label_dict,
                "count": aggregate.count,
                "sum": to_seconds(aggregate.sum),
                "quantiles": {
                    _format_quantile(q): to_seconds(aggregate.quantile(q))
                    for q in self.quantiles
                },
            }
            if self.include_buckets:
                entry["buckets"] = [
                    {"le": to_seconds(upper_ns), "count": cumulative}
                    for upper_ns, cumulative in aggregate.cumulative_buckets()
                ]
            metrics.append(entry)

        document: dict[str, Any] = {"version": EXPOSITION_VERSION, "metrics": metrics}
        if self.include_diagnostics:
            document["diagnostics"] = snapshot.diagnostics.to_dict()
        return document

    def format(self, snapshot: RegistrySnapshot) -> str:
        return json.dumps(self.to_document(snapshot), indent=self.indent)


def create_formatter(config: LatencyConfig) -> ExpositionFormatter:
    """Formatter selected by ``config.exposition_format``."""
    if config.exposition_format == "json":
        return JSONExpositionFormatter(
            quantiles=config.quantiles,
            include_buckets=config.include_buckets,
        )
    return TextExpositionFormatter(
        quantiles=config.quantiles,
        include_buckets=config.include_buckets,
    )


# =============================================================================
# Text Parsing
# =============================================================================


_LINE_PATTERN = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{(?P<labels>.*)\})?\s+(?P<value>\S+)$"
)
_LABEL_PATTERN = re.compile(r'([a-zA-Z_][a-zA-Z0-9_]*)="((?:[^"\\]|\\.)*)"')


@dataclass(frozen=True, slots=True)
class ExpositionSample:
    """One parsed sample line."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0


def parse_text_exposition(text: str) -> list[ExpositionSample]:
    """Parse the text format back into samples.

    Raises:
        ExportError: If the version header is missing or unsupported, or a
            line is malformed.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines or not lines[0].startswith(VERSION_HEADER):
        raise ExportError("Missing exposition version header", exporter="text")

    version_text = lines[0][len(VERSION_HEADER) :].strip()
    if version_text != str(EXPOSITION_VERSION):
        raise ExportError(
            f"Unsupported exposition version: {version_text}",
            exporter="text",
            details={"supported": EXPOSITION_VERSION},
        )

    samples = []
    for line in lines[1:]:
        if line.startswith("#"):
            continue
        match = _LINE_PATTERN.match(line)
        if match is None:
            raise ExportError("Malformed exposition line", exporter="text", details={"line": line})
        labels = {
            key: _unescape_label_value(value)
            for key, value in _LABEL_PATTERN.findall(match.group("labels") or "")
        }
        samples.append(
            ExpositionSample(
                name=match.group("name"),
                labels=labels,
                value=float(match.group("value")),
            )
        )
    return samples
