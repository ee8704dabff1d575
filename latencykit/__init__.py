"""latencykit: layered latency instrumentation and metrics aggregation.

The package captures nested timing spans across the layers of a unit of
work (transport, framework, business method) and turns the resulting
durations into space-bounded, concurrently updatable summaries that can be
exported to monitoring systems.

Quick Start:
    >>> from latencykit import (
    ...     FrameworkInterceptor, InterceptorChain, LatencyConfig,
    ...     MethodInterceptor, MetricsRegistry, PullExporter, Tracer,
    ...     TransportInterceptor,
    ... )
    >>> registry = MetricsRegistry(LatencyConfig(base=1.1))
    >>> methods = MethodInterceptor({"get_user": "user_lookup"})
    >>> chain = InterceptorChain(
    ...     Tracer(registry),
    ...     [TransportInterceptor("http"), FrameworkInterceptor(), methods],
    ... )
    >>> chain.execute("get_user", get_user, 42, attributes={"route": "/users/{id}"})
    >>> print(PullExporter(registry).render())

Spans:
    >>> from latencykit import Tracer, open_span, close_span
    >>> with Tracer(registry).unit_of_work("job-17"):
    ...     handle = open_span("load", {"source": "s3"})
    ...     close_span(handle)

Push export:
    >>> from latencykit import HttpPushTransport, PushExporter
    >>> exporter = PushExporter(registry, HttpPushTransport("http://collector/ingest"))
    >>> exporter.start()

Logging:
    >>> from latencykit import configure_logging
    >>> configure_logging(level="DEBUG", format="json")
"""

from __future__ import annotations

from latencykit.aggregator import (
    Aggregator,
    AggregatorSnapshot,
    BucketLayout,
    merge_snapshots,
    quantile,
)
from latencykit.clock import Clock, MonotonicClock, elapsed
from latencykit.config import (
    COARSE_LATENCY_CONFIG,
    DEFAULT_LATENCY_CONFIG,
    HIGH_PRECISION_LATENCY_CONFIG,
    EnvReader,
    LatencyConfig,
    load_config,
    load_config_file,
)
from latencykit.diagnostics import DiagnosticCounter, Diagnostics, DiagnosticsSnapshot
from latencykit.exceptions import (
    AggregatorMismatchError,
    ClockAnomalyError,
    ConfigurationError,
    ExportError,
    InvalidConfigValueError,
    LatencyKitError,
    MetricsError,
    MissingConfigError,
    OTelNotInstalledError,
    RetryExhaustedError,
    SpanUsageError,
    StructuralIntegrityError,
    TransportError,
    wrap_exception,
)
from latencykit.exporters import (
    HttpPushTransport,
    PullExporter,
    PushExporter,
    ScrapeServer,
    Transport,
)
from latencykit.exposition import (
    EXPOSITION_VERSION,
    ExpositionFormatter,
    JSONExpositionFormatter,
    TextExpositionFormatter,
    create_formatter,
    parse_text_exposition,
)
from latencykit.interceptors import (
    FrameworkInterceptor,
    Interceptor,
    InterceptorChain,
    Invocation,
    MethodInterceptor,
    SpanInterceptor,
    TransportInterceptor,
)
from latencykit.logging import (
    LatencyLogger,
    LogContext,
    LogLevel,
    configure_logging,
    get_logger,
)
from latencykit.registry import MetricKey, MetricsRegistry, RegistrySnapshot
from latencykit.retry import RetryConfig, RetryExecutor, RetryStrategy
from latencykit.spans import (
    CompositeSpanHook,
    LoggingSpanHook,
    SampleSink,
    Span,
    SpanContext,
    SpanHandle,
    SpanHook,
    SpanOutcome,
    TimerSample,
    Tracer,
    active_context,
    close_span,
    current_context,
    open_span,
    span,
)


__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Clock
    "Clock",
    "MonotonicClock",
    "elapsed",
    # Spans
    "CompositeSpanHook",
    "LoggingSpanHook",
    "SampleSink",
    "Span",
    "SpanContext",
    "SpanHandle",
    "SpanHook",
    "SpanOutcome",
    "TimerSample",
    "Tracer",
    "active_context",
    "close_span",
    "current_context",
    "open_span",
    "span",
    # Interceptors
    "FrameworkInterceptor",
    "Interceptor",
    "InterceptorChain",
    "Invocation",
    "MethodInterceptor",
    "SpanInterceptor",
    "TransportInterceptor",
    # Aggregation
    "Aggregator",
    "AggregatorSnapshot",
    "BucketLayout",
    "merge_snapshots",
    "quantile",
    # Registry
    "MetricKey",
    "MetricsRegistry",
    "RegistrySnapshot",
    # Diagnostics
    "DiagnosticCounter",
    "Diagnostics",
    "DiagnosticsSnapshot",
    # Export
    "EXPOSITION_VERSION",
    "ExpositionFormatter",
    "HttpPushTransport",
    "JSONExpositionFormatter",
    "PullExporter",
    "PushExporter",
    "ScrapeServer",
    "TextExpositionFormatter",
    "Transport",
    "create_formatter",
    "parse_text_exposition",
    # Configuration
    "COARSE_LATENCY_CONFIG",
    "DEFAULT_LATENCY_CONFIG",
    "HIGH_PRECISION_LATENCY_CONFIG",
    "EnvReader",
    "LatencyConfig",
    "load_config",
    "load_config_file",
    # Retry
    "RetryConfig",
    "RetryExecutor",
    "RetryStrategy",
    # Logging
    "LatencyLogger",
    "LogContext",
    "LogLevel",
    "configure_logging",
    "get_logger",
    # Exceptions
    "AggregatorMismatchError",
    "ClockAnomalyError",
    "ConfigurationError",
    "ExportError",
    "InvalidConfigValueError",
    "LatencyKitError",
    "MetricsError",
    "MissingConfigError",
    "OTelNotInstalledError",
    "RetryExhaustedError",
    "SpanUsageError",
    "StructuralIntegrityError",
    "TransportError",
    "wrap_exception",
]
