"""Testing utilities for latencykit.

Deterministic and recording stand-ins for the collaborators of the core:

- ManualClock: a clock that only moves when told to
- RecordingSink: keeps every TimerSample it receives
- RecordingSpanHook: keeps every span lifecycle event
- InMemoryTransport / FlakyTransport / FailingTransport: push transports
- true_quantile / assert_quantile_within_bound: quantile assertions

Example:
    >>> from latencykit.testing import ManualClock, RecordingSink
    >>> clock, sink = ManualClock(), RecordingSink()
    >>> tracer = Tracer(sink, clock=clock)
    >>> with tracer.unit_of_work() as context:
    ...     handle = context.open("step")
    ...     clock.advance_ms(5)
    ...     context.close(handle)
    >>> sink.samples[0].duration_ns
    5000000
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from latencykit.aggregator import quantile_rank
from latencykit.exceptions import TransportError


if TYPE_CHECKING:
    from latencykit.exceptions import StructuralIntegrityError
    from latencykit.spans import Span, TimerSample


# =============================================================================
# Clock
# =============================================================================


class ManualClock:
    """Clock whose reading changes only through ``advance``/``set``.

    ``set`` may move the reading backwards, which is how clock anomalies are
    simulated.
    """

    def __init__(self, start: int = 0) -> None:
        self._reading = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._reading

    def advance(self, nanoseconds: int) -> int:
        with self._lock:
            self._reading += nanoseconds
            return self._reading

    def advance_ms(self, milliseconds: float) -> int:
        return self.advance(int(milliseconds * 1_000_000))

    def set(self, reading: int) -> None:
        with self._lock:
            self._reading = reading


# =============================================================================
# Sinks and Hooks
# =============================================================================


class RecordingSink:
    """SampleSink that stores samples, optionally forwarding them.

    Args:
        forward_to: Another sink (e.g. a registry) that also receives samples.
        raise_on_record: Exception raised from ``record`` after storing.
    """

    def __init__(
        self,
        forward_to: Any = None,
        raise_on_record: Exception | None = None,
    ) -> None:
        self._samples: list[TimerSample] = []
        self._lock = threading.Lock()
        self._forward_to = forward_to
        self._raise_on_record = raise_on_record

    def record(self, sample: TimerSample) -> None:
        with self._lock:
            self._samples.append(sample)
        if self._forward_to is not None:
            self._forward_to.record(sample)
        if self._raise_on_record is not None:
            raise self._raise_on_record

    @property
    def samples(self) -> list[TimerSample]:
        with self._lock:
            return list(self._samples)

    def by_name(self, metric_name: str) -> list[TimerSample]:
        return [s for s in self.samples if s.metric_name == metric_name]

    def names(self) -> list[str]:
        return [s.metric_name for s in self.samples]

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


class RecordingSpanHook:
    """SpanHook recording ``(event, span_name)`` tuples and repair errors."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.repairs: list[StructuralIntegrityError] = []

    def on_span_open(self, span: Span) -> None:
        self.events.append(("open", span.name))

    def on_span_close(self, span: Span) -> None:
        self.events.append(("close", span.name))

    def on_structural_repair(self, error: StructuralIntegrityError, span: Span) -> None:
        self.events.append(("repair", span.name))
        self.repairs.append(error)


# =============================================================================
# Transports
# =============================================================================


class InMemoryTransport:
    """Transport that keeps every payload it is sent."""

    def __init__(self) -> None:
        self.payloads: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self.delivered = threading.Event()

    def send(self, payload: str, content_type: str) -> None:
        with self._lock:
            self.payloads.append((payload, content_type))
        self.delivered.set()

    @property
    def send_count(self) -> int:
        with self._lock:
            return len(self.payloads)

    @property
    def last_payload(self) -> str | None:
        with self._lock:
            return self.payloads[-1][0] if self.payloads else None


class FlakyTransport(InMemoryTransport):
    """Fails the first ``failures`` sends, then delivers.

    Args:
        failures: Number of sends that raise before sends start succeeding.
        error_factory: Builds the exception for a failing send.
    """

    def __init__(
        self,
        failures: int,
        error_factory: Callable[[int], Exception] | None = None,
    ) -> None:
        super().__init__()
        self.remaining_failures = failures
        self.attempts = 0
        self._error_factory = error_factory or (
            lambda attempt: TransportError(f"Simulated failure {attempt}", endpoint="memory")
        )

    def send(self, payload: str, content_type: str) -> None:
        self.attempts += 1
        if self.remaining_failures > 0:
            self.remaining_failures -= 1
            raise self._error_factory(self.attempts)
        super().send(payload, content_type)


class FailingTransport(FlakyTransport):
    """Fails every send."""

    def __init__(self, error_factory: Callable[[int], Exception] | None = None) -> None:
        super().__init__(failures=0, error_factory=error_factory)

    def send(self, payload: str, content_type: str) -> None:
        self.attempts += 1
        raise self._error_factory(self.attempts)


# =============================================================================
# Assertion Helpers
# =============================================================================


def true_quantile(values: Sequence[float], q: float) -> float:
    """Exact nearest-rank quantile, using the same rank rule as the aggregator."""
    ordered = sorted(values)
    if not ordered:
        return 0.0
    return ordered[quantile_rank(q, len(ordered)) - 1]


def assert_quantile_within_bound(
    estimate: float,
    true_value: float,
    base: float,
    rel_tol: float = 1e-9,
) -> None:
    """Assert ``|estimate - true_value| <= true_value * (base - 1)``.

    Raises:
        AssertionError: If the estimate is outside the bound.
    """
    bound = true_value * (base - 1) * (1 + rel_tol) + rel_tol
    error = abs(estimate - true_value)
    assert error <= bound, (
        f"Quantile estimate {estimate} differs from {true_value} by {error}, "
        f"more than the bound {bound} for base {base}"
    )
