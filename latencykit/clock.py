"""Monotonic duration source.

Readings are opaque integers in nanoseconds. They are only ever subtracted
from one another, never interpreted as wall-clock time.
"""

from __future__ import annotations

import time
from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from latencykit.diagnostics import DiagnosticCounter
from latencykit.exceptions import ClockAnomalyError
from latencykit.logging import get_logger


if TYPE_CHECKING:
    from latencykit.diagnostics import Diagnostics


logger = get_logger(__name__)


@runtime_checkable
class Clock(Protocol):
    """Protocol for duration sources."""

    @abstractmethod
    def now(self) -> int:
        """Return the current reading in nanoseconds."""
        ...


class MonotonicClock:
    """Production clock backed by ``time.monotonic_ns``."""

    def now(self) -> int:
        return time.monotonic_ns()


def elapsed(start: int, end: int, diagnostics: Diagnostics | None = None) -> int:
    """Duration between two readings, clamped to zero.

    A reading that went backwards is a faulty clock, not a failure of the
    measured work: the anomaly is counted in ``diagnostics`` and logged, and
    zero is returned.

    Args:
        start: The earlier reading.
        end: The later reading.
        diagnostics: Counters to record a backwards reading in.

    Returns:
        ``end - start`` or 0 if that would be negative.

    Example:
        >>> elapsed(100, 250)
        150
        >>> elapsed(250, 100)
        0
    """
    duration = end - start
    if duration >= 0:
        return duration

    error = ClockAnomalyError("Clock reading went backwards", start=start, end=end)
    if diagnostics is not None:
        diagnostics.increment(DiagnosticCounter.CLOCK_ANOMALIES, error=error)
    logger.warning(
        "Clock reading went backwards, clamping duration to 0",
        start=start,
        end=end,
        skew_ns=start - end,
    )
    return 0
