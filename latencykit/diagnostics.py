"""Internal diagnostic counters.

The core never raises structural, clock or export problems into measured
code. Instead each occurrence is counted here (and logged by the component
that detected it) so operators can see that instrumentation repaired or
dropped something. Counters are exported next to the metrics as
``latencykit_<counter>_total``.

Example:
    >>> diagnostics = Diagnostics()
    >>> diagnostics.increment(DiagnosticCounter.DROPPED_EXPORTS)
    >>> diagnostics.snapshot().dropped_exports
    1
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from latencykit.exceptions import LatencyKitError


class DiagnosticCounter(Enum):
    """Names of the diagnostic counters."""

    CLOCK_ANOMALIES = "clock_anomalies"
    STRUCTURAL_REPAIRS = "structural_repairs"
    DROPPED_EXPORTS = "dropped_exports"
    SUCCESSFUL_EXPORTS = "successful_exports"
    EXPORT_RETRIES = "export_retries"


@dataclass(frozen=True, slots=True)
class DiagnosticsSnapshot:
    """Point-in-time copy of all diagnostic counters."""

    clock_anomalies: int = 0
    structural_repairs: int = 0
    dropped_exports: int = 0
    successful_exports: int = 0
    export_retries: int = 0

    def get(self, counter: DiagnosticCounter) -> int:
        return getattr(self, counter.value)

    def to_dict(self) -> dict[str, int]:
        return {counter.value: self.get(counter) for counter in DiagnosticCounter}


class Diagnostics:
    """Thread-safe diagnostic counters plus a short history of recorded errors.

    Args:
        history_size: How many recorded errors to keep for inspection.
    """

    def __init__(self, history_size: int = 32) -> None:
        self._lock = threading.Lock()
        self._counts: dict[DiagnosticCounter, int] = dict.fromkeys(DiagnosticCounter, 0)
        self._recent: deque[LatencyKitError] = deque(maxlen=history_size)

    def increment(
        self,
        counter: DiagnosticCounter,
        amount: int = 1,
        error: LatencyKitError | None = None,
    ) -> None:
        """Increment ``counter``, optionally remembering the error that caused it."""
        with self._lock:
            self._counts[counter] += amount
            if error is not None:
                self._recent.append(error)

    def get(self, counter: DiagnosticCounter) -> int:
        with self._lock:
            return self._counts[counter]

    @property
    def recent_errors(self) -> tuple[LatencyKitError, ...]:
        """Most recently recorded errors, oldest first."""
        with self._lock:
            return tuple(self._recent)

    def snapshot(self) -> DiagnosticsSnapshot:
        with self._lock:
            return DiagnosticsSnapshot(
                **{counter.value: value for counter, value in self._counts.items()}
            )

    def reset(self) -> None:
        """Zero every counter and forget recorded errors."""
        with self._lock:
            for counter in self._counts:
                self._counts[counter] = 0
            self._recent.clear()

    def to_dict(self) -> dict[str, Any]:
        return self.snapshot().to_dict()
