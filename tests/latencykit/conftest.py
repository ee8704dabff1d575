"""Pytest fixtures for latencykit tests."""

from __future__ import annotations

import pytest

from latencykit.config import LatencyConfig
from latencykit.diagnostics import Diagnostics
from latencykit.registry import MetricsRegistry
from latencykit.spans import Tracer
from latencykit.testing import ManualClock, RecordingSink


@pytest.fixture
def clock() -> ManualClock:
    """Manual clock starting at 1 second."""
    return ManualClock(start=1_000_000_000)


@pytest.fixture
def diagnostics() -> Diagnostics:
    """Fresh diagnostic counters."""
    return Diagnostics()


@pytest.fixture
def sink() -> RecordingSink:
    """Sink recording every timer sample."""
    return RecordingSink()


@pytest.fixture
def tracer(sink: RecordingSink, clock: ManualClock, diagnostics: Diagnostics) -> Tracer:
    """Tracer wired to the recording sink and manual clock."""
    return Tracer(sink, clock=clock, diagnostics=diagnostics)


@pytest.fixture
def fine_config() -> LatencyConfig:
    """Fine-grained layout used by accuracy tests."""
    return LatencyConfig(base=1.1, bucket_count=200, resolution_ns=1_000)


@pytest.fixture
def registry(fine_config: LatencyConfig) -> MetricsRegistry:
    """Registry with the fine-grained layout."""
    return MetricsRegistry(fine_config)
