"""Tests for latencykit.exceptions module."""

from __future__ import annotations

import pytest

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


class TestLatencyKitError:
    """Tests for the base exception."""

    def test_message_and_details(self):
        """Test message, details and string form."""
        error = LatencyKitError("failed", details={"key": "value"})
        assert error.message == "failed"
        assert error.details == {"key": "value"}
        assert str(error) == "failed | Details: {'key': 'value'}"

    def test_str_without_details(self):
        """Test string form without details."""
        assert str(LatencyKitError("failed")) == "failed"

    def test_with_context(self):
        """Test with_context returns a new error with merged details."""
        original = LatencyKitError("failed", details={"a": 1})
        extended = original.with_context(b=2)
        assert extended.details == {"a": 1, "b": 2}
        assert original.details == {"a": 1}

    def test_repr(self):
        """Test repr includes the class name."""
        assert repr(LatencyKitError("x")).startswith("LatencyKitError(")


class TestHierarchy:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        ("error_class", "parent"),
        [
            (ConfigurationError, LatencyKitError),
            (InvalidConfigValueError, ConfigurationError),
            (MissingConfigError, ConfigurationError),
            (SpanUsageError, LatencyKitError),
            (StructuralIntegrityError, LatencyKitError),
            (ClockAnomalyError, LatencyKitError),
            (MetricsError, LatencyKitError),
            (AggregatorMismatchError, MetricsError),
            (ExportError, LatencyKitError),
            (TransportError, ExportError),
            (RetryExhaustedError, ExportError),
            (OTelNotInstalledError, LatencyKitError),
        ],
    )
    def test_subclass(self, error_class, parent):
        """Test each error sits under its documented parent."""
        assert issubclass(error_class, parent)


class TestSpecificErrors:
    """Tests for attribute handling of specific errors."""

    def test_invalid_config_value(self):
        """Test config key, value and expectation are kept."""
        error = InvalidConfigValueError("bad", config_key="base", value=0.5, expected="> 1.0")
        assert error.config_key == "base"
        assert error.details == {"value": 0.5, "expected": "> 1.0", "config_key": "base"}

    def test_span_usage(self):
        """Test span identifiers land in details."""
        error = SpanUsageError("closed twice", span_name="db", span_id=3)
        assert error.details == {"span_name": "db", "span_id": 3}

    def test_structural_integrity(self):
        """Test repaired span names are kept."""
        error = StructuralIntegrityError("repaired", span_name="middle", repaired=("inner",))
        assert error.repaired == ("inner",)
        assert error.details["repaired"] == ["inner"]

    def test_clock_anomaly(self):
        """Test readings and skew are recorded."""
        error = ClockAnomalyError("backwards", start=10, end=4)
        assert error.details == {"start": 10, "end": 4, "skew_ns": 6}

    def test_transport(self):
        """Test endpoint and status code."""
        error = TransportError("down", endpoint="http://c", status_code=503)
        assert error.status_code == 503
        assert error.exporter == "transport"
        assert error.details["endpoint"] == "http://c"

    def test_retry_exhausted(self):
        """Test the last exception becomes the cause."""
        last = ConnectionError("refused")
        error = RetryExhaustedError("gave up", attempts=3, last_exception=last)
        assert error.cause is last
        assert error.details["last_exception_type"] == "ConnectionError"

    def test_otel_not_installed(self):
        """Test the feature name is part of the message."""
        error = OTelNotInstalledError(feature="metrics bridge")
        assert "metrics bridge" in error.message
        assert error.feature == "metrics bridge"


class TestWrapException:
    """Tests for wrap_exception()."""

    def test_default_wrapper(self):
        """Test wrapping into the base class."""
        original = OSError("socket closed")
        wrapped = wrap_exception(original)
        assert isinstance(wrapped, LatencyKitError)
        assert wrapped.message == "socket closed"
        assert wrapped.cause is original

    def test_custom_wrapper(self):
        """Test wrapping with a subclass and its keyword arguments."""
        wrapped = wrap_exception(
            OSError("refused"),
            TransportError,
            message="push failed",
            endpoint="http://c",
        )
        assert isinstance(wrapped, TransportError)
        assert wrapped.message == "push failed"
        assert wrapped.endpoint == "http://c"
