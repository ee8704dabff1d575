"""Exception hierarchy for latencykit.

All exceptions raised or recorded by the instrumentation core inherit from
LatencyKitError so callers can catch any instrumentation-related error at a
single point. Only configuration and usage errors are ever raised into the
caller; structural, clock and export problems are recorded as diagnostics and
the measured work carries on.

Exception Hierarchy:
    LatencyKitError (base)
    ├── ConfigurationError
    │   ├── InvalidConfigValueError
    │   └── MissingConfigError
    ├── SpanUsageError
    ├── StructuralIntegrityError
    ├── ClockAnomalyError
    ├── MetricsError
    │   └── AggregatorMismatchError
    ├── ExportError
    │   ├── TransportError
    │   └── RetryExhaustedError
    └── OTelNotInstalledError

Example:
    >>> try:
    ...     close_span(handle)
    ... except SpanUsageError as e:
    ...     logger.error(f"Instrumentation bug: {e}")
"""

from __future__ import annotations

from typing import Any


class LatencyKitError(Exception):
    """Base exception for all latencykit errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.
        cause: Optional original exception that caused this error.

    Example:
        >>> try:
        ...     raise LatencyKitError("Something went wrong", details={"key": "value"})
        ... except LatencyKitError as e:
        ...     print(f"Error: {e.message}, Details: {e.details}")
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        """Return string representation with details if present."""
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"cause={self.cause!r})"
        )

    def with_context(self, **kwargs: Any) -> LatencyKitError:
        """Create a new base error with additional context details.

        The original exception is left untouched.

        Args:
            **kwargs: Additional context to add to details.

        Returns:
            New LatencyKitError carrying the merged details.

        Example:
            >>> e = LatencyKitError("Error", details={"key": "value"})
            >>> e.with_context(metric="http").details
            {'key': 'value', 'metric': 'http'}
        """
        merged_details = {**self.details, **kwargs}
        return LatencyKitError(self.message, details=merged_details, cause=self.cause)


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(LatencyKitError):
    """Exception for configuration-related errors.

    Attributes:
        config_key: Optional key that caused the configuration error.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, details=details, cause=cause)
        self.config_key = config_key


class InvalidConfigValueError(ConfigurationError):
    """Exception for invalid configuration values.

    Attributes:
        config_key: The configuration key with invalid value.
        value: The invalid value that was provided.
        expected: Description of what was expected.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: str,
        value: Any = None,
        expected: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize invalid config value error.

        Args:
            message: Human-readable error description.
            config_key: The configuration key with invalid value.
            value: The invalid value that was provided.
            expected: Description of what was expected.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        details["value"] = value
        if expected:
            details["expected"] = expected
        super().__init__(message, config_key=config_key, details=details, cause=cause)
        self.value = value
        self.expected = expected


class MissingConfigError(ConfigurationError):
    """Exception for a required configuration key that was not provided."""

    def __init__(
        self,
        message: str,
        *,
        config_key: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, config_key=config_key, details=details, cause=cause)


# =============================================================================
# Span Errors
# =============================================================================


class SpanUsageError(LatencyKitError):
    """Exception for misuse of the span API.

    Raised immediately when a span is opened or closed outside a valid
    SpanContext, closed twice, or closed from a context that does not own it.
    These indicate an instrumentation bug that would corrupt measurements.

    Attributes:
        span_name: Name of the span involved, if known.
        span_id: Identifier of the span involved, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        span_name: str | None = None,
        span_id: int | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize span usage error.

        Args:
            message: Human-readable error description.
            span_name: Name of the span involved.
            span_id: Identifier of the span involved.
            details: Optional dictionary with additional error context.
            cause: Optional original exception that caused this error.
        """
        details = details or {}
        if span_name:
            details["span_name"] = span_name
        if span_id is not None:
            details["span_id"] = span_id
        super().__init__(message, details=details, cause=cause)
        self.span_name = span_name
        self.span_id = span_id


class StructuralIntegrityError(LatencyKitError):
    """Record of a nesting violation detected when a span closed.

    Never raised by the core: the violation is repaired by force-closing the
    stale descendants and this error is handed to diagnostics and hooks so
    operators can find the layer that mis-nested.

    Attributes:
        span_name: Span whose close triggered the repair.
        repaired: Names of the descendants that were force-closed.
    """

    def __init__(
        self,
        message: str,
        *,
        span_name: str | None = None,
        repaired: tuple[str, ...] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if span_name:
            details["span_name"] = span_name
        details["repaired"] = list(repaired)
        super().__init__(message, details=details)
        self.span_name = span_name
        self.repaired = repaired


class ClockAnomalyError(LatencyKitError):
    """Record of a clock reading that went backwards.

    Never raised by the core; the affected duration is clamped to zero.

    Attributes:
        start: The earlier reading.
        end: The later reading that was smaller than ``start``.
    """

    def __init__(self, message: str, *, start: int, end: int) -> None:
        super().__init__(message, details={"start": start, "end": end, "skew_ns": start - end})
        self.start = start
        self.end = end


# =============================================================================
# Metrics Errors
# =============================================================================


class MetricsError(LatencyKitError):
    """Base exception for aggregator and registry errors.

    Attributes:
        metric_name: Name of the metric.
    """

    def __init__(
        self,
        message: str,
        *,
        metric_name: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if metric_name:
            details["metric_name"] = metric_name
        super().__init__(message, details=details, cause=cause)
        self.metric_name = metric_name


class AggregatorMismatchError(MetricsError):
    """Raised when aggregators with different bucket layouts are combined."""

    pass


# =============================================================================
# Export Errors
# =============================================================================


class ExportError(LatencyKitError):
    """Base exception for export failures.

    Export errors never reach request-handling code; the push exporter
    retries, then drops the batch and counts it.

    Attributes:
        exporter: Name of the exporter or transport that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        exporter: str | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if exporter:
            details["exporter"] = exporter
        super().__init__(message, details=details, cause=cause)
        self.exporter = exporter


class TransportError(ExportError):
    """Raised by a transport when a payload could not be delivered.

    Attributes:
        endpoint: Target endpoint, if any.
        status_code: HTTP status code, if available.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, exporter="transport", details=details, cause=cause)
        self.endpoint = endpoint
        self.status_code = status_code


class RetryExhaustedError(ExportError):
    """Raised when all retry attempts for an operation failed.

    Attributes:
        attempts: Number of attempts made.
        last_exception: The exception raised by the final attempt.
        exceptions: All exceptions encountered, in order.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        last_exception: Exception | None = None,
        exceptions: tuple[Exception, ...] = (),
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        details["attempts"] = attempts
        if last_exception:
            details["last_exception_type"] = type(last_exception).__name__
        super().__init__(message, details=details, cause=last_exception)
        self.attempts = attempts
        self.last_exception = last_exception
        self.exceptions = exceptions


# =============================================================================
# Optional Integrations
# =============================================================================


class OTelNotInstalledError(LatencyKitError):
    """Raised when the OpenTelemetry bridge is used without opentelemetry-api.

    Attributes:
        feature: The feature that requires OpenTelemetry.
    """

    def __init__(self, feature: str | None = None, cause: Exception | None = None) -> None:
        message = (
            "OpenTelemetry is not installed. "
            "Install with: pip install latencykit[otel]"
        )
        if feature:
            message = f"Feature '{feature}' requires OpenTelemetry. {message}"
        super().__init__(message, details={"feature": feature} if feature else None, cause=cause)
        self.feature = feature


# =============================================================================
# Utility Functions
# =============================================================================


def wrap_exception(
    exception: Exception,
    wrapper_class: type[LatencyKitError] = LatencyKitError,
    message: str | None = None,
    **kwargs: Any,
) -> LatencyKitError:
    """Wrap an arbitrary exception in the latencykit hierarchy.

    Args:
        exception: The original exception to wrap.
        wrapper_class: The exception class to wrap with.
        message: Optional custom message. Defaults to original exception message.
        **kwargs: Additional arguments to pass to the wrapper class.

    Returns:
        A new exception instance with the original kept as ``cause``.

    Example:
        >>> try:
        ...     sock.send(payload)
        ... except OSError as e:
        ...     raise wrap_exception(e, TransportError, endpoint=url) from e
    """
    msg = message if message is not None else str(exception)
    return wrapper_class(msg, cause=exception, **kwargs)
