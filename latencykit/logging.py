"""Structured logging for latencykit.

Every component logs through a ``LatencyLogger`` obtained from
``get_logger(__name__)``. Records carry structured fields plus whatever
``LogContext`` is active on the current execution context, so a structural
repair logged deep inside a span close still shows which unit of work it
belongs to.

By default records are forwarded to the standard library ``logging`` module
(logger name preserved), which keeps the library quiet unless the host
application configures logging. ``configure_logging`` switches to direct
text or JSON output on a stream.

Example:
    >>> from latencykit.logging import get_logger, LogContext
    >>> logger = get_logger(__name__)
    >>> with LogContext(unit_of_work="req-42"):
    ...     logger.warning("Clock went backwards", skew_ns=120)
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import abstractmethod
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    Self,
    runtime_checkable,
)


if TYPE_CHECKING:
    from collections.abc import Mapping


# =============================================================================
# Levels
# =============================================================================


class LogLevel(Enum):
    """Log severity levels, numerically aligned with the stdlib levels."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    def to_stdlib(self) -> int:
        """Convert to stdlib logging level."""
        return self.value

    @classmethod
    def from_string(cls, level: str) -> LogLevel:
        """Create from string representation, falling back to INFO."""
        try:
            return cls[level.upper()]
        except KeyError:
            return cls.INFO


# =============================================================================
# Context Management
# =============================================================================


@dataclass(frozen=True, slots=True)
class LogContextData:
    """Immutable container for log context data.

    Attributes:
        component: Instrumentation component (chain, exporter, ...).
        unit_of_work: Identifier of the unit of work being measured.
        extra: Additional context fields.
    """

    component: str | None = None
    unit_of_work: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def merge(self, other: LogContextData) -> LogContextData:
        """Create a new context with ``other`` taking precedence."""
        return LogContextData(
            component=other.component or self.component,
            unit_of_work=other.unit_of_work or self.unit_of_work,
            extra={**self.extra, **other.extra},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        if self.component:
            result["component"] = self.component
        if self.unit_of_work:
            result["unit_of_work"] = self.unit_of_work
        result.update(self.extra)
        return result


_log_context: ContextVar[LogContextData] = ContextVar(
    "latencykit_log_context", default=LogContextData()
)


class LogContext:
    """Context manager that adds fields to every record logged in its scope.

    Nested contexts merge, inner values winning.

    Example:
        >>> with LogContext(component="push_exporter"):
        ...     with LogContext(cycle=3):
        ...         logger.info("Sending batch")  # component and cycle attached
    """

    def __init__(
        self,
        *,
        component: str | None = None,
        unit_of_work: str | None = None,
        **extra: Any,
    ) -> None:
        self._new_context = LogContextData(
            component=component,
            unit_of_work=unit_of_work,
            extra=extra,
        )
        self._token: Any = None

    def __enter__(self) -> Self:
        merged = _log_context.get().merge(self._new_context)
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def get_current_context() -> LogContextData:
    """Get the log context of the current execution context."""
    return _log_context.get()


# =============================================================================
# Log Record
# =============================================================================


@dataclass(slots=True)
class LogRecord:
    """Structured log record.

    Attributes:
        level: Log severity level.
        message: Log message.
        logger_name: Name of the logger.
        timestamp: When the record was created (wall clock, for display only).
        context: Context active when the record was created.
        extra: Structured fields passed to the log call.
        exc_info: Exception attached to the record, if any.
    """

    level: LogLevel
    message: str
    logger_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    context: LogContextData = field(default_factory=LogContextData)
    extra: dict[str, Any] = field(default_factory=dict)
    exc_info: BaseException | None = None

    def fields(self) -> dict[str, Any]:
        """Context and extra fields merged, extra winning."""
        return {**self.context.to_dict(), **self.extra}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result = {
            "level": self.level.name,
            "message": self.message,
            "logger": self.logger_name,
            "timestamp": self.timestamp.isoformat(),
            **self.fields(),
        }
        if self.exc_info:
            result["exception"] = str(self.exc_info)
            result["exception_type"] = type(self.exc_info).__name__
        return result


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class LogHandler(Protocol):
    """Protocol for log handlers."""

    @abstractmethod
    def handle(self, record: LogRecord) -> None:
        """Process a log record."""
        ...

    @abstractmethod
    def flush(self) -> None:
        """Flush any buffered output."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Close the handler and release resources."""
        ...


@runtime_checkable
class LogFormatter(Protocol):
    """Protocol for log formatters."""

    @abstractmethod
    def format(self, record: LogRecord) -> str:
        """Format a log record."""
        ...


# =============================================================================
# Formatters
# =============================================================================


class TextFormatter:
    """Plain text log formatter.

    Example output:
        2024-01-15T10:30:45.123456+00:00 [ERROR] latencykit.spans: Span closed with open descendants | unit_of_work=req-1 span=middle
    """

    def __init__(self, include_fields: bool = True) -> None:
        self.include_fields = include_fields

    def format(self, record: LogRecord) -> str:
        parts = [
            record.timestamp.isoformat(),
            f"[{record.level.name}]",
            f"{record.logger_name}:",
            record.message,
        ]
        if self.include_fields:
            fields = record.fields()
            if fields:
                parts.append("| " + " ".join(f"{k}={v}" for k, v in fields.items()))
        if record.exc_info:
            parts.append(f"| exception={record.exc_info!r}")
        return " ".join(parts)


class JSONFormatter:
    """JSON log formatter for structured log pipelines."""

    def __init__(self, indent: int | None = None) -> None:
        self._indent = indent

    def format(self, record: LogRecord) -> str:
        return json.dumps(record.to_dict(), indent=self._indent, default=str)


# =============================================================================
# Handlers
# =============================================================================


class StreamHandler:
    """Handler that writes formatted records to a stream (stderr by default)."""

    def __init__(
        self,
        stream: Any = None,
        formatter: LogFormatter | None = None,
        level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._stream = stream or sys.stderr
        self._formatter = formatter or TextFormatter()
        self._level = level
        self._lock = threading.Lock()
        self._closed = False

    def handle(self, record: LogRecord) -> None:
        if self._closed or record.level.value < self._level.value:
            return
        message = self._formatter.format(record)
        with self._lock:
            self._stream.write(message + "\n")

    def flush(self) -> None:
        if not self._closed and hasattr(self._stream, "flush"):
            self._stream.flush()

    def close(self) -> None:
        self.flush()
        self._closed = True


class NullHandler:
    """Handler that discards all records."""

    def handle(self, record: LogRecord) -> None:
        pass

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass


class StdlibLoggerAdapter:
    """Handler forwarding records to the standard ``logging`` module.

    Records are emitted on the stdlib logger of the same name unless a
    specific logger is given, with structured fields appended to the message
    and also attached as ``record.latencykit_fields``.
    """

    def __init__(self, stdlib_logger: logging.Logger | None = None) -> None:
        self._logger = stdlib_logger

    def handle(self, record: LogRecord) -> None:
        target = self._logger or logging.getLogger(record.logger_name)
        fields = record.fields()
        message = record.message
        if fields:
            message = f"{message} | " + " ".join(f"{k}={v}" for k, v in fields.items())
        exc_info = None
        if record.exc_info is not None:
            exc_info = (type(record.exc_info), record.exc_info, record.exc_info.__traceback__)
        target.log(
            record.level.to_stdlib(),
            message,
            exc_info=exc_info,
            extra={"latencykit_fields": fields},
        )

    def flush(self) -> None:
        target = self._logger or logging.getLogger()
        for handler in target.handlers:
            handler.flush()

    def close(self) -> None:
        pass


# =============================================================================
# Logger Implementation
# =============================================================================


class LatencyLogger:
    """Structured logger used by all latencykit components.

    Handler failures are swallowed: instrumentation must never fail the work
    it measures because a log sink is broken.

    Example:
        >>> logger = LatencyLogger("latencykit.exporters")
        >>> logger.info("Export cycle finished", metrics=12, duration_ms=3.1)
    """

    def __init__(
        self,
        name: str,
        level: LogLevel = LogLevel.DEBUG,
        handlers: list[LogHandler] | None = None,
    ) -> None:
        self.name = name
        self.level = level
        self._handlers: list[LogHandler] = handlers if handlers is not None else []

    @property
    def handlers(self) -> tuple[LogHandler, ...]:
        """Handlers attached to this logger."""
        return tuple(self._handlers)

    def add_handler(self, handler: LogHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def remove_handler(self, handler: LogHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def is_enabled_for(self, level: LogLevel) -> bool:
        """Check if logging is enabled for ``level``."""
        return level.value >= self.level.value

    def _log(
        self,
        level: LogLevel,
        message: str,
        exc_info: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        if not self.is_enabled_for(level):
            return

        record = LogRecord(
            level=level,
            message=message,
            logger_name=self.name,
            context=get_current_context(),
            extra=kwargs,
            exc_info=exc_info,
        )
        for handler in self._handlers:
            try:
                handler.handle(record)
            except Exception:
                # A broken sink must not break instrumentation
                pass

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, exc_info: BaseException | None = None, **kwargs: Any) -> None:
        self._log(LogLevel.ERROR, message, exc_info=exc_info, **kwargs)

    def critical(
        self, message: str, exc_info: BaseException | None = None, **kwargs: Any
    ) -> None:
        self._log(LogLevel.CRITICAL, message, exc_info=exc_info, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR level with the exception currently being handled."""
        self._log(LogLevel.ERROR, message, exc_info=sys.exc_info()[1], **kwargs)


# =============================================================================
# Logger Registry
# =============================================================================


class LoggerRegistry:
    """Hands out one LatencyLogger per name and applies global configuration."""

    def __init__(self) -> None:
        self._loggers: dict[str, LatencyLogger] = {}
        self._root_handlers: list[LogHandler] = [StdlibLoggerAdapter()]
        self._root_level: LogLevel = LogLevel.DEBUG
        self._lock = threading.Lock()

    def get_logger(self, name: str, level: LogLevel | None = None) -> LatencyLogger:
        """Get or create a logger by name."""
        with self._lock:
            logger = self._loggers.get(name)
            if logger is None:
                logger = LatencyLogger(
                    name=name,
                    level=level or self._root_level,
                    handlers=list(self._root_handlers),
                )
                self._loggers[name] = logger
            return logger

    def configure(
        self,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
        format: str = "stdlib",
    ) -> None:
        """Configure level and handlers for all current and future loggers.

        Args:
            level: Minimum level.
            handlers: Explicit handlers; overrides ``format``.
            format: ``"stdlib"`` (forward to logging), ``"text"`` or ``"json"``.
        """
        if handlers is None:
            if format == "json":
                handlers = [StreamHandler(formatter=JSONFormatter(), level=level)]
            elif format == "text":
                handlers = [StreamHandler(formatter=TextFormatter(), level=level)]
            else:
                handlers = [StdlibLoggerAdapter()]

        with self._lock:
            self._root_level = level
            self._root_handlers = list(handlers)
            for logger in self._loggers.values():
                logger.level = level
                logger._handlers = list(handlers)


_registry = LoggerRegistry()


def get_logger(name: str, level: LogLevel | None = None) -> LatencyLogger:
    """Get a logger by name (typically ``__name__``).

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Registry created", metrics=0)
    """
    return _registry.get_logger(name, level)


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    handlers: list[LogHandler] | None = None,
    format: str = "stdlib",
) -> None:
    """Configure global logging settings.

    Example:
        >>> configure_logging(level="DEBUG", format="json")
    """
    if isinstance(level, str):
        level = LogLevel.from_string(level)
    _registry.configure(level=level, handlers=handlers, format=format)
