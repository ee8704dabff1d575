"""Bounded retry with backoff for export transmissions.

The push exporter wraps each transmission in a ``RetryExecutor``. Delays are
computed by a pluggable ``DelayCalculator`` and the wait between attempts is
injectable, so the exporter can wait on its stop event (and abandon the
backoff on shutdown) while tests wait on nothing at all.

Example:
    >>> executor = RetryExecutor(RetryConfig(max_attempts=3, base_delay_seconds=0.1))
    >>> executor.execute(transport.send, payload, "text/plain")
"""

from __future__ import annotations

import random
import time
from abc import abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Protocol, runtime_checkable

from latencykit.exceptions import InvalidConfigValueError, RetryExhaustedError
from latencykit.logging import get_logger


class RetryStrategy(Enum):
    """Built-in retry delay strategies.

    Attributes:
        FIXED: Use a fixed delay between retries.
        EXPONENTIAL: Exponentially increase delay between retries.
        LINEAR: Linearly increase delay between retries.
    """

    FIXED = auto()
    EXPONENTIAL = auto()
    LINEAR = auto()


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class DelayCalculator(Protocol):
    """Protocol for calculating retry delays."""

    @abstractmethod
    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        """Calculate delay for the given attempt.

        Args:
            attempt: Attempt that just failed (1-indexed).
            base_delay: Base delay in seconds.
            max_delay: Maximum delay in seconds.

        Returns:
            Delay in seconds.
        """
        ...


@runtime_checkable
class RetryHook(Protocol):
    """Protocol for retry event hooks."""

    @abstractmethod
    def on_retry(
        self,
        attempt: int,
        exception: Exception,
        delay: float,
        context: dict[str, Any],
    ) -> None:
        """Called before waiting for the next attempt."""
        ...

    @abstractmethod
    def on_success(self, attempt: int, result: Any, context: dict[str, Any]) -> None:
        """Called when an attempt succeeds."""
        ...

    @abstractmethod
    def on_failure(
        self,
        attempts: int,
        exceptions: tuple[Exception, ...],
        context: dict[str, Any],
    ) -> None:
        """Called when all attempts are exhausted."""
        ...


# =============================================================================
# Delay Calculators
# =============================================================================


class FixedDelayCalculator:
    """Fixed delay between retries."""

    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        return min(base_delay, max_delay)


class ExponentialDelayCalculator:
    """Exponential backoff delay calculator."""

    def __init__(self, base: float = 2.0) -> None:
        self.base = base

    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        delay = base_delay * (self.base ** (attempt - 1))
        return min(delay, max_delay)


class LinearDelayCalculator:
    """Linear increase delay calculator.

    Args:
        increment: Delay added per attempt in seconds.
    """

    def __init__(self, increment: float = 1.0) -> None:
        self.increment = increment

    def calculate_delay(self, attempt: int, base_delay: float, max_delay: float) -> float:
        delay = base_delay + (self.increment * (attempt - 1))
        return min(delay, max_delay)


# =============================================================================
# Retry Hooks
# =============================================================================


class LoggingRetryHook:
    """Hook that logs retry events."""

    def __init__(self, logger_name: str | None = None) -> None:
        self._logger = get_logger(logger_name or __name__)

    def on_retry(
        self,
        attempt: int,
        exception: Exception,
        delay: float,
        context: dict[str, Any],
    ) -> None:
        self._logger.warning(
            "Retry attempt",
            attempt=attempt,
            exception_type=type(exception).__name__,
            exception_message=str(exception),
            delay_seconds=delay,
            **context,
        )

    def on_success(self, attempt: int, result: Any, context: dict[str, Any]) -> None:
        if attempt > 1:
            self._logger.info("Retry succeeded", attempt=attempt, **context)

    def on_failure(
        self,
        attempts: int,
        exceptions: tuple[Exception, ...],
        context: dict[str, Any],
    ) -> None:
        last_exc = exceptions[-1] if exceptions else None
        self._logger.error(
            "Retry exhausted",
            attempts=attempts,
            last_exception_type=type(last_exc).__name__ if last_exc else None,
            last_exception_message=str(last_exc) if last_exc else None,
            **context,
        )


class CompositeRetryHook:
    """Fans retry events out to several hooks."""

    def __init__(self, hooks: Sequence[RetryHook]) -> None:
        self._hooks = list(hooks)

    def add_hook(self, hook: RetryHook) -> None:
        self._hooks.append(hook)

    def on_retry(
        self,
        attempt: int,
        exception: Exception,
        delay: float,
        context: dict[str, Any],
    ) -> None:
        for hook in self._hooks:
            hook.on_retry(attempt, exception, delay, context)

    def on_success(self, attempt: int, result: Any, context: dict[str, Any]) -> None:
        for hook in self._hooks:
            hook.on_success(attempt, result, context)

    def on_failure(
        self,
        attempts: int,
        exceptions: tuple[Exception, ...],
        context: dict[str, Any],
    ) -> None:
        for hook in self._hooks:
            hook.on_failure(attempts, exceptions, context)


# =============================================================================
# Configuration
# =============================================================================


def _get_delay_calculator(
    strategy: RetryStrategy,
    exponential_base: float = 2.0,
    linear_increment: float = 1.0,
) -> DelayCalculator:
    if strategy == RetryStrategy.FIXED:
        return FixedDelayCalculator()
    elif strategy == RetryStrategy.LINEAR:
        return LinearDelayCalculator(increment=linear_increment)
    return ExponentialDelayCalculator(base=exponential_base)


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_seconds: Base delay between attempts.
        max_delay_seconds: Upper bound for any single delay.
        strategy: Delay calculation strategy.
        exponential_base: Growth factor for exponential backoff.
        linear_increment: Increment for linear backoff in seconds.
        jitter: Whether to add random jitter to delays.
        jitter_factor: Maximum jitter as fraction of delay (0.0 to 1.0).
        exceptions: Exception types that trigger a retry; others propagate.

    Example:
        >>> config = RetryConfig(max_attempts=5, strategy=RetryStrategy.LINEAR)
        >>> RetryExecutor(config).calculate_delay(1)
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 5.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    exponential_base: float = 2.0
    linear_increment: float = 1.0
    jitter: bool = True
    jitter_factor: float = 0.1
    exceptions: tuple[type[Exception], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidConfigValueError(
                "max_attempts must be at least 1",
                config_key="max_attempts",
                value=self.max_attempts,
                expected=">= 1",
            )
        if self.base_delay_seconds < 0:
            raise InvalidConfigValueError(
                "base_delay_seconds must be non-negative",
                config_key="base_delay_seconds",
                value=self.base_delay_seconds,
                expected=">= 0",
            )
        if self.max_delay_seconds < self.base_delay_seconds:
            raise InvalidConfigValueError(
                "max_delay_seconds must be >= base_delay_seconds",
                config_key="max_delay_seconds",
                value=self.max_delay_seconds,
                expected=f">= {self.base_delay_seconds}",
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise InvalidConfigValueError(
                "jitter_factor must be between 0.0 and 1.0",
                config_key="jitter_factor",
                value=self.jitter_factor,
                expected="0.0 <= value <= 1.0",
            )


# =============================================================================
# Retry Executor
# =============================================================================


def _sleep(delay: float) -> bool:
    time.sleep(delay)
    return False


class RetryExecutor:
    """Executes a callable with bounded retries.

    Args:
        config: Retry configuration.
        delay_calculator: Custom delay calculator (defaults from ``config.strategy``).
        hooks: Retry event hooks.
        wait: Called with each backoff delay. Returning True abandons the
            remaining attempts, which lets a caller tie backoff to a stop event
            (``threading.Event.wait`` has exactly this signature).

    Example:
        >>> stop = threading.Event()
        >>> executor = RetryExecutor(config, wait=stop.wait)
        >>> executor.execute(send_batch)
    """

    def __init__(
        self,
        config: RetryConfig,
        delay_calculator: DelayCalculator | None = None,
        hooks: Sequence[RetryHook] | None = None,
        wait: Callable[[float], bool | None] | None = None,
    ) -> None:
        self.config = config
        self._delay_calculator = delay_calculator or _get_delay_calculator(
            config.strategy,
            config.exponential_base,
            config.linear_increment,
        )
        self._hook: RetryHook | None = CompositeRetryHook(list(hooks)) if hooks else None
        self._wait = wait or _sleep

    def calculate_delay(self, attempt: int) -> float:
        """Delay after failed ``attempt``, including jitter, capped at max delay."""
        delay = self._delay_calculator.calculate_delay(
            attempt,
            self.config.base_delay_seconds,
            self.config.max_delay_seconds,
        )
        if self.config.jitter and delay > 0:
            delay += delay * self.config.jitter_factor * random.random()
        return min(delay, self.config.max_delay_seconds)

    def _create_context(self, func: Callable[..., Any]) -> dict[str, Any]:
        return {
            "function": getattr(func, "__name__", repr(func)),
            "max_attempts": self.config.max_attempts,
        }

    def execute(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute ``func`` with retry logic.

        Returns:
            The value returned by the first successful attempt.

        Raises:
            RetryExhaustedError: When every attempt failed, or the wait
                callable asked to stop before the next attempt.
            Exception: Any exception not listed in ``config.exceptions``
                propagates unchanged from the attempt that raised it.
        """
        exceptions: list[Exception] = []
        context = self._create_context(func)

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
            except self.config.exceptions as exc:
                exceptions.append(exc)

                if attempt >= self.config.max_attempts:
                    if self._hook:
                        self._hook.on_failure(attempt, tuple(exceptions), context)
                    raise RetryExhaustedError(
                        f"Retry exhausted after {attempt} attempts",
                        attempts=attempt,
                        last_exception=exc,
                        exceptions=tuple(exceptions),
                    ) from exc

                delay = self.calculate_delay(attempt)
                if self._hook:
                    self._hook.on_retry(attempt, exc, delay, context)

                if self._wait(delay):
                    if self._hook:
                        self._hook.on_failure(attempt, tuple(exceptions), context)
                    raise RetryExhaustedError(
                        f"Retry abandoned after {attempt} attempts",
                        attempts=attempt,
                        last_exception=exc,
                        exceptions=tuple(exceptions),
                        details={"aborted": True},
                    ) from exc
            else:
                if self._hook:
                    self._hook.on_success(attempt, result, context)
                return result

        # Unreachable: the loop either returns or raises
        raise RetryExhaustedError(
            "Retry exhausted",
            attempts=self.config.max_attempts,
            exceptions=tuple(exceptions),
        )
