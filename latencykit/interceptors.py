"""Explicitly ordered instrumentation layers.

An ``InterceptorChain`` wraps a handler in a fixed sequence of layers, each
of which may open a span around the next. Layers are sorted by their
``order`` (lower runs outermost); two layers with the same order are a
configuration error, so nesting never depends on registration order.

Contract per layer: ``invoke(invocation, call_next)`` calls ``call_next`` at
most once and never alters a failure travelling through it. ``SpanInterceptor``
implements that contract once: it closes its span ``ok``, ``error`` or
``cancelled`` and re-raises the very same exception object. Problems in the
instrumentation itself while a business failure is propagating are logged,
never substituted for the business failure.

Example:
    >>> methods = MethodInterceptor()
    >>> methods.register("get_user", "user_lookup")
    >>> chain = InterceptorChain(
    ...     tracer,
    ...     [TransportInterceptor("http"), FrameworkInterceptor(), methods],
    ... )
    >>> chain.execute("get_user", get_user, 42, attributes={"route": "/users/{id}"})
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from latencykit.exceptions import ConfigurationError, SpanUsageError
from latencykit.logging import get_logger
from latencykit.spans import SpanContext, SpanHandle, SpanOutcome, active_context


if TYPE_CHECKING:
    from latencykit.spans import Tracer


logger = get_logger(__name__)

CallNext = Callable[["Invocation"], Any]


# =============================================================================
# Invocation
# =============================================================================


@dataclass(slots=True)
class Invocation:
    """One call travelling through the chain.

    Attributes:
        operation: Logical operation name (used by MethodInterceptor lookup).
        args: Positional arguments for the handler.
        kwargs: Keyword arguments for the handler.
        context: SpanContext of the unit of work.
        attributes: Free-form data supplied by the caller or set by layers
            (``protocol``, ``route``, ``status_code``, ...).
    """

    operation: str
    context: SpanContext
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Protocols
# =============================================================================


@runtime_checkable
class Interceptor(Protocol):
    """Protocol for chain layers."""

    name: str
    order: int

    @abstractmethod
    def invoke(self, invocation: Invocation, call_next: CallNext) -> Any:
        """Run the layer around ``call_next`` (which may be called at most once)."""
        ...


class _CallOnce:
    """Guards ``call_next`` against being invoked twice by one layer."""

    __slots__ = ("_call_next", "_called", "_layer")

    def __init__(self, call_next: CallNext, layer: str) -> None:
        self._call_next = call_next
        self._layer = layer
        self._called = False

    def __call__(self, invocation: Invocation) -> Any:
        if self._called:
            raise SpanUsageError(
                f"Interceptor '{self._layer}' invoked the next layer more than once",
                details={"layer": self._layer, "operation": invocation.operation},
            )
        self._called = True
        return self._call_next(invocation)


# =============================================================================
# Span Interceptor Base
# =============================================================================


class SpanInterceptor:
    """Base layer that times the next layer in a span.

    Subclasses choose the span name and the labels; returning ``None`` from
    ``span_name`` lets the invocation through untimed.
    """

    name: str = "span"
    order: int = 0

    def span_name(self, invocation: Invocation) -> str | None:
        return self.name

    def metric_name(self, invocation: Invocation) -> str | None:
        return None

    def labels_before(self, invocation: Invocation) -> Mapping[str, Any]:
        return {}

    def labels_from_result(self, invocation: Invocation, result: Any) -> Mapping[str, Any]:
        return {}

    def labels_from_error(
        self, invocation: Invocation, error: BaseException
    ) -> Mapping[str, Any]:
        return {}

    def invoke(self, invocation: Invocation, call_next: CallNext) -> Any:
        span_name = self.span_name(invocation)
        if span_name is None:
            return call_next(invocation)

        handle = invocation.context.open(
            span_name,
            self.labels_before(invocation),
            self.metric_name(invocation),
        )
        try:
            result = call_next(invocation)
        except Exception as exc:
            self._close_after_failure(invocation, handle, SpanOutcome.ERROR, exc)
            raise
        except BaseException as exc:
            self._close_after_failure(invocation, handle, SpanOutcome.CANCELLED, exc)
            raise

        handle.annotate(**self.labels_from_result(invocation, result))
        invocation.context.close(handle, SpanOutcome.OK)
        return result

    def _close_after_failure(
        self,
        invocation: Invocation,
        handle: SpanHandle,
        outcome: SpanOutcome,
        error: BaseException,
    ) -> None:
        try:
            if handle.is_open:
                handle.annotate(**self.labels_from_error(invocation, error))
            invocation.context.close(handle, outcome)
        except Exception as instrumentation_error:
            logger.error(
                "Instrumentation failed while a call was failing",
                exc_info=instrumentation_error,
                layer=self.name,
                operation=invocation.operation,
                original_error=type(error).__name__,
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, order={self.order})"


# =============================================================================
# Concrete Layers
# =============================================================================


class TransportInterceptor(SpanInterceptor):
    """Outermost layer: protocol handling (HTTP, gRPC, queue consumer...).

    Labels: ``protocol`` and ``status_code``. The status code is taken from
    the ``status_code`` attribute if a layer or the handler set one, else
    from a ``status_code`` attribute of the result or raised error, else
    ``error_status_code`` for failures.
    """

    def __init__(
        self,
        protocol: str = "http",
        name: str = "transport",
        order: int = 100,
        error_status_code: int | str | None = 500,
    ) -> None:
        self.protocol = protocol
        self.name = name
        self.order = order
        self.error_status_code = error_status_code

    def labels_before(self, invocation: Invocation) -> Mapping[str, Any]:
        return {"protocol": invocation.attributes.get("protocol", self.protocol)}

    def labels_from_result(self, invocation: Invocation, result: Any) -> Mapping[str, Any]:
        status = invocation.attributes.get("status_code", getattr(result, "status_code", None))
        return {"status_code": status}

    def labels_from_error(
        self, invocation: Invocation, error: BaseException
    ) -> Mapping[str, Any]:
        status = invocation.attributes.get(
            "status_code", getattr(error, "status_code", self.error_status_code)
        )
        return {"status_code": status}


class FrameworkInterceptor(SpanInterceptor):
    """Middle layer: routing and framework dispatch. Label: ``route``."""

    def __init__(self, name: str = "framework", order: int = 200) -> None:
        self.name = name
        self.order = order

    def labels_before(self, invocation: Invocation) -> Mapping[str, Any]:
        return {"route": invocation.attributes.get("route", invocation.operation)}


class MethodInterceptor(SpanInterceptor):
    """Innermost layer: times explicitly registered business operations.

    Only operations passed to ``register`` are timed, each under the metric
    name it was registered with; everything else passes through untimed.

    Example:
        >>> methods = MethodInterceptor()
        >>> methods.register("create_order", "order_creation")
        >>> methods.is_instrumented("create_order")
        True
    """

    def __init__(
        self,
        operations: Mapping[str, str] | None = None,
        name: str = "method",
        order: int = 300,
    ) -> None:
        self.name = name
        self.order = order
        self._operations: dict[str, str] = dict(operations or {})

    def register(self, operation: str, metric_name: str | None = None) -> None:
        """Instrument ``operation`` under ``metric_name`` (defaults to the operation)."""
        self._operations[operation] = metric_name or operation

    def unregister(self, operation: str) -> bool:
        return self._operations.pop(operation, None) is not None

    def is_instrumented(self, operation: str) -> bool:
        return operation in self._operations

    @property
    def operations(self) -> dict[str, str]:
        return dict(self._operations)

    def span_name(self, invocation: Invocation) -> str | None:
        return self._operations.get(invocation.operation)

    def labels_before(self, invocation: Invocation) -> Mapping[str, Any]:
        return {"method": invocation.operation}

    def labels_from_error(
        self, invocation: Invocation, error: BaseException
    ) -> Mapping[str, Any]:
        return {"error": type(error).__name__}


# =============================================================================
# Chain
# =============================================================================


class InterceptorChain:
    """Runs handlers inside an explicitly ordered set of layers.

    Args:
        tracer: Creates the unit of work when none is active.
        interceptors: Layers; sorted by ``order``, outermost first.

    Raises:
        ConfigurationError: If two layers share an order.
    """

    def __init__(self, tracer: Tracer, interceptors: Iterable[Interceptor] = ()) -> None:
        self._tracer = tracer
        self._interceptors: list[Interceptor] = []
        for interceptor in interceptors:
            self._check_order(interceptor)
            self._interceptors.append(interceptor)
        self._interceptors.sort(key=lambda i: i.order)

    def _check_order(self, interceptor: Interceptor) -> None:
        for existing in self._interceptors:
            if existing.order == interceptor.order:
                raise ConfigurationError(
                    f"Interceptors '{existing.name}' and '{interceptor.name}' "
                    f"share order {interceptor.order}",
                    config_key="order",
                    details={"order": interceptor.order},
                )

    @property
    def interceptors(self) -> tuple[Interceptor, ...]:
        """Layers, outermost first."""
        return tuple(self._interceptors)

    def add(self, interceptor: Interceptor) -> None:
        """Insert a layer at the position given by its order."""
        self._check_order(interceptor)
        self._interceptors.append(interceptor)
        self._interceptors.sort(key=lambda i: i.order)

    def execute(
        self,
        operation: str,
        handler: Callable[..., Any],
        *args: Any,
        attributes: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> Any:
        """Call ``handler(*args, **kwargs)`` inside every layer.

        Joins the active unit of work, or creates one for the duration of the
        call if none is active.
        """
        context = active_context()
        if context is not None:
            return self._run(context, operation, handler, args, kwargs, attributes)
        with self._tracer.unit_of_work() as context:
            return self._run(context, operation, handler, args, kwargs, attributes)

    def wrap(self, operation: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        """Return a callable that executes ``handler`` through the chain."""

        def wrapped(*args: Any, **kwargs: Any) -> Any:
            return self.execute(operation, handler, *args, **kwargs)

        wrapped.__name__ = getattr(handler, "__name__", operation)
        wrapped.__doc__ = handler.__doc__
        return wrapped

    def _run(
        self,
        context: SpanContext,
        operation: str,
        handler: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        attributes: Mapping[str, Any] | None,
    ) -> Any:
        invocation = Invocation(
            operation=operation,
            context=context,
            args=args,
            kwargs=kwargs,
            attributes=dict(attributes or {}),
        )

        def terminal(inv: Invocation) -> Any:
            return handler(*inv.args, **inv.kwargs)

        call: CallNext = terminal
        for interceptor in reversed(self._interceptors):
            call = self._bind(interceptor, call)
        return call(invocation)

    @staticmethod
    def _bind(interceptor: Interceptor, call_next: CallNext) -> CallNext:
        def call(invocation: Invocation) -> Any:
            return interceptor.invoke(invocation, _CallOnce(call_next, interceptor.name))

        return call
