"""Pull and push exporters for registry snapshots.

``PullExporter`` renders the latest snapshot on demand, e.g. to answer a
scrape; ``ScrapeServer`` serves it over HTTP. ``PushExporter`` transmits a
snapshot every ``export_interval_seconds`` from its own daemon thread.

A push cycle that keeps failing is retried with bounded backoff and then
dropped: the ``dropped_exports`` diagnostic counter goes up by one, the
failure is logged, and the next cycle starts from scratch. Nothing an
exporter does can raise into, block, or slow down the measured code; the
only shared state is the registry snapshot.

Example:
    >>> exporter = PushExporter(
    ...     registry,
    ...     HttpPushTransport("http://collector:8080/ingest"),
    ...     LatencyConfig(export_interval_seconds=10.0),
    ... )
    >>> exporter.start()
    >>> # ... application runs ...
    >>> exporter.stop(flush=True)
"""

from __future__ import annotations

import http.server
import socketserver
import threading
import urllib.error
import urllib.request
from abc import abstractmethod
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol, Self, runtime_checkable

from latencykit.diagnostics import DiagnosticCounter, Diagnostics
from latencykit.exceptions import (
    ExportError,
    RetryExhaustedError,
    TransportError,
    wrap_exception,
)
from latencykit.exposition import ExpositionFormatter, create_formatter
from latencykit.logging import LogContext, get_logger
from latencykit.retry import LoggingRetryHook, RetryExecutor


if TYPE_CHECKING:
    from latencykit.config import LatencyConfig
    from latencykit.registry import MetricsRegistry


logger = get_logger(__name__)


# =============================================================================
# Transports
# =============================================================================


@runtime_checkable
class Transport(Protocol):
    """Delivers one serialized snapshot to an external system."""

    @abstractmethod
    def send(self, payload: str, content_type: str) -> None:
        """Send ``payload``.

        Raises:
            TransportError: If delivery failed.
        """
        ...


class HttpPushTransport:
    """POSTs payloads to an HTTP endpoint using ``urllib.request``.

    Args:
        endpoint: Target URL.
        timeout_seconds: Request timeout.
        headers: Extra request headers (authentication, tenant...).
    """

    def __init__(
        self,
        endpoint: str,
        timeout_seconds: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})

    @classmethod
    def from_config(cls, config: LatencyConfig) -> HttpPushTransport:
        """Build from ``config.push_endpoint``.

        Raises:
            ExportError: If no endpoint is configured.
        """
        if not config.push_endpoint:
            raise ExportError("push_endpoint is not configured", exporter="http")
        return cls(config.push_endpoint, timeout_seconds=config.push_timeout_seconds)

    def send(self, payload: str, content_type: str) -> None:
        request = urllib.request.Request(
            self.endpoint,
            data=payload.encode("utf-8"),
            method="POST",
            headers={**self.headers, "Content-Type": content_type},
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                if response.status not in (200, 202, 204):
                    raise TransportError(
                        f"Endpoint returned status {response.status}",
                        endpoint=self.endpoint,
                        status_code=response.status,
                    )
        except urllib.error.HTTPError as e:
            raise TransportError(
                f"HTTP error: {e.reason}",
                endpoint=self.endpoint,
                status_code=e.code,
                cause=e,
            ) from e
        except urllib.error.URLError as e:
            raise TransportError(
                f"URL error: {e.reason}",
                endpoint=self.endpoint,
                cause=e,
            ) from e
        except OSError as e:
            raise wrap_exception(e, TransportError, endpoint=self.endpoint) from e


# =============================================================================
# Pull
# =============================================================================


class PullExporter:
    """Renders the latest registry snapshot on demand.

    Safe to call from any thread while ingestion continues.
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        formatter: ExpositionFormatter | None = None,
    ) -> None:
        self._registry = registry
        self._formatter = formatter or create_formatter(registry.config)

    @property
    def content_type(self) -> str:
        return self._formatter.content_type

    def render(self) -> str:
        return self._formatter.format(self._registry.snapshot_all())


class _ReusableTCPServer(socketserver.TCPServer):
    allow_reuse_address = True


class ScrapeServer:
    """HTTP endpoint serving ``PullExporter.render()``.

    Runs ``serve_forever`` on a daemon thread. Port 0 binds an ephemeral
    port; ``address`` reports the bound one.

    Example:
        >>> with ScrapeServer(PullExporter(registry), port=9464) as server:
        ...     run_application()
    """

    def __init__(
        self,
        exporter: PullExporter,
        host: str = "127.0.0.1",
        port: int = 9464,
        path: str = "/metrics",
    ) -> None:
        self._exporter = exporter
        self._host = host
        self._port = port
        self._path = path
        self._server: socketserver.TCPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def _create_handler(self) -> type[http.server.BaseHTTPRequestHandler]:
        exporter = self._exporter
        path = self._path

        class MetricsHandler(http.server.BaseHTTPRequestHandler):
            def log_message(self, format: str, *args: Any) -> None:
                pass

            def do_GET(self) -> None:
                if self.path.split("?", 1)[0].rstrip("/") == path.rstrip("/"):
                    self._serve_metrics()
                else:
                    self.send_error(404, "Not Found")

            def _serve_metrics(self) -> None:
                try:
                    body = exporter.render().encode("utf-8")
                except Exception as exc:
                    logger.error("Failed to render exposition", exc_info=exc)
                    self.send_error(500, "Internal Server Error")
                    return
                self.send_response(200)
                self.send_header("Content-Type", exporter.content_type)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

        return MetricsHandler

    def start(self) -> None:
        """Start serving in the background.

        Raises:
            ExportError: If the socket cannot be bound.
        """
        with self._lock:
            if self._server is not None:
                return
            try:
                self._server = _ReusableTCPServer((self._host, self._port), self._create_handler())
            except OSError as e:
                raise ExportError(
                    f"Failed to start scrape server: {e}",
                    exporter="scrape_server",
                    details={"host": self._host, "port": self._port},
                    cause=e,
                ) from e
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                daemon=True,
                name="latencykit-scrape-server",
            )
            self._thread.start()
            logger.info("Scrape server started", host=self._host, port=self.address[1])

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self._server is None:
                return
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            if self._thread:
                self._thread.join(timeout=timeout)
                self._thread = None
            logger.info("Scrape server stopped")

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def address(self) -> tuple[str, int]:
        if self._server is not None:
            host, port = self._server.server_address[:2]
            return (str(host), int(port))
        return (self._host, self._port)

    @property
    def url(self) -> str:
        host, port = self.address
        return f"http://{host}:{port}{self._path}"

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


# =============================================================================
# Push
# =============================================================================


class _DiagnosticsRetryHook:
    """Counts export retries."""

    def __init__(self, diagnostics: Diagnostics) -> None:
        self._diagnostics = diagnostics

    def on_retry(
        self,
        attempt: int,
        exception: Exception,
        delay: float,
        context: dict[str, Any],
    ) -> None:
        self._diagnostics.increment(DiagnosticCounter.EXPORT_RETRIES)

    def on_success(self, attempt: int, result: Any, context: dict[str, Any]) -> None:
        pass

    def on_failure(
        self,
        attempts: int,
        exceptions: tuple[Exception, ...],
        context: dict[str, Any],
    ) -> None:
        pass


class PushExporter:
    """Periodically transmits registry snapshots on a daemon thread.

    Args:
        registry: Source of snapshots; its diagnostics receive the export
            counters.
        transport: Delivers payloads.
        config: Interval and retry policy (defaults to ``registry.config``).
        formatter: Payload format (defaults from ``config``).
    """

    def __init__(
        self,
        registry: MetricsRegistry,
        transport: Transport,
        config: LatencyConfig | None = None,
        formatter: ExpositionFormatter | None = None,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._config = config or registry.config
        self._formatter = formatter or create_formatter(self._config)
        self._diagnostics = registry.diagnostics
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._cycles = 0
        self._executor = RetryExecutor(
            self._config.retry_config(),
            hooks=[LoggingRetryHook(__name__), _DiagnosticsRetryHook(self._diagnostics)],
            wait=self._stop.wait,
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cycles(self) -> int:
        """Number of completed export cycles, successful or dropped."""
        return self._cycles

    def run_once(self) -> bool:
        """Run one export cycle.

        Never raises. Returns True if the batch was delivered, False if it
        was dropped. Cycles never overlap; a call made while another cycle
        is sending waits for it.
        """
        with self._cycle_lock:
            self._cycles += 1
            cycle = self._cycles
            with LogContext(component="push_exporter", cycle=cycle):
                try:
                    payload = self._formatter.format(self._registry.snapshot_all())
                    self._executor.execute(
                        self._transport.send, payload, self._formatter.content_type
                    )
                except RetryExhaustedError as exc:
                    self._drop(exc, attempts=exc.attempts, cycle=cycle)
                    return False
                except Exception as exc:
                    self._drop(exc, attempts=0, cycle=cycle)
                    return False

            self._diagnostics.increment(DiagnosticCounter.SUCCESSFUL_EXPORTS)
            logger.debug("Export cycle delivered", cycle=cycle)
            return True

    def _drop(self, exc: Exception, attempts: int, cycle: int) -> None:
        error = exc
        if not isinstance(error, ExportError):
            error = ExportError(f"Export cycle failed: {exc}", exporter="push", cause=exc)
        self._diagnostics.increment(DiagnosticCounter.DROPPED_EXPORTS, error=error)
        logger.error(
            "Dropping export batch",
            exc_info=exc,
            attempts=attempts,
            cycle=cycle,
        )

    def _run(self) -> None:
        interval = self._config.export_interval_seconds
        while not self._stop.wait(interval):
            self.run_once()

    def start(self) -> None:
        """Start the export thread. Idempotent."""
        with self._lock:
            if self.is_running:
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name="latencykit-push-exporter",
            )
            self._thread.start()
            logger.info(
                "Push exporter started",
                interval_seconds=self._config.export_interval_seconds,
            )

    def stop(self, timeout: float = 5.0, flush: bool = False) -> None:
        """Stop the export thread.

        Args:
            timeout: How long to wait for the thread.
            flush: Run one final cycle after stopping. With the stop event
                already set, a failing final cycle is dropped without retrying.
                Skipped when the export thread is still sending after
                ``timeout``.
        """
        still_sending = False
        with self._lock:
            self._stop.set()
            if self._thread is not None:
                self._thread.join(timeout=timeout)
                still_sending = self._thread.is_alive()
                self._thread = None
        if flush:
            if still_sending:
                logger.warning(
                    "Skipping final export, a cycle is still in flight",
                    timeout_seconds=timeout,
                )
            else:
                self.run_once()
        logger.info("Push exporter stopped", cycles=self._cycles)

    def __enter__(self) -> Self:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()
