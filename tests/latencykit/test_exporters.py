"""Tests for latencykit.exporters module."""

from __future__ import annotations

import http.server
import socket
import threading
import urllib.error
import urllib.request

import pytest

from latencykit.config import LatencyConfig
from latencykit.diagnostics import DiagnosticCounter
from latencykit.exceptions import ExportError, TransportError
from latencykit.exporters import (
    HttpPushTransport,
    PullExporter,
    PushExporter,
    ScrapeServer,
    Transport,
)
from latencykit.exposition import JSONExpositionFormatter, parse_text_exposition
from latencykit.registry import MetricsRegistry
from latencykit.spans import TimerSample
from latencykit.testing import FailingTransport, FlakyTransport, InMemoryTransport


MS = 1_000_000

NO_DELAY_CONFIG = LatencyConfig(
    retry_attempts=3,
    retry_base_delay_seconds=0.0,
    retry_max_delay_seconds=0.0,
)


@pytest.fixture
def push_registry() -> MetricsRegistry:
    """Registry with zero retry delays and one recorded sample."""
    registry = MetricsRegistry(NO_DELAY_CONFIG)
    registry.record(TimerSample("http_request", {"route": "/users"}, 12 * MS))
    return registry


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# =============================================================================
# Pull
# =============================================================================


class TestPullExporter:
    """Tests for PullExporter."""

    def test_render_uses_config_format(self, push_registry):
        """Test render() produces the configured text exposition."""
        exporter = PullExporter(push_registry)
        samples = parse_text_exposition(exporter.render())
        count = next(s for s in samples if s.name == "http_request_count")
        assert count.value == 1
        assert exporter.content_type.startswith("text/plain")

    def test_custom_formatter(self, push_registry):
        """Test an explicit formatter overrides the config."""
        exporter = PullExporter(push_registry, JSONExpositionFormatter())
        assert exporter.content_type == "application/json"
        assert exporter.render().startswith("{")

    def test_render_sees_new_samples(self, push_registry):
        """Test each render reflects the latest state."""
        exporter = PullExporter(push_registry)
        push_registry.record(TimerSample("http_request", {"route": "/users"}, 5 * MS))
        samples = parse_text_exposition(exporter.render())
        count = next(s for s in samples if s.name == "http_request_count")
        assert count.value == 2


class TestScrapeServer:
    """Tests for ScrapeServer."""

    def test_serves_metrics(self, push_registry):
        """Test GET on the metrics path returns the exposition."""
        with ScrapeServer(PullExporter(push_registry), port=0) as server:
            assert server.is_running
            with urllib.request.urlopen(server.url, timeout=5) as response:
                body = response.read().decode("utf-8")
                content_type = response.headers["Content-Type"]
        assert not server.is_running
        assert "http_request_count" in body
        assert content_type.startswith("text/plain")

    def test_unknown_path_is_404(self, push_registry):
        """Test other paths return 404."""
        with ScrapeServer(PullExporter(push_registry), port=0) as server:
            host, port = server.address
            with pytest.raises(urllib.error.HTTPError) as exc_info:
                urllib.request.urlopen(f"http://{host}:{port}/other", timeout=5)
            exc_info.value.close()
        assert exc_info.value.code == 404

    def test_bound_port_reported(self, push_registry):
        """Test port 0 resolves to the ephemeral port."""
        server = ScrapeServer(PullExporter(push_registry), port=0)
        server.start()
        try:
            assert server.address[1] != 0
        finally:
            server.stop()

    def test_start_twice_is_noop(self, push_registry):
        """Test start() is idempotent."""
        server = ScrapeServer(PullExporter(push_registry), port=0)
        server.start()
        try:
            address = server.address
            server.start()
            assert server.address == address
        finally:
            server.stop()

    def test_bind_failure_raises(self, push_registry):
        """Test an unusable address raises ExportError."""
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen(1)
            port = sock.getsockname()[1]
            server = ScrapeServer(PullExporter(push_registry), port=port)
            with pytest.raises(ExportError):
                server.start()


# =============================================================================
# Push
# =============================================================================


class _BlockingTransport:
    """Transport whose send blocks until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def send(self, payload: str, content_type: str) -> None:
        self.calls += 1
        self.entered.set()
        self.release.wait(timeout=5)


class TestPushExporter:
    """Tests for PushExporter."""

    def test_run_once_delivers(self, push_registry):
        """Test a successful cycle sends one payload and counts it."""
        transport = InMemoryTransport()
        exporter = PushExporter(push_registry, transport)

        assert exporter.run_once() is True
        assert transport.send_count == 1
        payload, content_type = transport.payloads[0]
        assert "http_request_count" in payload
        assert content_type.startswith("text/plain")
        assert push_registry.diagnostics.get(DiagnosticCounter.SUCCESSFUL_EXPORTS) == 1

    def test_failed_cycle_is_dropped_then_next_succeeds(self, push_registry):
        """Test three failed attempts drop the batch and the next cycle starts fresh."""
        transport = FlakyTransport(failures=3)
        exporter = PushExporter(push_registry, transport)
        diagnostics = push_registry.diagnostics

        assert exporter.run_once() is False
        assert transport.attempts == 3
        assert diagnostics.get(DiagnosticCounter.DROPPED_EXPORTS) == 1
        assert diagnostics.get(DiagnosticCounter.EXPORT_RETRIES) == 2
        assert isinstance(diagnostics.recent_errors[-1], ExportError)

        assert exporter.run_once() is True
        assert transport.send_count == 1
        assert diagnostics.get(DiagnosticCounter.DROPPED_EXPORTS) == 1
        assert diagnostics.get(DiagnosticCounter.SUCCESSFUL_EXPORTS) == 1
        assert exporter.cycles == 2

    def test_transient_failure_is_retried(self, push_registry):
        """Test a cycle succeeds when a retry gets through."""
        transport = FlakyTransport(failures=1)
        exporter = PushExporter(push_registry, transport)
        assert exporter.run_once() is True
        assert transport.attempts == 2
        assert push_registry.diagnostics.get(DiagnosticCounter.DROPPED_EXPORTS) == 0

    def test_non_transport_errors_are_dropped(self, push_registry):
        """Test arbitrary transport exceptions never escape run_once."""
        transport = FailingTransport(error_factory=lambda attempt: RuntimeError("bug"))
        exporter = PushExporter(push_registry, transport)
        assert exporter.run_once() is False
        assert push_registry.diagnostics.get(DiagnosticCounter.DROPPED_EXPORTS) == 1

    def test_background_thread_pushes(self, push_registry):
        """Test the exporter thread pushes on its interval."""
        transport = InMemoryTransport()
        config = NO_DELAY_CONFIG.with_export(interval_seconds=0.05)
        with PushExporter(push_registry, transport, config) as exporter:
            assert exporter.is_running
            assert transport.delivered.wait(timeout=5)
        assert not exporter.is_running
        assert transport.send_count >= 1

    def test_start_is_idempotent(self, push_registry):
        """Test starting twice keeps a single thread."""
        exporter = PushExporter(
            push_registry,
            InMemoryTransport(),
            NO_DELAY_CONFIG.with_export(interval_seconds=60.0),
        )
        exporter.start()
        try:
            thread = exporter._thread
            exporter.start()
            assert exporter._thread is thread
        finally:
            exporter.stop()

    def test_stop_with_flush(self, push_registry):
        """Test stop(flush=True) runs one final cycle."""
        transport = InMemoryTransport()
        exporter = PushExporter(
            push_registry,
            transport,
            NO_DELAY_CONFIG.with_export(interval_seconds=60.0),
        )
        exporter.start()
        exporter.stop(flush=True)
        assert transport.send_count == 1

    def test_flush_failure_is_not_retried(self, push_registry):
        """Test a failing final flush is dropped after a single attempt."""
        transport = FailingTransport()
        exporter = PushExporter(push_registry, transport)
        exporter.stop(flush=True)
        assert transport.attempts == 1
        assert push_registry.diagnostics.get(DiagnosticCounter.DROPPED_EXPORTS) == 1

    def test_flush_skipped_while_cycle_in_flight(self, push_registry, caplog):
        """Test stop(flush=True) does not start a second cycle beside a slow one."""
        transport = _BlockingTransport()
        exporter = PushExporter(
            push_registry,
            transport,
            NO_DELAY_CONFIG.with_export(interval_seconds=0.01),
        )
        exporter.start()
        try:
            assert transport.entered.wait(timeout=5)
            exporter.stop(timeout=0.05, flush=True)
            assert transport.calls == 1
            assert "Skipping final export" in caplog.text
        finally:
            transport.release.set()
        assert exporter.cycles == 1

    def test_concurrent_run_once_is_serialized(self, push_registry):
        """Test a manual cycle waits for the one in flight."""
        transport = _BlockingTransport()
        exporter = PushExporter(push_registry, transport)
        first = threading.Thread(target=exporter.run_once)
        first.start()
        assert transport.entered.wait(timeout=5)

        second = threading.Thread(target=exporter.run_once)
        second.start()
        second.join(timeout=0.05)
        assert second.is_alive()
        assert transport.calls == 1

        transport.release.set()
        first.join(timeout=5)
        second.join(timeout=5)
        assert transport.calls == 2
        assert exporter.cycles == 2



# =============================================================================
# HTTP Transport
# =============================================================================


class _Receiver:
    """Minimal HTTP endpoint recording POST bodies."""

    def __init__(self, status: int = 200) -> None:
        received = self.received = []

        class Handler(http.server.BaseHTTPRequestHandler):
            def log_message(self, format, *args):
                pass

            def do_POST(self):
                length = int(self.headers["Content-Length"])
                received.append((self.rfile.read(length).decode(), self.headers["Content-Type"]))
                self.send_response(status)
                self.send_header("Content-Length", "0")
                self.end_headers()

        self.server = http.server.HTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self.server.server_address[:2]
        return f"http://{host}:{port}/ingest"

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *args):
        self.server.shutdown()
        self.server.server_close()


class TestHttpPushTransport:
    """Tests for HttpPushTransport."""

    def test_is_transport(self):
        """Test the class satisfies the Transport protocol."""
        assert isinstance(HttpPushTransport("http://localhost"), Transport)
        assert isinstance(InMemoryTransport(), Transport)

    def test_posts_payload(self):
        """Test payload and content type reach the endpoint."""
        with _Receiver() as receiver:
            transport = HttpPushTransport(receiver.url, headers={"X-Tenant": "acme"})
            transport.send("payload", "text/plain")
        assert receiver.received == [("payload", "text/plain")]

    def test_error_status_raises(self):
        """Test an error status becomes a TransportError with the code."""
        with _Receiver(status=503) as receiver:
            with pytest.raises(TransportError) as exc_info:
                HttpPushTransport(receiver.url).send("payload", "text/plain")
        assert exc_info.value.status_code == 503

    def test_unreachable_endpoint_raises(self):
        """Test a connection failure becomes a TransportError."""
        url = f"http://127.0.0.1:{_free_port()}/ingest"
        with pytest.raises(TransportError):
            HttpPushTransport(url, timeout_seconds=2.0).send("payload", "text/plain")

    def test_from_config(self):
        """Test building from config, with and without an endpoint."""
        config = LatencyConfig(push_endpoint="http://collector/ingest", push_timeout_seconds=3.0)
        transport = HttpPushTransport.from_config(config)
        assert transport.endpoint == "http://collector/ingest"
        assert transport.timeout_seconds == 3.0

        with pytest.raises(ExportError):
            HttpPushTransport.from_config(LatencyConfig())
