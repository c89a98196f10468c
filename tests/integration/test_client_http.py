"""Integration tests for the client against a local HTTP server."""

import json
import socket
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner
from structlog.testing import capture_logs

from falconnect import cli
from falconnect.client import HttpClient
from falconnect.config import HttpClientConfig
from falconnect.errors import ErrorClass, HttpConnectionError, HttpStatusError
from tests.helpers.clock import FakeClock


def get_server_url(server: ThreadingHTTPServer, path: str) -> str:
    """Get the URL for a path on the test server."""
    host, port = server.server_address[0], server.server_address[1]
    if isinstance(host, bytes):
        host = host.decode("utf-8")
    return f"http://{host}:{port}{path}"


class ScriptedHandler(BaseHTTPRequestHandler):
    """HTTP handler whose behavior is selected by the request path.

    - /flaky: 503 for the first two requests, then 200
    - /throttled: 429 with Retry-After: 1 on the first request, then 200
    - /cached: 200 with Cache-Control: max-age=60
    - /missing: 404 with a JSON error body
    - anything else: 200 echoing the path
    """

    hits: dict[str, int] = {}
    lock = threading.Lock()

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        """Suppress log messages during tests."""

    def do_GET(self) -> None:  # noqa: N802
        """Handle GET requests."""
        with ScriptedHandler.lock:
            count = ScriptedHandler.hits.get(self.path, 0) + 1
            ScriptedHandler.hits[self.path] = count

        if self.path == "/flaky" and count <= 2:
            self._reply(503, b"Service Unavailable", "text/plain")
        elif self.path == "/throttled" and count == 1:
            self._reply(429, b"Too Many Requests", "text/plain", {"Retry-After": "1"})
        elif self.path == "/cached":
            self._reply(
                200, b'{"cached": true}', headers={"Cache-Control": "max-age=60"}
            )
        elif self.path == "/missing":
            self._reply(404, b'{"error": "not found"}')
        else:
            self._reply(200, json.dumps({"path": self.path}).encode())

    def do_POST(self) -> None:  # noqa: N802
        """Echo the request body."""
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        self._reply(201, body)

    def _reply(
        self,
        status: int,
        body: bytes,
        content_type: str = "application/json",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture
def server() -> Generator[ThreadingHTTPServer]:
    """Start a local scripted HTTP server."""
    ScriptedHandler.hits = {}
    server = ThreadingHTTPServer(("127.0.0.1", 0), ScriptedHandler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock that records retry backoff instead of sleeping."""
    return FakeClock()


@pytest.fixture
def client(clock: FakeClock) -> Generator[HttpClient]:
    """Client with default configuration and recorded sleeps."""
    with HttpClient(clock=clock, sleep=clock.sleep) as client:
        yield client


class TestRetries:
    """Retry behavior against real HTTP responses."""

    def test_retries_5xx_until_success(
        self, server: ThreadingHTTPServer, client: HttpClient, clock: FakeClock
    ) -> None:
        """Test 503 responses are retried with growing backoff."""
        response = client.get(get_server_url(server, "/flaky"))

        assert response.status_code == 200
        assert response.text == '{"path": "/flaky"}'
        assert ScriptedHandler.hits["/flaky"] == 3
        assert len(clock.sleeps) == 2
        assert 1.0 <= clock.sleeps[0] < 2.0
        assert 2.0 <= clock.sleeps[1] < 3.0

    def test_honors_retry_after_on_429(
        self, server: ThreadingHTTPServer, client: HttpClient, clock: FakeClock
    ) -> None:
        """Test a 429 waits exactly Retry-After seconds."""
        response = client.get(get_server_url(server, "/throttled"))

        assert response.status_code == 200
        assert clock.sleeps == [1.0]

    def test_client_errors_are_not_retried(
        self, server: ThreadingHTTPServer, client: HttpClient, clock: FakeClock
    ) -> None:
        """Test a 404 fails immediately with the server's message."""
        with pytest.raises(HttpStatusError) as exc_info:
            client.get(get_server_url(server, "/missing"))

        assert exc_info.value.status_code == 404
        assert exc_info.value.extract_error_details()["message"] == "not found"
        assert ScriptedHandler.hits["/missing"] == 1
        assert clock.sleeps == []

    def test_attempts_are_measured(
        self, server: ThreadingHTTPServer, client: HttpClient
    ) -> None:
        """Test each physical attempt is recorded once."""
        client.get(get_server_url(server, "/flaky"))

        stats = client.get_statistics()["performance"]["global"]
        assert stats["total_requests"] == 3
        assert stats["successful_requests"] == 1
        assert stats["failed_requests"] == 2


class TestCaching:
    """Response caching against real HTTP responses."""

    def test_max_age_response_served_from_cache(
        self, server: ThreadingHTTPServer, client: HttpClient
    ) -> None:
        """Test a cacheable response is fetched only once."""
        url = get_server_url(server, "/cached")

        first = client.get(url)
        second = client.get(url)

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.content == first.content
        assert ScriptedHandler.hits["/cached"] == 1

    def test_clear_cache_refetches(
        self, server: ThreadingHTTPServer, client: HttpClient
    ) -> None:
        """Test clearing the cache sends the next request to the server."""
        url = get_server_url(server, "/cached")

        client.get(url)
        client.clear_cache()
        client.get(url)

        assert ScriptedHandler.hits["/cached"] == 2

    def test_post_is_not_cached(
        self, server: ThreadingHTTPServer, client: HttpClient
    ) -> None:
        """Test POST bodies round-trip and bypass the cache."""
        url = get_server_url(server, "/items")

        first = client.post(url, json={"name": "a"})
        second = client.post(url, json={"name": "a"})

        assert first.status_code == 201
        assert first.json() == {"name": "a"}
        assert second.from_cache is False


class TestConnectionFailures:
    """Connection-level failures."""

    def test_connection_refused(self) -> None:
        """Test a refused connection raises HttpConnectionError."""
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        config = HttpClientConfig(max_retry_attempts=0)
        with HttpClient(config) as client, pytest.raises(
            HttpConnectionError
        ) as exc_info:
            client.get(f"http://127.0.0.1:{port}/")

        assert exc_info.value.error_class == ErrorClass.CONNECTION_ERROR


class TestConcurrency:
    """Concurrent use of one client."""

    def test_parallel_requests(self, server: ThreadingHTTPServer) -> None:
        """Test requests from several threads all complete."""
        urls = [get_server_url(server, f"/users/{i}") for i in range(8)]

        with HttpClient() as client, ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(pool.map(client.get, urls))
            stats = client.get_statistics()

        assert [r.json()["path"] for r in responses] == [
            f"/users/{i}" for i in range(8)
        ]
        assert stats["rate_limit"]["global_requests_in_window"] == 8
        by_pattern = stats["performance"]["by_url_pattern"]
        assert by_pattern["http://127.0.0.1/users/{id}"]["total_requests"] == 8


class TestCommandLine:
    """The CLI end to end against the local server."""

    def test_request_command(
        self,
        server: ThreadingHTTPServer,
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
    ) -> None:
        """Test the request command prints a summary per response."""
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(cli, "configure_logging", MagicMock())
        url = get_server_url(server, "/cached")

        with capture_logs():
            result = CliRunner().invoke(cli.main, ["request", url, "--repeat", "2"])

        assert result.exit_code == 0, result.output
        summaries = [
            json.loads(line)
            for line in result.output.splitlines()
            if line.startswith('{"')
        ]
        assert [s["from_cache"] for s in summaries] == [False, True]
        assert ScriptedHandler.hits["/cached"] == 1
