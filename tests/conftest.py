"""
Pytest configuration for http_multicall tests.

This file contains shared fixtures and configuration
for all tests in the project.
"""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterator

import pytest

from http_multicall.messages import RequestMessage
from http_multicall.transfer.mock import MockResponse, MockTransferEngine


class EchoHandler(BaseHTTPRequestHandler):
    """Request handler serving the routes used by the socket engine tests."""

    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _send(self, status, body=b"", headers=None, reason=None):
        self.send_response(status, reason)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _echo(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        payload = {
            "method": self.command,
            "path": self.path,
            "headers": {name.lower(): value for name, value in self.headers.items()},
            "body": body.decode("utf-8", errors="replace"),
        }
        self._send(
            200,
            json.dumps(payload).encode("utf-8"),
            {"Content-Type": "application/json; charset=utf-8"},
        )

    def do_GET(self):
        if self.path.startswith("/missing"):
            self._send(404, b"", reason="")
        elif self.path.startswith("/cookie"):
            self._send(
                200,
                b"ok",
                {"Set-Cookie": "session=abc123; Path=/; HttpOnly", "Content-Type": "text/plain"},
            )
        elif self.path.startswith("/slow"):
            time.sleep(2.0)
            self._send(200, b"late")
        elif self.path.startswith("/large"):
            self._send(200, b"x" * 200000, {"Content-Type": "application/octet-stream"})
        elif self.path.startswith("/hangup"):
            self.close_connection = True
        else:
            self._echo()

    do_POST = _echo
    do_PUT = _echo
    do_DELETE = _echo

    def do_HEAD(self):
        self._send(200, b"", {"X-Head": "yes"})


@pytest.fixture
def http_server() -> Iterator[str]:
    """Run a local HTTP server in a thread and yield its base URL."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), EchoHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture
def unused_port() -> int:
    """Return a port nothing listens on."""
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def json_response() -> MockResponse:
    """Scripted JSON response."""
    return MockResponse(
        status_code=200,
        reason="OK",
        headers=[("Content-Type", "application/json")],
        body=b'{"name": "value", "items": [1, 2, 3]}',
        chunk_size=8,
    )


@pytest.fixture
def mock_engine(json_response: MockResponse) -> MockTransferEngine:
    """Mock engine answering every URL with the JSON response."""
    return MockTransferEngine(default=json_response, seed=42)


@pytest.fixture
def echo_engine() -> MockTransferEngine:
    """Mock engine whose responses echo the requested URL in the body."""
    def respond(request):
        return MockResponse(
            headers=[("Content-Type", "text/plain"), ("X-Url", request.url)],
            body=request.url.encode("utf-8"),
            chunk_size=5,
        )

    return MockTransferEngine(default=respond, seed=7)


@pytest.fixture
def sample_request() -> RequestMessage:
    """GET request with a query parameter."""
    return RequestMessage.create("GET", "http://api.example.com/items").set_get_param("page", 2)
