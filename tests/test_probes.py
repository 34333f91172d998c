"""Tests for HTTP smoke probes."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from repo_agent.process import allocate_free_port
from repo_agent.schemas import Endpoint
from repo_agent.validation.probes import (
    DEFAULT_PROBE_PATHS,
    probe,
    probe_all,
    probe_plan,
    substitute_path_params,
    wait_for_port,
)


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):  # noqa: N802
        if self.path == "/boom":
            self.send_response(500)
        elif self.path in ("/", "/health"):
            self.send_response(200)
        else:
            self.send_response(404)
        self.end_headers()
        self.wfile.write(b"ok")

    def do_POST(self):  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        self.send_response(201 if body == b"{}" else 400)
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def base_url() -> Iterator[str]:
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


@pytest.mark.unit
class TestPlan:
    def test_substitute_path_params(self):
        assert substitute_path_params("/users/{id}/posts/:postId") == "/users/1/posts/1"
        assert substitute_path_params("/static") == "/static"

    def test_defaults_come_first(self):
        assert probe_plan() == [("GET", path) for path in DEFAULT_PROBE_PATHS]

    def test_declared_endpoints_are_normalised_and_deduplicated(self):
        plan = probe_plan(
            [
                Endpoint(method="get", path="/health"),
                Endpoint(method="post", path="items"),
                Endpoint(method="GET", path="/items/{id}"),
                Endpoint(method="GET", path="/items/:id"),
            ]
        )
        assert plan[len(DEFAULT_PROBE_PATHS):] == [("POST", "/items"), ("GET", "/items/1")]


@pytest.mark.integration
class TestProbe:
    def test_success_and_client_error_are_reachable(self, base_url: str):
        ok = probe(base_url, "GET", "/health")
        missing = probe(base_url, "GET", "/nope")
        assert ok.status == 200 and ok.reachable
        assert missing.status == 404 and missing.reachable

    def test_server_error_is_not_reachable(self, base_url: str):
        result = probe(base_url, "GET", "/boom")
        assert result.status == 500
        assert not result.reachable

    def test_body_methods_send_empty_json_object(self, base_url: str):
        result = probe(base_url, "post", "/items")
        assert result.method == "POST"
        assert result.status == 201

    def test_connection_refused_is_network_error(self):
        port = allocate_free_port()
        result = probe(f"http://127.0.0.1:{port}", "GET", "/", timeout=2)
        assert not result.reachable
        assert result.status is None
        assert result.error.startswith("network error:")

    def test_probe_all_keeps_plan_order(self, base_url: str):
        results = probe_all(base_url, [("GET", "/"), ("GET", "/boom")], timeout=5)
        assert [(r.path, r.reachable) for r in results] == [("/", True), ("/boom", False)]
        assert results[0].to_dict()["status"] == 200

    def test_wait_for_port(self, base_url: str):
        port = int(base_url.rsplit(":", 1)[1])
        assert wait_for_port("127.0.0.1", port, timeout=2)
        assert not wait_for_port("127.0.0.1", allocate_free_port(), timeout=0.2)
