import json
import urllib.request
from datetime import datetime, timezone
from wsgiref.util import setup_testing_defaults

import pytest
from prometheus_client import Counter

from tidb_cdc_consumer.health import build_http_app, start_http_server


def _call(app, path):
    environ = {"PATH_INFO": path}
    setup_testing_defaults(environ)
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app(environ, start_response))
    return captured["status"], captured["headers"], body


@pytest.mark.unit
def test_health_reports_status_and_uptime(clock, registry):
    app = build_http_app(
        registry,
        clock=clock,
        wall_clock=lambda: datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc),
    )
    clock.advance(12.5)

    status, headers, body = _call(app, "/health")

    assert status == "200 OK"
    assert headers["Content-Type"] == "application/json"
    assert json.loads(body) == {
        "status": "healthy",
        "timestamp": "2024-05-01T08:00:00Z",
        "uptime": 12.5,
    }


@pytest.mark.unit
def test_other_paths_serve_metrics(clock, registry):
    Counter("cdc_test_hits", "hits", registry=registry).inc()
    app = build_http_app(registry, clock=clock)

    status, _, body = _call(app, "/metrics")

    assert status.startswith("200")
    assert b"cdc_test_hits_total 1.0" in body


@pytest.mark.unit
def test_server_answers_health_over_http(registry):
    server = start_http_server(0, "127.0.0.1", app=build_http_app(registry))
    try:
        url = f"http://127.0.0.1:{server.server_port}/health"
        with urllib.request.urlopen(url, timeout=5) as response:
            payload = json.loads(response.read())
    finally:
        server.shutdown()
        server.server_close()

    assert payload["status"] == "healthy"
    assert payload["uptime"] >= 0
