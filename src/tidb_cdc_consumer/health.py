"""HTTP endpoint exposing Prometheus metrics alongside a liveness check.

``/health`` answers with ``{"status", "timestamp", "uptime"}``; every other
path is handed to ``prometheus_client``'s exposition app.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from wsgiref.simple_server import WSGIRequestHandler, make_server

from prometheus_client import REGISTRY, CollectorRegistry, make_wsgi_app
from prometheus_client.exposition import ThreadingWSGIServer

from .events import format_timestamp

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"

WsgiApp = Callable[[Dict[str, Any], Callable[..., Any]], Iterable[bytes]]


def build_http_app(
    registry: Optional[CollectorRegistry] = None,
    *,
    clock: Callable[[], float] = time.monotonic,
    wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> WsgiApp:
    """Return a WSGI app serving ``/health`` and the metrics exposition."""
    metrics_app = make_wsgi_app(registry if registry is not None else REGISTRY)
    started = clock()

    def app(environ: Dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("PATH_INFO") != HEALTH_PATH:
            return metrics_app(environ, start_response)
        body = json.dumps(
            {
                "status": "healthy",
                "timestamp": format_timestamp(wall_clock()),
                "uptime": round(clock() - started, 3),
            }
        ).encode("utf-8")
        start_response(
            "200 OK",
            [("Content-Type", "application/json"), ("Content-Length", str(len(body)))],
        )
        return [body]

    return app


class _LoggingHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


def start_http_server(
    port: int,
    addr: str = "0.0.0.0",
    *,
    app: Optional[WsgiApp] = None,
) -> ThreadingWSGIServer:
    """Serve ``app`` (metrics + health by default) from a daemon thread."""
    server = make_server(
        addr,
        port,
        app or build_http_app(),
        server_class=ThreadingWSGIServer,
        handler_class=_LoggingHandler,
    )
    thread = threading.Thread(
        target=server.serve_forever, name="cdc-http-server", daemon=True
    )
    thread.start()
    return server


__all__ = ["HEALTH_PATH", "build_http_app", "start_http_server"]
