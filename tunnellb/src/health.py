from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness and Prometheus metrics."""

    synced: Callable[[], bool]
    ready_event: threading.Event

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            synced = self.synced()
            workers = self.ready_event.is_set()
            body = f"synced={str(synced).lower()} workers={str(workers).lower()}".encode()
            self._respond(200 if synced and workers else 503, body)
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("tunnellb.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, synced: Callable[[], bool]
) -> type[_HealthHandler]:
    """Return a handler class bound to the controller's readiness signals."""

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    # Assigned after class creation so the callable is not bound as a method.
    _BoundHealthHandler.synced = staticmethod(synced)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, synced: Callable[[], bool], port: int
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, synced)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
