from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class HealthHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    ``/readyz`` reports ready once both source watches have completed their
    initial list and, with leader election enabled, this replica leads.
    Standby replicas therefore stay out of rotation but remain live.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None = None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _send(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _healthz(self) -> None:
        self._send(200, b"ok")

    def _readyz(self) -> None:
        synced = self.synced_event.is_set()
        leader = self._is_leader()
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        self._send(200 if synced and leader else 503, body)

    def _leadz(self) -> None:
        if self._is_leader():
            self._send(200, b"ok")
        else:
            self._send(503, b"not leader")

    def _metrics(self) -> None:
        self._send(200, generate_latest(), CONTENT_TYPE_LATEST)

    def do_GET(self) -> None:
        routes = {
            "/healthz": self._healthz,
            "/readyz": self._readyz,
            "/leadz": self._leadz,
            "/metrics": self._metrics,
        }
        route = routes.get(self.path.split("?", 1)[0])
        if route is None:
            self._send(404, b"not found")
            return
        route()

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    synced: threading.Event, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics server on a daemon thread and return it."""
    handler_class = type(
        "BoundHealthHandler",
        (HealthHandler,),
        {"synced_event": synced, "leader_event": leader},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
