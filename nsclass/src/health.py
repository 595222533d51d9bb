from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/leadz`` and ``/metrics``.

    Readiness requires both synced watches and, when leader election is on,
    holding the lease; standby replicas stay alive but unready.
    """

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _send(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readyz(self) -> None:
        synced = self.ready_event.is_set()
        leader = self._is_leader()
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        self._send(200 if synced and leader else 503, body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._send(200, b"ok")
        elif path == "/readyz":
            self._readyz()
        elif path == "/leadz":
            if self._is_leader():
                self._send(200, b"ok")
            else:
                self._send(503, b"not leader")
        elif path == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._send(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the probe/metrics server on a daemon thread and return it."""
    handler = type(
        "ProbeHandler",
        (_ProbeHandler,),
        {"ready_event": ready, "leader_event": leader},
    )
    server = ThreadingHTTPServer((host, port), handler)
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
