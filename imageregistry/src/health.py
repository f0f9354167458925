from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

Probe = tuple[int, bytes, str]

TEXT = "text/plain; charset=utf-8"


@dataclass
class HealthState:
    """Operator state the probes report on.

    ``leader`` is None when leader election is disabled, in which case this
    replica always counts as leader.  ``worker_alive`` only matters once the
    controller is ready: a sync worker that died after startup is the one
    failure a restart fixes.
    """

    ready: threading.Event
    leader: threading.Event | None = None
    worker_alive: Callable[[], bool] | None = None

    def is_leader(self) -> bool:
        return self.leader is None or self.leader.is_set()

    def healthz(self) -> Probe:
        if self.worker_alive is not None and self.ready.is_set() and not self.worker_alive():
            return 503, b"sync worker stopped", TEXT
        return 200, b"ok", TEXT

    def readyz(self) -> Probe:
        synced = self.ready.is_set()
        leader = self.is_leader()
        body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
        return (200 if synced and leader else 503), body, TEXT

    def leadz(self) -> Probe:
        if self.is_leader():
            return 200, b"ok", TEXT
        return 503, b"not leader", TEXT

    def metrics(self) -> Probe:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def route(self, path: str) -> Probe:
        probe = {
            "/healthz": self.healthz,
            "/readyz": self.readyz,
            "/leadz": self.leadz,
            "/metrics": self.metrics,
        }.get(path.split("?", 1)[0])
        if probe is None:
            return 404, b"", TEXT
        return probe()


class _ProbeHandler(BaseHTTPRequestHandler):
    state: HealthState

    def do_GET(self) -> None:
        status, body, content_type = self.state.route(self.path)
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    worker_alive: Callable[[], bool] | None = None,
) -> ThreadingHTTPServer:
    """Serve the probes and ``/metrics`` from a daemon thread; return the server."""
    state = HealthState(ready=ready, leader=leader, worker_alive=worker_alive)
    handler_class = type("BoundProbeHandler", (_ProbeHandler,), {"state": state})
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
