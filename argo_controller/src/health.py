from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

TEXT_PLAIN = "text/plain; charset=utf-8"

Response = tuple[int, bytes, str]


class ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics``.

    ``/readyz`` follows the ``ready`` event, which the worker pool sets once
    informer caches have synced and clears on shutdown.  Query strings are
    ignored when matching routes.
    """

    ready: threading.Event
    routes = {
        "/healthz": "_liveness",
        "/readyz": "_readiness",
        "/metrics": "_metrics",
    }

    def _liveness(self) -> Response:
        return 200, b"ok", TEXT_PLAIN

    def _readiness(self) -> Response:
        if self.ready.is_set():
            return 200, b"ready=true", TEXT_PLAIN
        return 503, b"ready=false", TEXT_PLAIN

    def _metrics(self) -> Response:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def do_GET(self) -> None:
        route = self.routes.get(self.path.split("?", 1)[0])
        if route is None:
            status, body, content_type = 404, b"not found", TEXT_PLAIN
        else:
            status, body, content_type = getattr(self, route)()
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve probes and metrics on *port* from a daemon thread; ``port=0`` picks a free port."""
    handler = type("BoundProbeHandler", (ProbeHandler,), {"ready": ready})
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
