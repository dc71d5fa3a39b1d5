from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

if TYPE_CHECKING:
    from watcher.src.mirror import SettingsMirror


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints.

    Readiness requires the initial load to have completed and every watcher
    thread to still be running, so a watcher that died on a fatal error takes
    the pod out of rotation.
    """

    mirror: SettingsMirror

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readiness_text(self) -> str:
        ready = "true" if self.mirror.ready.is_set() else "false"
        alive = self.mirror.alive_watchers()
        return f"ready={ready} watchers={alive}/{self.mirror.watcher_count}"

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            status = 200 if self.mirror.healthy() else 503
            self._respond(status, self._readiness_text().encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("watcher.health").debug(fmt, *args)


def make_health_handler(mirror: SettingsMirror) -> type[_HealthHandler]:
    """Return a handler class bound to *mirror*.

    The stdlib server instantiates handlers without constructor arguments, so
    the mirror is attached as a class attribute.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.mirror = mirror
    return _BoundHealthHandler


def start_health_server(mirror: SettingsMirror, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(mirror))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
