"""HTTP healthcheck responder running beside the reconciliation loop."""

from __future__ import annotations

import logging
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Thread
from typing import Any, Optional, Tuple

from external_lb.metadata import RancherMetadataClient
from external_lb.providers.base import Provider

logger = logging.getLogger(__name__)


class HealthcheckHandler(BaseHTTPRequestHandler):
    """Serves ``GET /`` and ``HEAD /`` from the owning ``HealthcheckServer``."""

    def __init__(self, healthcheck: "HealthcheckServer", *args: Any, **kwargs: Any) -> None:
        self.healthcheck = healthcheck
        super().__init__(*args, **kwargs)

    def do_GET(self) -> None:
        self._respond(send_body=True)

    def do_HEAD(self) -> None:
        self._respond(send_body=False)

    def _respond(self, *, send_body: bool) -> None:
        if self.path.split("?", 1)[0] != "/":
            status, body = 404, "Not found"
        else:
            status, body = self.healthcheck.check()

        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if send_body:
            self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"healthcheck {self.command} {self.path}: {format % args}")


class HealthcheckServer:
    def __init__(
        self,
        *,
        metadata: RancherMetadataClient,
        provider: Provider,
        host: str = "0.0.0.0",
        port: int = 1000,
    ):
        self.metadata = metadata
        self.provider = provider
        self.host = host
        self.port = port
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[Thread] = None

    def check(self) -> Tuple[int, str]:
        """Probe metadata, then the provider; returns (status code, body)."""
        try:
            self.metadata.health_check()
        except Exception as e:
            logger.error(f"Healthcheck failed: unable to reach metadata: {e}")
            return 500, "Failed to reach metadata server"

        try:
            self.provider.health_check()
        except Exception as e:
            logger.error(f"Healthcheck failed: unable to reach a provider, error: {e}")
            return 500, "Failed to reach an external provider"

        return 200, "OK"

    @property
    def server_port(self) -> int:
        """Bound port, useful when started with port 0."""
        return self._server.server_address[1] if self._server else self.port

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Healthcheck server already running")
            return

        def handler_factory(*args: Any, **kwargs: Any) -> HealthcheckHandler:
            return HealthcheckHandler(self, *args, **kwargs)

        self._server = ThreadingHTTPServer((self.host, self.port), handler_factory)
        self._server.daemon_threads = True
        self._thread = Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"Healthcheck handler is listening on {self.host}:{self.server_port}")

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._server = None
        self._thread = None
