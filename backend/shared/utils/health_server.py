"""
Minimal HTTP server for worker services (ingest, scheduler).
Serves GET /health on PORT so container healthchecks succeed, and
GET /status with whatever the service's status callback reports.
Runs in a daemon thread; no-op when PORT is not set (e.g. local dev).
"""
from __future__ import annotations

import json
import os
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)

StatusFn = Callable[[], dict[str, Any]]


def start_health_server(service_name: str, status_fn: Optional[StatusFn] = None) -> None:
    """
    Start a daemon thread that listens on PORT and responds to GET /health
    and GET /status. Only starts when PORT is set; otherwise no-op.
    """
    port_str = os.environ.get("PORT")
    if not port_str:
        return
    try:
        port = int(port_str)
    except ValueError:
        logger.warning("health_server_bad_port", port=port_str)
        return

    health_body = json.dumps({"status": "ok", "service": service_name}).encode("utf-8")

    class Handler(BaseHTTPRequestHandler):
        def _send(self, code: int, body: bytes) -> None:
            self.send_response(code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self) -> None:
            path = self.path.rstrip("/")
            if path == "/health":
                self._send(200, health_body)
            elif path == "/status" and status_fn is not None:
                body = json.dumps({"service": service_name, **status_fn()}, default=str)
                self._send(200, body.encode("utf-8"))
            else:
                self.send_response(404)
                self.end_headers()

        def log_message(self, format: str, *args: object) -> None:
            pass  # Suppress request logging

    def serve() -> None:
        with HTTPServer(("0.0.0.0", port), Handler) as httpd:
            httpd.serve_forever()

    t = threading.Thread(target=serve, daemon=True)
    t.start()
    logger.info("health_server_started", port=port)
