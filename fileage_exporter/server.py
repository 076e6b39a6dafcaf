"""HTTP endpoints for metrics, health and liveness."""

from __future__ import annotations

import logging
import socket
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Tuple
from urllib.parse import urlsplit

from prometheus_client import CONTENT_TYPE_LATEST

from fileage_exporter.config import parse_listen_address
from fileage_exporter.exporter import Exporter

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["ExporterHTTPServer", "ExporterRequestHandler", "make_server"]

READ_TIMEOUT_SECONDS = 3.0
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


class ExporterRequestHandler(BaseHTTPRequestHandler):
    """Route GET and HEAD requests to the exporter.

    HTTP/1.0 responses close the connection after every request. HEAD gets
    the same status and headers as GET, without the body.
    """

    server: "ExporterHTTPServer"
    timeout = READ_TIMEOUT_SECONDS
    send_body = True

    def do_GET(self) -> None:
        route = self.server.routes.get(urlsplit(self.path).path)
        if route is None:
            self._send(HTTPStatus.NOT_FOUND, b"404 page not found\n", TEXT_CONTENT_TYPE)
            return
        route(self)

    def do_HEAD(self) -> None:
        self.send_body = False
        self.do_GET()

    def serve_metrics(self) -> None:
        self._send(HTTPStatus.OK, self.server.exporter.scrape(), CONTENT_TYPE_LATEST)

    def serve_health(self) -> None:
        self._send_status(*self.server.exporter.health())

    def serve_liveness(self) -> None:
        self._send_status(*self.server.exporter.liveness())

    def _send_status(self, ok: bool, body: str) -> None:
        status = HTTPStatus.OK if ok else HTTPStatus.SERVICE_UNAVAILABLE
        self._send(status, body.encode("utf-8"), TEXT_CONTENT_TYPE)

    def _send(self, status: HTTPStatus, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.send_body:
            self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


class ExporterHTTPServer(ThreadingHTTPServer):
    """Threaded HTTP server bound to one exporter.

    Attributes:
        exporter (Exporter): Source of metrics and probe results.
        routes (Dict[str, Callable]): URL path to handler method.
    """

    daemon_threads = True

    def __init__(self, server_address: Tuple[str, int], exporter: Exporter) -> None:
        self.exporter = exporter
        self.routes: Dict[str, Callable[[ExporterRequestHandler], None]] = {
            exporter.config.prom_endpoint: ExporterRequestHandler.serve_metrics,
            exporter.config.health_endpoint: ExporterRequestHandler.serve_health,
            exporter.config.liveness_endpoint: ExporterRequestHandler.serve_liveness,
        }
        if ":" in server_address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(server_address, ExporterRequestHandler)

    def __repr__(self) -> str:
        host, port = self.server_address[:2]
        return f"<ExporterHTTPServer {host}:{port}>"


def make_server(exporter: Exporter) -> ExporterHTTPServer:
    """Bind a server for ``exporter`` at ``config.listen``.

    Raises:
        OSError: If the listener cannot be bound.
        ValueError: If the listen address is malformed.
    """
    address = parse_listen_address(exporter.config.listen)
    server = ExporterHTTPServer(address, exporter)
    logger.info(f"Listening on {exporter.config.listen}")
    return server
