"""HTTP server used as the backend of HTTP probes. It answers "ok" on "/",
reports lameduck status and health, serves fixed payloads, and exports
per-URL request counts."""

from __future__ import annotations

import enum
import logging
import ssl
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

from cloudprober.metrics import EventMetrics, Int, Map

logger = logging.getLogger(__name__)

STATS_EXPORT_INTERVAL = 10.0
DEFAULT_PORT = 3141
# Body returned by "/" and by "/healthcheck" when healthy.
OK = "ok"


class Protocol(enum.Enum):
    HTTP = "HTTP"
    HTTPS = "HTTPS"


@dataclass
class HTTPConfig:
    """Settings of an HTTP server.

    pattern_data_handlers holds (response_size, pattern) pairs; each adds a
    "/data_<size>" URL returning size bytes of the repeated pattern.
    """

    port: int = DEFAULT_PORT
    protocol: Protocol = Protocol.HTTP
    tls_cert_file: str = ""
    tls_key_file: str = ""
    read_timeout_ms: int = 0
    write_timeout_ms: int = 0
    idle_timeout_ms: int = 0
    pattern_data_handlers: list[tuple[int, str]] = field(default_factory=list)


class LameduckLister:
    """Source of the names of lameducked instances."""

    def __init__(self, names: tuple[str, ...] | list[str] = ()) -> None:
        self._names = list(names)

    def list(self) -> list[str]:
        return list(self._names)


def _pattern_payload(size: int, pattern: str) -> bytes:
    data = pattern.encode()
    if not data:
        return bytes(size)
    return (data * (size // len(data) + 1))[:size]


class HTTPServer:
    """A small web server that acts as a probe target."""

    def __init__(
        self,
        config: HTTPConfig | None = None,
        *,
        instance_name: str = "",
        ld_lister: LameduckLister | None = None,
        stats_interval: float = STATS_EXPORT_INTERVAL,
    ) -> None:
        self.config = config or HTTPConfig()
        if self.config.protocol is Protocol.HTTPS and not (
            self.config.tls_cert_file and self.config.tls_key_file
        ):
            raise ValueError("tls_cert_file and tls_key_file are required for HTTPS servers")
        if ld_lister is None:
            logger.warning("lameduck lister not initialized")

        self.instance_name = instance_name
        self.ld_lister = ld_lister
        self.stats_interval = stats_interval
        self._req_lock = threading.Lock()
        self._req_metric = Map("url", Int(0))
        self._static: dict[str, bytes] = {"/": OK.encode(), "/instance": instance_name.encode()}
        for size, pattern in self.config.pattern_data_handlers:
            self._static[f"/data_{size}"] = _pattern_payload(size, pattern)

        self._httpd = ThreadingHTTPServer(("", self.config.port), self._handler_class())
        self._httpd.daemon_threads = True
        self._closed = False
        if self.config.protocol is Protocol.HTTPS:
            try:
                context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
                context.load_cert_chain(self.config.tls_cert_file, self.config.tls_key_file)
                self._httpd.socket = context.wrap_socket(self._httpd.socket, server_side=True)
            except (OSError, ssl.SSLError):
                self._httpd.server_close()
                raise

    @property
    def address(self) -> tuple[str, int]:
        """Host and port the server listens on."""
        host, port = self._httpd.server_address[:2]
        return str(host), int(port)

    def lameduck_status(self) -> bool:
        """Whether this instance is in the lameduck list."""
        if self.ld_lister is None:
            raise RuntimeError("lameduck lister not initialized")
        return self.instance_name in self.ld_lister.list()

    def handle(self, path: str) -> tuple[HTTPStatus, bytes]:
        """Status and body for a request path; counts served paths."""
        if path == "/lameduck":
            try:
                body = str(self.lameduck_status()).lower().encode()
            except RuntimeError as err:
                body = f"HTTP Server: Error getting lameduck status: {err}".encode()
            status = HTTPStatus.OK
        elif path == "/healthcheck":
            try:
                lameduck = self.lameduck_status()
            except RuntimeError as err:
                logger.error("%s", err)
                lameduck = False
            if lameduck:
                status, body = HTTPStatus.SERVICE_UNAVAILABLE, b"lameduck\n"
            else:
                status, body = HTTPStatus.OK, OK.encode()
        else:
            found = self._static.get(path)
            if found is None:
                return HTTPStatus.NOT_FOUND, b"not found\n"
            status, body = HTTPStatus.OK, found
        with self._req_lock:
            self._req_metric.inc_key(path)
        return status, body

    def stats(self, ts: datetime | None = None) -> EventMetrics:
        """Request counts per URL so far."""
        snapshot = Map("url", Int(0))
        with self._req_lock:
            for key in self._req_metric.keys():
                snapshot.inc_key_by(key, self._req_metric.get_key(key))
        host, port = self.address
        return (
            EventMetrics(ts or datetime.now(timezone.utc))
            .add_metric("req", snapshot)
            .add_label("module", f"http-server-{host}:{port}")
        )

    def start(self, out: Callable[[EventMetrics], None], stop_event: threading.Event) -> None:
        """Serve, exporting stats to out every stats_interval, until stop_event."""
        host, port = self.address
        logger.info("Starting HTTP server at: %s:%d", host, port)
        thread = threading.Thread(
            target=self._httpd.serve_forever, kwargs={"poll_interval": 0.1}, daemon=True
        )
        thread.start()
        try:
            while not stop_event.wait(self.stats_interval):
                em = self.stats()
                out(em)
                logger.info("%s", em)
        finally:
            self._httpd.shutdown()
            thread.join()
            self.close()

    def close(self) -> None:
        """Close the listening socket; safe to call more than once."""
        if not self._closed:
            self._closed = True
            self._httpd.server_close()

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        server = self
        timeout_ms = self.config.idle_timeout_ms or self.config.read_timeout_ms

        class _Handler(BaseHTTPRequestHandler):
            timeout = timeout_ms / 1000 if timeout_ms else None

            def _respond(self, with_body: bool) -> None:
                status, body = server.handle(urlsplit(self.path).path)
                self.send_response(status)
                self.send_header("Content-Type", "text/plain; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                if with_body:
                    self.wfile.write(body)

            def do_GET(self) -> None:  # noqa: N802
                self._respond(True)

            def do_HEAD(self) -> None:  # noqa: N802
                self._respond(False)

            def log_message(self, format: str, *args: object) -> None:
                logger.debug(format, *args)

        return _Handler