from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from typing import Any, Callable, Iterable
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app

from .catalog import Catalog, build_catalog
from .client import MuninClient, MuninClientConfig, MuninConnection
from .collector import MuninCollector
from .gate import ExportGate
from .sampler import Sampler

logger = logging.getLogger(__name__)

WSGIApp = Callable[[dict[str, Any], Callable[..., Any]], Iterable[bytes]]


@dataclass(frozen=True)
class ExporterConfig:
    munin: MuninClientConfig = field(default_factory=MuninClientConfig)
    listen_address: str = "0.0.0.0"
    listen_port: int = 8080
    listen_path: str = "/metrics"
    scrape_interval_s: float = 60.0
    # how long a scrape waits for a running cycle; None waits until it ends
    scrape_wait_s: float | None = None


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)


def path_dispatch(path: str, app: WSGIApp) -> WSGIApp:
    """Serve ``app`` on exactly ``path``; everything else is a 404."""

    def dispatch(environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        if environ.get("PATH_INFO", "") != path:
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Not Found\n"]
        return app(environ, start_response)

    return dispatch


class Exporter:
    """The exporter session: one connection, one catalog, one sampler.

    Everything that talks to the munin node runs in the thread that calls
    :meth:`run`; HTTP scrapes run in the server's own threads and only read
    the catalog through :class:`MuninCollector`.
    """

    def __init__(self, cfg: ExporterConfig):
        self.cfg = cfg
        self.stopping = threading.Event()
        self.conn = MuninConnection(cfg.munin, cancel=self.stopping)
        self.client = MuninClient(self.conn)
        self.gate = ExportGate()
        self.registry = CollectorRegistry()
        self.catalog: Catalog | None = None
        self.sampler: Sampler | None = None
        self._server: WSGIServer | None = None
        self._server_thread: threading.Thread | None = None

    @property
    def server_address(self) -> tuple[str, int] | None:
        if self._server is None:
            return None
        host, port = self._server.server_address[:2]
        return host, port

    def discover(self) -> Catalog:
        """Connect, build the catalog and register it with the registry."""
        self.conn.connect()
        self.catalog = build_catalog(self.client)
        self.sampler = Sampler(self.client, self.catalog, self.gate, self.cfg.scrape_interval_s)
        self.registry.register(
            MuninCollector(self.catalog, self.gate, self.sampler, self.cfg.scrape_wait_s)
        )
        return self.catalog

    def serve(self) -> None:
        app = path_dispatch(self.cfg.listen_path, make_wsgi_app(self.registry))
        self._server = make_server(
            self.cfg.listen_address,
            self.cfg.listen_port,
            app,
            server_class=_ThreadingWSGIServer,
            handler_class=_QuietHandler,
        )
        self._server_thread = threading.Thread(
            target=self._server.serve_forever, name="metrics-http", daemon=True
        )
        self._server_thread.start()
        logger.info("Serving metrics on http://%s:%s%s", *self.server_address, self.cfg.listen_path)

    def run(self) -> None:
        if self.sampler is None:
            raise RuntimeError("Exporter.discover() must be called before run()")
        try:
            self.sampler.run(self.stopping)
        finally:
            self.close()

    def stop(self) -> None:
        self.stopping.set()

    def close(self) -> None:
        self.stopping.set()
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        self.conn.close()
