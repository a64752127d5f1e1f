from __future__ import annotations

import logging
import threading
import time

from .catalog import Catalog, metric_name
from .client import MuninClient
from .errors import MuninError, ProtocolDesyncError
from .gate import ExportGate

logger = logging.getLogger(__name__)


class Sampler:
    """Fetches every graph once per period and publishes the results.

    Values are collected first and written to the catalog in one step under
    the export gate, so scrapes see either the previous cycle or this one.
    While the node is unreachable the gate stays clear and scrapes keep
    getting the last published values.
    """

    def __init__(
        self,
        client: MuninClient,
        catalog: Catalog,
        gate: ExportGate,
        interval_s: float = 60.0,
    ):
        self._client = client
        self._catalog = catalog
        self._gate = gate
        self.interval_s = interval_s
        self.last_duration_s: float | None = None
        self.cycles = 0

    @property
    def hostname(self) -> str:
        return self._client.hostname or ""

    def _publish(self, graph: str, hostname: str, values: list[tuple[str, float]]) -> None:
        for metric, value in values:
            name = metric_name(graph, metric)
            if not self._catalog.update(name, value, (hostname, graph, metric)):
                logger.warning("Dropping value for unregistered metric %s", name)
                continue
            logger.debug("%s %s: %f", self._catalog.entries[name].descriptor.kind.value, name, value)

    def run_cycle(self) -> bool:
        """Fetch every graph once. Returns False if the cycle ended early."""
        logger.debug("Scraping")
        start = time.perf_counter()
        fetched: list[tuple[str, str, list[tuple[str, float]]]] = []
        ok = True
        try:
            for graph in self._catalog.graphs:
                try:
                    values = self._client.fetch(graph.name)
                except ProtocolDesyncError:
                    raise
                except MuninError as e:
                    logger.error("Error occurred when trying to fetch %s: %s", graph.name, e)
                    ok = False
                    break
                # read after fetch: a reconnect may have changed it
                fetched.append((graph.name, self.hostname, values))
        finally:
            with self._gate.cycle():
                for graph_name, hostname, values in fetched:
                    self._publish(graph_name, hostname, values)
                self.last_duration_s = time.perf_counter() - start
                self.cycles += 1
        logger.debug("Cycle took %.3fs", self.last_duration_s)
        return ok

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            started = time.monotonic()
            self.run_cycle()
            delay = max(0.0, self.interval_s - (time.monotonic() - started))
            stop.wait(delay)
