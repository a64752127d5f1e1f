from __future__ import annotations

import logging
from typing import Iterator, NamedTuple

from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from .catalog import LABEL_NAMES, Catalog, MetricDescriptor, MetricKind
from .gate import ExportGate
from .sampler import Sampler

logger = logging.getLogger(__name__)

DURATION_METRIC = "munin_scrape_duration_seconds"
DURATION_HELP = "Wall-clock seconds spent fetching all graphs from the munin node"


class SnapshotRow(NamedTuple):
    name: str
    kind: MetricKind
    help: str
    labels: dict[str, str]
    value: float


def _family(descriptor: MetricDescriptor) -> Metric:
    labels = [*LABEL_NAMES, "type"]
    if descriptor.kind is MetricKind.COUNTER:
        return CounterMetricFamily(descriptor.name, descriptor.help, labels=labels)
    return GaugeMetricFamily(descriptor.name, descriptor.help, labels=labels)


class MuninCollector(Collector):
    """Serves the catalog to prometheus_client once no sampling cycle is running."""

    def __init__(
        self,
        catalog: Catalog,
        gate: ExportGate,
        sampler: Sampler,
        gate_timeout_s: float | None = None,
    ):
        self._catalog = catalog
        self._gate = gate
        self._sampler = sampler
        self._gate_timeout_s = gate_timeout_s

    def describe(self) -> Iterator[Metric]:
        for entry in self._catalog:
            yield _family(entry.descriptor)
        yield GaugeMetricFamily(DURATION_METRIC, DURATION_HELP, labels=["hostname"])

    def snapshot(self) -> list[SnapshotRow]:
        if not self._gate.wait_clear(self._gate_timeout_s):
            logger.warning("Sampling cycle still running, serving current values")
        rows = []
        for entry in self._catalog:
            sample = entry.sample
            if sample is None:
                continue
            d = entry.descriptor
            rows.append(SnapshotRow(d.name, d.kind, d.help, dict(zip(LABEL_NAMES, sample.labels)), sample.value))
        return rows

    def collect(self) -> Iterator[Metric]:
        for row in self.snapshot():
            descriptor = self._catalog.entries[row.name].descriptor
            family = _family(descriptor)
            family.add_metric([*row.labels.values(), descriptor.munin_type], row.value)
            yield family

        duration = self._sampler.last_duration_s
        if duration is not None:
            family = GaugeMetricFamily(DURATION_METRIC, DURATION_HELP, labels=["hostname"])
            family.add_metric([self._sampler.hostname], duration)
            yield family
