from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterator

from .client import MuninClient
from .errors import DuplicateMetricError

logger = logging.getLogger(__name__)

COUNTER_TYPES = frozenset({"counter", "derive"})
LABEL_NAMES = ("hostname", "graphname", "muninlabel")


class MetricKind(enum.Enum):
    GAUGE = "gauge"
    COUNTER = "counter"


def classify(munin_type: str | None) -> MetricKind:
    if munin_type and munin_type.lower() in COUNTER_TYPES:
        return MetricKind.COUNTER
    return MetricKind.GAUGE


def metric_name(graph: str, metric: str) -> str:
    return f"{graph}_{metric}".replace("-", "_")


def help_text(title: str, label: str, info: str | None = None) -> str:
    desc = f"{title}: {label}"
    if info:
        desc = f"{desc}, {info}"
    return desc


@dataclass(frozen=True)
class Graph:
    name: str
    metrics: tuple[str, ...] = ()


@dataclass(frozen=True)
class MetricDescriptor:
    name: str
    kind: MetricKind
    help: str
    graph: str
    metric: str
    # raw munin type, exported as the constant "type" label
    munin_type: str = "gauge"


@dataclass(frozen=True)
class Sample:
    value: float
    labels: tuple[str, str, str]


@dataclass
class CatalogEntry:
    descriptor: MetricDescriptor
    sample: Sample | None = None


@dataclass
class Catalog:
    """Every metric known to this process, keyed by exported name.

    Filled once by :func:`build_catalog`; afterwards only samples change.
    """

    graphs: list[Graph] = field(default_factory=list)
    entries: dict[str, CatalogEntry] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(list(self.entries.values()))

    def get(self, name: str) -> CatalogEntry | None:
        return self.entries.get(name)

    def register(self, descriptor: MetricDescriptor) -> CatalogEntry:
        if descriptor.name in self.entries:
            raise DuplicateMetricError(
                f"{descriptor.name} is defined twice "
                f"(graph {descriptor.graph}, metric {descriptor.metric})"
            )
        entry = CatalogEntry(descriptor)
        self.entries[descriptor.name] = entry
        logger.info("Registered %s %s: %s", descriptor.kind.value, descriptor.name, descriptor.help)
        return entry

    def update(self, name: str, value: float, labels: tuple[str, str, str]) -> bool:
        entry = self.entries.get(name)
        if entry is None:
            return False
        entry.sample = Sample(value, labels)
        return True


def build_catalog(client: MuninClient) -> Catalog:
    catalog = Catalog()
    for graph in client.list_graphs():
        cfg = client.config(graph)
        names = []
        for metric, attrs in cfg.metrics.items():
            munin_type = attrs.get("type", "").lower()
            descriptor = MetricDescriptor(
                name=metric_name(graph, metric),
                kind=classify(munin_type),
                help=help_text(cfg.title, attrs.get("label", ""), attrs.get("info")),
                graph=graph,
                metric=metric,
                munin_type=munin_type or "gauge",
            )
            catalog.register(descriptor)
            names.append(metric)
        catalog.graphs.append(Graph(graph, tuple(names)))
    logger.info("Catalog holds %d metrics in %d graphs", len(catalog), len(catalog.graphs))
    return catalog
