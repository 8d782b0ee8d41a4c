"""
Metrics sinks for the ingestion pipeline.

Metric names use dotted paths (``jobs.ingested.inserted``); the Prometheus
sink maps them to underscored collector names and turns tags into labels.
"""

import logging
from typing import Protocol

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

logger = logging.getLogger(__name__)

Tags = dict[str, str | int | float | bool | None]


class Metrics(Protocol):
    def increment(self, metric: str, value: float = 1, tags: Tags | None = None) -> None: ...

    def timing(self, metric: str, duration_ms: float, tags: Tags | None = None) -> None: ...

    def gauge(self, metric: str, value: float, tags: Tags | None = None) -> None: ...


class NullMetrics:
    """Discards everything."""

    def increment(self, metric: str, value: float = 1, tags: Tags | None = None) -> None:
        pass

    def timing(self, metric: str, duration_ms: float, tags: Tags | None = None) -> None:
        pass

    def gauge(self, metric: str, value: float, tags: Tags | None = None) -> None:
        pass


class PrometheusMetrics:
    """
    Metrics sink backed by prometheus_client.

    Collectors are created on first use, on the process-wide registry unless
    another one is given. The label names of a collector are fixed by the
    tags of that first call; later calls fill missing labels with an empty
    string and ignore unknown ones.
    """

    def __init__(self, registry: CollectorRegistry | None = None, namespace: str = "job_ingestion"):
        self.registry = registry if registry is not None else REGISTRY
        self.namespace = namespace
        self._collectors: dict[str, tuple[Counter | Histogram | Gauge, tuple[str, ...]]] = {}

    def serve(self, port: int, addr: str = "0.0.0.0") -> None:
        """Expose the registry for scraping on http://addr:port/metrics."""
        start_http_server(port, addr=addr, registry=self.registry)
        logger.info(f"Serving Prometheus metrics on {addr}:{port}")

    @staticmethod
    def _collector_name(metric: str) -> str:
        return metric.replace(".", "_").replace("-", "_")

    def _get(self, kind: type, metric: str, suffix: str, tags: Tags | None):
        name = self._collector_name(metric) + suffix
        entry = self._collectors.get(name)
        if entry is None:
            labelnames = tuple(sorted(tags or {}))
            collector = kind(
                name,
                f"{metric} ({kind.__name__.lower()})",
                labelnames=labelnames,
                namespace=self.namespace,
                registry=self.registry,
            )
            entry = (collector, labelnames)
            self._collectors[name] = entry

        collector, labelnames = entry
        if not labelnames:
            return collector
        tags = tags or {}
        return collector.labels(
            **{label: "" if tags.get(label) is None else str(tags[label]) for label in labelnames}
        )

    def increment(self, metric: str, value: float = 1, tags: Tags | None = None) -> None:
        if value < 0:
            logger.warning(f"Ignoring negative increment {value} for metric {metric}")
            return
        self._get(Counter, metric, "", tags).inc(value)

    def timing(self, metric: str, duration_ms: float, tags: Tags | None = None) -> None:
        self._get(Histogram, metric, "_ms", tags).observe(duration_ms)

    def gauge(self, metric: str, value: float, tags: Tags | None = None) -> None:
        self._get(Gauge, metric, "", tags).set(value)

    def value(self, metric: str, tags: Tags | None = None, suffix: str = "") -> float | None:
        """Current sample value for a metric, mainly for inspection in tests."""
        name = f"{self.namespace}_{self._collector_name(metric)}{suffix}"
        labels = {k: "" if v is None else str(v) for k, v in (tags or {}).items()}
        return self.registry.get_sample_value(name, labels)
