"""
Metrics providers.

Components report metrics through a small provider interface with
Datadog-style tags (``["status:success", "topic:widgets"]``):

- MetricsProvider: the interface, a no-op by default
- PrometheusMetrics: prometheus_client backend with its own registry
- MockMetrics: records every call, for tests
"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]")


def parse_tags(tags: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``["key:value", ...]`` into a label dict."""
    labels = {}
    for tag in tags or []:
        key, _, value = tag.partition(":")
        labels[_INVALID_NAME_CHARS.sub("_", key)] = value
    return labels


class MetricsProvider:
    """Metrics interface. Implementations must never raise."""

    def increment(self, name: str, tags: Optional[List[str]] = None, by: int = 1) -> None:
        pass

    def histogram(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        pass

    def gauge(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        pass


class PrometheusMetrics(MetricsProvider):
    """
    Prometheus backend.

    Metrics are created lazily on first use. Prometheus requires a fixed
    label set per metric name, so a call with a different set of tag keys
    gets its own metric whose name is suffixed with those keys. Histograms
    are timings and carry a ``_seconds`` suffix, so a counter and a histogram
    may share a name.
    """

    def __init__(self, namespace: str = "dbstream", registry: Optional[CollectorRegistry] = None):
        self.namespace = _INVALID_NAME_CHARS.sub("_", namespace)
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[Tuple[str, str, Tuple[str, ...]], object] = {}
        self._label_sets: Dict[Tuple[str, str], Tuple[str, ...]] = {}

    def _metric(self, kind: str, name: str, label_names: Tuple[str, ...]):
        key = (kind, name, label_names)
        metric = self._metrics.get(key)
        if metric is not None:
            return metric

        metric_name = _INVALID_NAME_CHARS.sub("_", name)
        first_labels = self._label_sets.setdefault((kind, name), label_names)
        if first_labels != label_names:
            metric_name = "_".join((metric_name,) + (label_names or ("unlabelled",)))

        if kind == "counter":
            metric = Counter(metric_name, f"{name} counter", label_names,
                             namespace=self.namespace, registry=self.registry)
        elif kind == "histogram":
            metric = Histogram(f"{metric_name}_seconds", f"{name} histogram", label_names,
                               namespace=self.namespace, registry=self.registry)
        else:
            metric = Gauge(metric_name, f"{name} gauge", label_names,
                           namespace=self.namespace, registry=self.registry)

        self._metrics[key] = metric
        return metric

    def _labelled(self, kind: str, name: str, tags: Optional[List[str]]):
        labels = parse_tags(tags)
        label_names = tuple(sorted(labels))
        metric = self._metric(kind, name, label_names)
        return metric.labels(**labels) if labels else metric

    def increment(self, name: str, tags: Optional[List[str]] = None, by: int = 1) -> None:
        try:
            self._labelled("counter", name, tags).inc(by)
        except Exception as e:
            logger.warning(f"Failed to record counter {name}: {e}")

    def histogram(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        try:
            self._labelled("histogram", name, tags).observe(value)
        except Exception as e:
            logger.warning(f"Failed to record histogram {name}: {e}")

    def gauge(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        try:
            self._labelled("gauge", name, tags).set(value)
        except Exception as e:
            logger.warning(f"Failed to record gauge {name}: {e}")

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry).decode("utf-8")


class MockMetrics(MetricsProvider):
    """Records metric calls in memory."""

    def __init__(self):
        self.increments: List[Tuple[str, List[str], int]] = []
        self.histograms: List[Tuple[str, float, List[str]]] = []
        self.gauges: List[Tuple[str, float, List[str]]] = []

    def increment(self, name: str, tags: Optional[List[str]] = None, by: int = 1) -> None:
        self.increments.append((name, list(tags or []), by))

    def histogram(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        self.histograms.append((name, value, list(tags or [])))

    def gauge(self, name: str, value: float, tags: Optional[List[str]] = None) -> None:
        self.gauges.append((name, value, list(tags or [])))

    def count(self, name: str, *tags: str) -> int:
        """Sum of increments of ``name`` whose tags include all of ``tags``."""
        return sum(
            by for metric, metric_tags, by in self.increments
            if metric == name and all(tag in metric_tags for tag in tags)
        )

    def clear(self) -> None:
        self.increments.clear()
        self.histograms.clear()
        self.gauges.clear()
