"""
Monitoring Module

In-process metrics for the pipeline: counters, gauges and histograms kept in
a registry and exported in Prometheus text format.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _label_str(label_key: LabelKey) -> str:
    labels = ",".join(f'{k}="{v}"' for k, v in label_key)
    return f"{{{labels}}}" if labels else ""


# =============================================================================
# METRIC CLASSES
# =============================================================================

class Counter:
    """A monotonically increasing counter metric."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def inc(self, value: float = 1, **labels):
        self._values[_label_key(labels)] += value

    def get(self, **labels) -> float:
        return self._values.get(_label_key(labels), 0.0)


class Gauge:
    """A gauge metric that can go up and down."""

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[LabelKey, float] = defaultdict(float)

    def set(self, value: float, **labels):
        self._values[_label_key(labels)] = value

    def get(self, **labels) -> float:
        return self._values.get(_label_key(labels), 0.0)


class Histogram:
    """A histogram metric for measuring distributions."""

    DEFAULT_BUCKETS = (0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, float('inf'))

    def __init__(self, name: str, description: str = "", buckets: Optional[tuple] = None):
        self.name = name
        self.description = description
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._counts: Dict[LabelKey, Dict[float, int]] = defaultdict(lambda: defaultdict(int))
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels):
        key = _label_key(labels)
        for bucket in self.buckets:
            if value <= bucket:
                self._counts[key][bucket] += 1
        self._sums[key] += value
        self._totals[key] += 1

    def get_count(self, **labels) -> int:
        return self._totals.get(_label_key(labels), 0)

    def get_sum(self, **labels) -> float:
        return self._sums.get(_label_key(labels), 0.0)


# =============================================================================
# METRICS REGISTRY
# =============================================================================

class MetricsRegistry:
    """Central registry for all metrics."""

    def __init__(self):
        self._metrics: Dict[str, object] = {}

    def counter(self, name: str, description: str = "") -> Counter:
        if name not in self._metrics:
            self._metrics[name] = Counter(name, description)
        return self._metrics[name]

    def gauge(self, name: str, description: str = "") -> Gauge:
        if name not in self._metrics:
            self._metrics[name] = Gauge(name, description)
        return self._metrics[name]

    def histogram(self, name: str, description: str = "", buckets: Optional[tuple] = None) -> Histogram:
        if name not in self._metrics:
            self._metrics[name] = Histogram(name, description, buckets)
        return self._metrics[name]

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: List[str] = []
        for name, metric in self._metrics.items():
            if metric.description:
                lines.append(f"# HELP {name} {metric.description}")

            if isinstance(metric, Counter):
                lines.append(f"# TYPE {name} counter")
                for key, value in metric._values.items():
                    lines.append(f"{name}{_label_str(key)} {value}")

            elif isinstance(metric, Gauge):
                lines.append(f"# TYPE {name} gauge")
                for key, value in metric._values.items():
                    lines.append(f"{name}{_label_str(key)} {value}")

            elif isinstance(metric, Histogram):
                lines.append(f"# TYPE {name} histogram")
                for key, total in metric._totals.items():
                    for bucket in metric.buckets:
                        le = "+Inf" if bucket == float('inf') else str(bucket)
                        bucket_key = key + (("le", le),)
                        lines.append(f"{name}_bucket{_label_str(bucket_key)} {metric._counts[key][bucket]}")
                    lines.append(f"{name}_count{_label_str(key)} {total}")
                    lines.append(f"{name}_sum{_label_str(key)} {metric._sums[key]}")

            lines.append("")
        return "\n".join(lines)


# Global registry
REGISTRY = MetricsRegistry()


# =============================================================================
# PIPELINE METRICS
# =============================================================================

class PipelineMetrics:
    """Metrics specific to the split/page pipeline."""

    def __init__(self, registry: Optional[MetricsRegistry] = None):
        self.registry = registry or REGISTRY

        self.workflows_submitted = self.registry.counter(
            "pageflow_workflows_submitted_total", "Workflows submitted"
        )
        self.workflows_finished = self.registry.counter(
            "pageflow_workflows_finished_total", "Workflows reaching a terminal state"
        )
        self.documents_split = self.registry.counter(
            "pageflow_documents_split_total", "Documents split into pages"
        )
        self.pages_processed = self.registry.counter(
            "pageflow_pages_processed_total", "Page jobs by outcome"
        )
        self.rate_limit_denials = self.registry.counter(
            "pageflow_rate_limit_denials_total", "Extraction calls denied by the rate limiter"
        )
        self.jobs = self.registry.counter(
            "pageflow_jobs_total", "Job settlements by queue and outcome"
        )
        self.queue_depth = self.registry.gauge(
            "pageflow_queue_depth", "Outstanding jobs per queue"
        )
        self.page_duration = self.registry.histogram(
            "pageflow_page_duration_seconds", "Page extraction duration"
        )
        self.split_pages = self.registry.histogram(
            "pageflow_split_pages", "Pages per split document",
            buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, float('inf'))
        )
        self.extraction_confidence = self.registry.histogram(
            "pageflow_extraction_confidence", "Extraction confidence scores",
            buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 0.95, 1.0)
        )

    def record_submitted(self):
        self.workflows_submitted.inc()

    def record_workflow_finished(self, state: str):
        self.workflows_finished.inc(state=state)

    def record_split(self, page_count: int):
        self.documents_split.inc()
        self.split_pages.observe(page_count)

    def record_page(self, outcome: str, duration_seconds: Optional[float] = None,
                    confidence: Optional[float] = None):
        self.pages_processed.inc(outcome=outcome)
        if duration_seconds is not None:
            self.page_duration.observe(duration_seconds, outcome=outcome)
        if confidence is not None:
            self.extraction_confidence.observe(confidence)

    def record_rate_limited(self, resource_key: str):
        self.rate_limit_denials.inc(resource=resource_key)

    def record_job(self, queue: str, outcome: str):
        self.jobs.inc(queue=queue, outcome=outcome)

    def set_queue_depth(self, queue: str, depth: int):
        self.queue_depth.set(depth, queue=queue)
