"""
Centralized metrics management for the execution core.

Values are kept in an in-process registry with a bounded history per metric;
`export_prometheus_format()` renders them for whichever scraper the hosting
service wires up.
"""

import time
from typing import Dict, Any, Optional, List, Callable
from dataclasses import dataclass, field
from enum import Enum
from collections import defaultdict, deque
import statistics

from loguru import logger


class MetricType(Enum):
    """Types of metrics supported."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricDefinition:
    """Definition of a metric."""
    name: str
    type: MetricType
    description: str
    unit: str = ""
    labels: List[str] = field(default_factory=list)
    buckets: Optional[List[float]] = None  # For histograms


@dataclass
class MetricValue:
    """A metric value with metadata."""
    value: float
    timestamp: float = field(default_factory=time.time)
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsRegistry:
    """Registry for all execution-core metrics."""

    def __init__(self):
        self.metrics: Dict[str, MetricDefinition] = {}
        self.values: Dict[str, deque] = defaultdict(lambda: deque(maxlen=1000))
        self.callbacks: Dict[str, List[Callable]] = defaultdict(list)
        self._register_standard_metrics()

    def _register_standard_metrics(self):
        """Register the sandbox metrics."""
        self.register_metric(
            MetricDefinition(
                name="sandbox_runs_total",
                type=MetricType.COUNTER,
                description="Batch runs by language and outcome",
                labels=["language", "outcome"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_run_duration_seconds",
                type=MetricType.HISTOGRAM,
                description="Wall-clock duration of batch runs",
                unit="s",
                labels=["language"],
                buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20, 30],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_validation_rejections_total",
                type=MetricType.COUNTER,
                description="Inputs rejected by the input pipeline before reaching a sandbox",
                labels=["language", "code"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_provisioning_failures_total",
                type=MetricType.COUNTER,
                description="Sandboxes that could not be created",
                labels=["code"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_sessions_active",
                type=MetricType.GAUGE,
                description="Interactive sessions currently holding a sandbox",
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_session_closed_total",
                type=MetricType.COUNTER,
                description="Interactive sessions torn down, by reason",
                labels=["reason"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_stream_queue_drops_total",
                type=MetricType.COUNTER,
                description="Session output frames dropped from full subscriber queues",
                labels=["reason"],
            )
        )
        self.register_metric(
            MetricDefinition(
                name="sandbox_transcode_anomalies_total",
                type=MetricType.COUNTER,
                description="Malformed byte sequences passed through verbatim",
                labels=["kind"],
            )
        )

    def register_metric(self, definition: MetricDefinition) -> bool:
        """
        Register a new metric definition.

        Returns:
            True if registered successfully
        """
        if definition.name in self.metrics:
            logger.warning(f"Metric {definition.name} already registered")
            return False
        self.metrics[definition.name] = definition
        logger.debug(f"Registered metric: {definition.name}")
        return True

    def record(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """
        Record a metric value.

        Args:
            metric_name: Name of the metric
            value: Value to record
            labels: Optional labels/dimensions
        """
        if metric_name not in self.metrics:
            logger.warning(f"Metric {metric_name} not registered")
            return

        labels = labels or {}
        self.values[metric_name].append(MetricValue(value=value, labels=labels))

        for callback in self.callbacks[metric_name]:
            try:
                callback(metric_name, value, labels)
            except Exception as e:
                logger.error(f"Metric callback error: {e}")

    def increment(self, metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        self.record(metric_name, value, labels)

    def set_gauge(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        self.record(metric_name, value, labels)

    def observe(self, metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
        """Observe a value for histogram metric."""
        self.record(metric_name, value, labels)

    def add_callback(self, metric_name: str, callback: Callable):
        """
        Add a callback for metric events.

        Args:
            metric_name: Name of the metric
            callback: Callable(metric_name, value, labels)
        """
        self.callbacks[metric_name].append(callback)

    def get_metric_stats(self, metric_name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Args:
            metric_name: Name of the metric
            labels: Optional label filter (exact match on the provided keys)

        Returns:
            Dictionary with metric statistics
        """
        if metric_name not in self.values:
            return {}

        values = list(self.values[metric_name])
        if labels:
            values = [val for val in values if all(
                val.labels.get(key) == expected for key, expected in labels.items()
            )]

        if not values:
            return {}

        numeric_values = [v.value for v in values]

        return {
            "count": len(numeric_values),
            "sum": sum(numeric_values),
            "mean": statistics.mean(numeric_values),
            "min": min(numeric_values),
            "max": max(numeric_values),
            "latest": numeric_values[-1],
            "latest_timestamp": values[-1].timestamp
        }

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Stats for every registered metric that has recorded values."""
        return {name: self.get_metric_stats(name) for name in self.metrics if self.values.get(name)}

    def export_prometheus_format(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for metric_name, definition in self.metrics.items():
            if metric_name not in self.values:
                continue

            lines.append(f"# HELP {metric_name} {definition.description}")
            lines.append(f"# TYPE {metric_name} {definition.type.value}")

            label_groups = defaultdict(list)
            for value in self.values[metric_name]:
                label_key = ",".join(f'{k}="{v}"' for k, v in sorted(value.labels.items()))
                label_groups[label_key].append(value)

            for label_str, values in label_groups.items():
                suffix = f"{{{label_str}}}" if label_str else ""
                if definition.type == MetricType.GAUGE:
                    lines.append(f"{metric_name}{suffix} {values[-1].value}")
                elif definition.type == MetricType.COUNTER:
                    lines.append(f"{metric_name}{suffix} {sum(v.value for v in values)}")
                elif definition.type == MetricType.HISTOGRAM:
                    numeric_values = [v.value for v in values]
                    sep = "," if label_str else ""
                    for bucket in definition.buckets or []:
                        count = sum(1 for v in numeric_values if v <= bucket)
                        lines.append(f"{metric_name}_bucket{{{label_str}{sep}le=\"{bucket}\"}} {count}")
                    lines.append(f"{metric_name}_bucket{{{label_str}{sep}le=\"+Inf\"}} {len(numeric_values)}")
                    lines.append(f"{metric_name}_sum{suffix} {sum(numeric_values)}")
                    lines.append(f"{metric_name}_count{suffix} {len(numeric_values)}")

        return "\n".join(lines) + "\n"


# Global metrics registry instance
_metrics_registry: Optional[MetricsRegistry] = None


def get_metrics_registry() -> MetricsRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry
    if _metrics_registry is None:
        _metrics_registry = MetricsRegistry()
    return _metrics_registry


def increment_counter(metric_name: str, value: float = 1, labels: Optional[Dict[str, str]] = None):
    """Increment a counter metric."""
    get_metrics_registry().increment(metric_name, value, labels)


def set_gauge(metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
    """Set a gauge metric value."""
    get_metrics_registry().set_gauge(metric_name, value, labels)


def observe_histogram(metric_name: str, value: float, labels: Optional[Dict[str, str]] = None):
    """Observe a value for histogram metric."""
    get_metrics_registry().observe(metric_name, value, labels)

