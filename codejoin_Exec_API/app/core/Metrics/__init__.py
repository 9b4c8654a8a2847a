"""
Metrics for the codejoin execution core.

Counters, gauges and histograms recorded by the sandbox runner, the session
manager and the stream hub.
"""

from .metrics_manager import (
    MetricType,
    MetricDefinition,
    MetricValue,
    MetricsRegistry,
    get_metrics_registry,
    increment_counter,
    set_gauge,
    observe_histogram
)

__all__ = [
    "MetricType",
    "MetricDefinition",
    "MetricValue",
    "MetricsRegistry",
    "get_metrics_registry",
    "increment_counter",
    "set_gauge",
    "observe_histogram",
]
