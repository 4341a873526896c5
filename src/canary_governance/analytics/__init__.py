"""Metric ingestion and drift analytics."""

from .drift import population_stability_index, relative_decrease, relative_increase, summarize_window
from .metric_buffer import MetricDataPoint, MetricIngestionBuffer, MetricSignal, ModelMetrics

__all__ = [
    "MetricDataPoint",
    "MetricIngestionBuffer",
    "MetricSignal",
    "ModelMetrics",
    "population_stability_index",
    "relative_decrease",
    "relative_increase",
    "summarize_window",
]
