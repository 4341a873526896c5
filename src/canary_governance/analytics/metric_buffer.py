"""Per-model, per-signal metric time series."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Iterable

import pandas as pd

from canary_governance.time_utils import now_utc, to_utc_timestamp


class MetricSignal(StrEnum):
    LATENCY_P95 = "latency_p95"
    LATENCY_P99 = "latency_p99"
    ACCURACY = "accuracy"
    ERROR_RATE = "error_rate"
    CONFIDENCE = "confidence"
    THROUGHPUT = "throughput"
    MEMORY = "memory"
    CPU = "cpu"


@dataclass(slots=True)
class MetricDataPoint:
    value: float
    timestamp: datetime = field(default_factory=now_utc)


@dataclass(slots=True)
class ModelMetrics:
    """Full time-series snapshot for one model version."""

    series: dict[MetricSignal, list[MetricDataPoint]] = field(default_factory=dict)

    @staticmethod
    def from_values(timestamp: datetime | None = None, **values: Iterable[float]) -> "ModelMetrics":
        """Build a snapshot from plain value lists, e.g. `from_values(error_rate=[0.2])`."""
        stamp = timestamp or now_utc()
        series: dict[MetricSignal, list[MetricDataPoint]] = {}
        for name, raw in values.items():
            signal = MetricSignal(name)
            series[signal] = [MetricDataPoint(value=float(v), timestamp=stamp) for v in raw]
        return ModelMetrics(series=series)

    def points(self, signal: MetricSignal) -> list[MetricDataPoint]:
        return self.series.get(signal, [])

    def latest(self, signal: MetricSignal) -> float | None:
        points = self.points(signal)
        if not points:
            return None
        return max(points, key=lambda p: p.timestamp).value


def _to_series(points: list[MetricDataPoint]) -> pd.Series:
    if not points:
        return pd.Series(dtype=float)
    index = pd.DatetimeIndex([to_utc_timestamp(p.timestamp) for p in points])
    return pd.Series([p.value for p in points], index=index, dtype=float).sort_index(kind="stable")


class MetricIngestionBuffer:
    """Pure data holder: append, replace, prune and windowed reads."""

    def __init__(self, max_points_per_signal: int = 10_000) -> None:
        self.max_points_per_signal = max_points_per_signal
        self._data: dict[str, dict[MetricSignal, list[MetricDataPoint]]] = {}

    def replace(self, model_version: str, metrics: ModelMetrics) -> None:
        self._data[model_version] = {
            signal: list(points)[-self.max_points_per_signal :]
            for signal, points in metrics.series.items()
        }

    def append(self, model_version: str, signal: MetricSignal, point: MetricDataPoint) -> None:
        bucket = self._data.setdefault(model_version, {}).setdefault(signal, [])
        bucket.append(point)
        if len(bucket) > self.max_points_per_signal:
            del bucket[: len(bucket) - self.max_points_per_signal]

    def prune(self, older_than: datetime) -> int:
        """Drop points older than `older_than`; returns the number removed."""
        cutoff = to_utc_timestamp(older_than)
        removed = 0
        for signals in self._data.values():
            for signal, points in signals.items():
                kept = [p for p in points if to_utc_timestamp(p.timestamp) >= cutoff]
                removed += len(points) - len(kept)
                signals[signal] = kept
        return removed

    def series(self, model_version: str, signal: MetricSignal) -> pd.Series:
        return _to_series(self._data.get(model_version, {}).get(signal, []))

    def window(self, model_version: str, signal: MetricSignal, window_seconds: float) -> pd.Series:
        """Values observed within `window_seconds` of the newest point for the signal."""
        values = self.series(model_version, signal)
        if values.empty:
            return values
        start = values.index.max() - timedelta(seconds=window_seconds)
        return values[values.index >= start]

    def latest(self, model_version: str, signal: MetricSignal) -> float | None:
        values = self.series(model_version, signal)
        if values.empty:
            return None
        return float(values.iloc[-1])

    def versions(self) -> list[str]:
        return sorted(self._data)
