"""Relative drift comparisons and distribution stability metrics."""

from __future__ import annotations

import numpy as np
import pandas as pd


def relative_increase(current: float, baseline: float) -> float:
    """Fractional increase of `current` over `baseline` (0.5 == 50% higher)."""
    if baseline <= 0:
        return float(current) if current > 0 else 0.0
    return float((current - baseline) / baseline)


def relative_decrease(current: float, baseline: float) -> float:
    """Fractional decrease of `current` below `baseline` (0.1 == 10% lower)."""
    if baseline <= 0:
        return 0.0
    return float((baseline - current) / baseline)


def population_stability_index(
    reference: list[float],
    observed: pd.Series | list[float],
    bins: int = 10,
    epsilon: float = 1e-4,
) -> float:
    """
    PSI between a reference sample and observed values.

    Bin edges come from the reference quantiles so that each reference bin holds
    roughly the same mass; empty bins are floored at `epsilon`.
    """
    ref = np.asarray(reference, dtype=float)
    obs = np.asarray(observed, dtype=float)
    if ref.size == 0 or obs.size == 0:
        return 0.0
    edges = np.unique(np.quantile(ref, np.linspace(0.0, 1.0, bins + 1)))
    if edges.size < 2:
        edges = np.array([ref.min() - 0.5, ref.max() + 0.5])
    edges[0] = min(edges[0], obs.min())
    edges[-1] = max(edges[-1], obs.max())
    ref_counts, _ = np.histogram(ref, bins=edges)
    obs_counts, _ = np.histogram(obs, bins=edges)
    ref_share = np.clip(ref_counts / ref_counts.sum(), epsilon, None)
    obs_share = np.clip(obs_counts / obs_counts.sum(), epsilon, None)
    return float(np.sum((obs_share - ref_share) * np.log(obs_share / ref_share)))


def summarize_window(values: pd.Series) -> dict[str, float]:
    """Small helper for attaching window statistics to decisions and logs."""
    if values.empty:
        return {"count": 0.0, "mean": 0.0, "p95": 0.0, "max": 0.0}
    return {
        "count": float(len(values)),
        "mean": float(values.mean()),
        "p95": float(np.quantile(values, 0.95)),
        "max": float(values.max()),
    }
