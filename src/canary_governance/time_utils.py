"""Datetime normalization helpers."""

from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd


def now_utc() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc_timestamp(value: object) -> pd.Timestamp:
    """Normalize datetime-like values to UTC pandas Timestamp."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def seconds_since(moment: datetime | None, reference: datetime | None = None) -> float:
    """Seconds elapsed from `moment` to `reference` (now when omitted); inf when `moment` is None."""
    if moment is None:
        return float("inf")
    current = reference or now_utc()
    return (to_utc_timestamp(current) - to_utc_timestamp(moment)).total_seconds()
