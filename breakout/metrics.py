"""Run-level statistics for backtest summaries."""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Tuple

import numpy as np
import pandas as pd

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def sharpe_ratio(values: Iterable[float]) -> float:
    """``mean / std(ddof=1) * sqrt(n)`` over per-bar equity deltas; ``0`` when undefined."""

    series = pd.Series([float(v) for v in values], dtype=float)
    series = series.replace([np.inf, -np.inf], np.nan).dropna()
    if len(series) < 2:
        return 0.0
    std = series.std(ddof=1)
    if std == 0 or np.isnan(std):
        return 0.0
    return float(series.mean() / std * np.sqrt(len(series)))


def duration_parts(start_ms: int, end_ms: int) -> Tuple[int, int, int]:
    duration = end_ms - start_ms
    days = duration // DAY_MS
    hours = (duration % DAY_MS) // HOUR_MS
    minutes = (duration % HOUR_MS) // MINUTE_MS
    return int(days), int(hours), int(minutes)


def format_duration(start_ms: int, end_ms: int) -> str:
    days, hours, minutes = duration_parts(start_ms, end_ms)
    return f"{days}D{hours}H{minutes}m"


def projections(total_pnl: Decimal, whole_days: int, margin: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """Return ``(daily, projected_yearly, apy_percent)``."""

    daily = total_pnl / whole_days if whole_days > 0 else Decimal(0)
    yearly = daily * 365
    apy = yearly / margin * 100 if margin > 0 else Decimal(0)
    return daily, yearly, apy


__all__ = ["duration_parts", "format_duration", "projections", "sharpe_ratio"]
