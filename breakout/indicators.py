"""Vectorised indicator helpers over candle frames."""
from __future__ import annotations

import pandas as pd


def true_range(df: pd.DataFrame) -> pd.Series:
    """``max(high-low, |high-prev_close|, |low-prev_close|)``; the first bar is ``high-low``."""

    high_low = df["high"] - df["low"]
    high_close = (df["high"] - df["close"].shift()).abs()
    low_close = (df["low"] - df["close"].shift()).abs()
    return pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)


def ema(series: pd.Series, length: int) -> pd.Series:
    length = max(int(length), 1)
    return series.ewm(span=length, adjust=False).mean()


def rate_of_change(close: pd.Series, lookback: int) -> float:
    """ROC of the last close against ``close[max(0, t - lookback)]``; ``0`` on a zero base."""

    current_idx = len(close) - 1
    base = float(close.iloc[max(0, current_idx - lookback)])
    if base == 0:
        return 0.0
    return float(close.iloc[current_idx]) / base - 1


def rolling_levels(df: pd.DataFrame, lookback: int) -> pd.DataFrame:
    """Resistance/support over the previous ``lookback`` bars, excluding the current one."""

    return pd.DataFrame(
        {
            "resistance": df["high"].shift(1).rolling(lookback, min_periods=lookback).max(),
            "support": df["low"].shift(1).rolling(lookback, min_periods=lookback).min(),
        },
        index=df.index,
    )


__all__ = ["ema", "rate_of_change", "rolling_levels", "true_range"]
