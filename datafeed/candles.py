"""Candle model and normalisation helpers shared by the store, engine and CLI."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence, Union

import numpy as np
import pandas as pd

ONE_MINUTE_MS = 60_000
_SECONDS_CUTOFF = 1_000_000_000_000

FRAME_COLUMNS = ["open_time", "close_time", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class Candle:
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


RawCandle = Union[Candle, Mapping[str, object], Sequence[object]]


def normalize_timestamp(ts: float) -> int:
    """Return a millisecond timestamp, rescaling values that look like seconds."""

    value = float(ts)
    if not np.isfinite(value):
        raise ValueError(f"Invalid candle timestamp: {ts!r}")
    if value < _SECONDS_CUTOFF:
        value *= 1000
    return int(value)


def _from_mapping(raw: Mapping[str, object], interval_ms: int) -> Candle:
    ts = raw.get("open_time", raw.get("openTime", raw.get("timestamp")))
    if ts is None:
        raise ValueError("Candle mapping requires an open time")
    open_time = normalize_timestamp(ts)  # type: ignore[arg-type]
    close_raw = raw.get("close_time", raw.get("closeTime"))
    close_time = normalize_timestamp(close_raw) if close_raw is not None else open_time + interval_ms  # type: ignore[arg-type]
    return Candle(
        open_time=open_time,
        close_time=close_time,
        open=float(raw["open"]),  # type: ignore[arg-type]
        high=float(raw["high"]),  # type: ignore[arg-type]
        low=float(raw["low"]),  # type: ignore[arg-type]
        close=float(raw["close"]),  # type: ignore[arg-type]
        volume=float(raw.get("volume") or 0.0),  # type: ignore[arg-type]
    )


def to_candle(raw: RawCandle, interval_ms: int = ONE_MINUTE_MS) -> Candle:
    """Coerce a ccxt row, a mapping or a :class:`Candle` into a normalised candle."""

    if isinstance(raw, Candle):
        return Candle(
            open_time=normalize_timestamp(raw.open_time),
            close_time=normalize_timestamp(raw.close_time),
            open=raw.open,
            high=raw.high,
            low=raw.low,
            close=raw.close,
            volume=raw.volume,
        )
    if isinstance(raw, Mapping):
        return _from_mapping(raw, interval_ms)
    # ccxt layout: [timestamp, open, high, low, close, volume]
    values = list(raw)
    if len(values) < 5:
        raise ValueError(f"OHLCV row is too short: {values!r}")
    open_time = normalize_timestamp(values[0])  # type: ignore[arg-type]
    volume = float(values[5]) if len(values) > 5 and values[5] is not None else 0.0  # type: ignore[arg-type]
    return Candle(
        open_time=open_time,
        close_time=open_time + interval_ms,
        open=float(values[1]),  # type: ignore[arg-type]
        high=float(values[2]),  # type: ignore[arg-type]
        low=float(values[3]),  # type: ignore[arg-type]
        close=float(values[4]),  # type: ignore[arg-type]
        volume=volume,
    )


def normalize_candles(raw_candles: Iterable[RawCandle], interval_ms: int = ONE_MINUTE_MS) -> List[Candle]:
    """Normalise timestamps, drop duplicates (last one wins) and sort ascending."""

    by_open_time: Dict[int, Candle] = {}
    for raw in raw_candles:
        if raw is None:
            continue
        candle = to_candle(raw, interval_ms)
        by_open_time[candle.open_time] = candle
    return [by_open_time[key] for key in sorted(by_open_time)]


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    rows = [
        (c.open_time, c.close_time, c.open, c.high, c.low, c.close, c.volume)
        for c in candles
    ]
    frame = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    frame = frame.astype(
        {
            "open_time": "int64",
            "close_time": "int64",
            "open": float,
            "high": float,
            "low": float,
            "close": float,
            "volume": float,
        }
    )
    frame.index = pd.to_datetime(frame["open_time"], unit="ms", utc=True)
    frame.index.name = "timestamp"
    return frame


def frame_to_candles(frame: pd.DataFrame) -> List[Candle]:
    return [
        Candle(
            open_time=int(row.open_time),
            close_time=int(row.close_time),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def ensure_frame(candles: Union[pd.DataFrame, Sequence[Candle]]) -> pd.DataFrame:
    """Accept either a candle frame or a list of candles and return a frame."""

    if isinstance(candles, pd.DataFrame):
        missing = [col for col in FRAME_COLUMNS if col not in candles.columns]
        if missing:
            raise ValueError(f"Candle frame is missing columns: {missing}")
        return candles
    return candles_to_frame(candles)


def slice_candles(frame: pd.DataFrame, start_ms: int, end_ms: int) -> pd.DataFrame:
    """Rows with ``start_ms <= open_time < end_ms``."""

    mask = (frame["open_time"] >= start_ms) & (frame["open_time"] < end_ms)
    return frame.loc[mask]


def load_candles_csv(path: Path, interval_ms: int = ONE_MINUTE_MS) -> pd.DataFrame:
    """Load ``timestamp,open,high,low,close,volume`` rows into a candle frame."""

    raw = pd.read_csv(path)
    if "timestamp" in raw.columns and not pd.api.types.is_numeric_dtype(raw["timestamp"]):
        parsed = pd.to_datetime(raw["timestamp"], utc=True)
        raw["timestamp"] = (parsed - pd.Timestamp(0, tz="UTC")) // pd.Timedelta(milliseconds=1)
    records = raw.to_dict(orient="records")
    return candles_to_frame(normalize_candles(records, interval_ms))


def to_iso(ms: int) -> str:
    return pd.Timestamp(ms, unit="ms", tz="UTC").isoformat().replace("+00:00", "Z")


__all__ = [
    "Candle",
    "FRAME_COLUMNS",
    "ONE_MINUTE_MS",
    "candles_to_frame",
    "ensure_frame",
    "frame_to_candles",
    "load_candles_csv",
    "normalize_candles",
    "normalize_timestamp",
    "slice_candles",
    "to_candle",
    "to_iso",
]
