"""Breakout signal detector.

Maps a candle window to ``Up`` / ``Down`` / ``Kangaroo`` plus the support,
resistance, ATR, ROC and EMA slope behind the decision. Pure and re-entrant.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import pandas as pd

from datafeed.candles import ensure_frame

from .indicators import ema, rate_of_change, rolling_levels, true_range
from .schema import CandleInput, SignalParams

UP = "Up"
DOWN = "Down"
KANGAROO = "Kangaroo"

_MEDIAN_TR_BARS = 10
_VOLUME_AVG_BARS = 20


@dataclass(frozen=True)
class SignalResult:
    signal: str = KANGAROO
    resistance: Optional[float] = None
    support: Optional[float] = None
    atr: Optional[float] = None
    roc: Optional[float] = None
    slope: Optional[float] = None
    current_close: Optional[float] = None
    up_lvl: bool = False
    up_size: bool = False
    up_momo: bool = False
    dn_lvl: bool = False
    dn_size: bool = False
    dn_momo: bool = False


def detect(candles: CandleInput, params: Optional[SignalParams] = None) -> SignalResult:
    """Classify the last bar of ``candles``.

    Windows shorter than ``params.min_required`` yield the neutral result.
    """

    params = (params or SignalParams()).validate()
    frame = ensure_frame(candles)
    if len(frame) < params.min_required:
        return SignalResult()

    close = frame["close"]
    volume = frame["volume"]

    tr = true_range(frame)
    atr = float(tr.iloc[-params.atr_len :].sum()) / params.atr_len

    lookback = frame.iloc[-(params.N + 1) : -1]
    resistance = float(lookback["high"].max())
    support = float(lookback["low"].min())

    current_close = float(close.iloc[-1])
    roc = rate_of_change(close, params.K)

    ema_values = ema(close, params.ema_period)
    slope = float(ema_values.iloc[-1] - ema_values.iloc[-2]) if len(ema_values) >= 2 else 0.0

    recent_tr = sorted(float(v) for v in tr.iloc[-(_MEDIAN_TR_BARS + 1) : -1])
    median_tr = recent_tr[len(recent_tr) // 2] if recent_tr else 0.0
    current_tr = float(tr.iloc[-1])

    prior_volume = volume.iloc[-(_VOLUME_AVG_BARS + 1) : -1]
    avg_volume = float(prior_volume.mean()) if len(prior_volume) else 0.0
    vol_ok = avg_volume == 0 or float(volume.iloc[-1]) > params.vol_mult * avg_volume

    up_level = resistance * (1 + params.eps)
    dn_level = support * (1 - params.eps)

    up_lvl = current_close > up_level
    up_size = current_close - resistance > params.m_atr * atr
    up_momo = roc > params.roc_min or slope > 0 or current_tr > median_tr

    dn_lvl = current_close < dn_level
    dn_size = support - current_close > params.m_atr * atr
    dn_momo = roc < -params.roc_min or slope < 0 or current_tr > median_tr

    if params.need_two_closes:
        prev_close = float(close.iloc[-2])
        up_lvl = up_lvl and prev_close > up_level
        dn_lvl = dn_lvl and prev_close < dn_level

    signal = KANGAROO
    if up_lvl and up_size and up_momo and vol_ok:
        signal = UP
    elif dn_lvl and dn_size and dn_momo and vol_ok:
        signal = DOWN

    return SignalResult(
        signal=signal,
        resistance=resistance,
        support=support,
        atr=atr,
        roc=roc,
        slope=slope,
        current_close=current_close,
        up_lvl=up_lvl,
        up_size=up_size,
        up_momo=up_momo,
        dn_lvl=dn_lvl,
        dn_size=dn_size,
        dn_momo=dn_momo,
    )


def breakout_levels(candles: CandleInput, params: Optional[SignalParams] = None) -> pd.DataFrame:
    """Per-bar ``resistance``/``support`` equal to what :func:`detect` reports for the
    ``min_required`` window ending at that bar; ``NaN`` where that window is too short.
    """

    params = (params or SignalParams()).validate()
    frame = ensure_frame(candles)
    levels = rolling_levels(frame, params.N)
    positions = pd.Series(range(len(frame)), index=frame.index)
    levels.loc[positions < params.min_required - 1] = float("nan")
    return levels


__all__ = ["DOWN", "KANGAROO", "SignalResult", "UP", "breakout_levels", "detect"]
