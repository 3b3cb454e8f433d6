import math

import numpy as np
import pandas as pd
import pytest

from breakout.errors import InputError
from breakout.schema import SignalParams
from breakout.signals import DOWN, KANGAROO, UP, breakout_levels, detect
from datafeed.candles import Candle, candles_to_frame

BASE_MS = 1_704_067_200_000
PARAMS = SignalParams(N=5, atr_len=3, K=2, ema_period=3)


def _frame(bars):
    """``bars`` is a list of ``(high, low, close, volume)`` tuples."""

    candles = [
        Candle(BASE_MS + i * 60_000, BASE_MS + (i + 1) * 60_000, close, high, low, close, volume)
        for i, (high, low, close, volume) in enumerate(bars)
    ]
    return candles_to_frame(candles)


def _quiet(count):
    return [(100.5, 99.5, 100.0, 1.0)] * count


def test_short_window_is_neutral():
    result = detect(_frame(_quiet(5)), PARAMS)

    assert result.signal == KANGAROO
    assert result.resistance is None
    assert result.atr is None


def test_flat_market_is_neutral():
    result = detect(_frame([(100.0, 100.0, 100.0, 1.0)] * 10), PARAMS)

    assert result.signal == KANGAROO
    assert result.resistance == 100.0
    assert result.support == 100.0
    assert not result.up_lvl
    assert not result.dn_lvl


def test_upside_breakout_with_volume():
    result = detect(_frame(_quiet(9) + [(103.0, 100.0, 102.5, 5.0)]), PARAMS)

    assert result.signal == UP
    assert result.resistance == 100.5
    assert result.support == 99.5
    assert result.atr == pytest.approx(5.0 / 3)
    assert result.roc == pytest.approx(0.025)
    assert result.up_lvl and result.up_size and result.up_momo


def test_downside_breakout_with_volume():
    result = detect(_frame(_quiet(9) + [(100.0, 97.0, 97.5, 5.0)]), PARAMS)

    assert result.signal == DOWN
    assert result.dn_lvl and result.dn_size and result.dn_momo


def test_breakout_without_volume_surge_is_neutral():
    result = detect(_frame(_quiet(9) + [(103.0, 100.0, 102.5, 1.0)]), PARAMS)

    assert result.up_lvl and result.up_size
    assert result.signal == KANGAROO


def test_need_two_closes_blocks_single_bar_breakout():
    params = SignalParams(N=5, atr_len=3, K=2, ema_period=3, need_two_closes=True)

    result = detect(_frame(_quiet(9) + [(103.0, 100.0, 102.5, 5.0)]), params)

    assert not result.up_lvl
    assert result.signal == KANGAROO


def test_invalid_params_raise():
    with pytest.raises(InputError):
        detect(_frame(_quiet(10)), SignalParams(N=0))
    with pytest.raises(InputError):
        SignalParams.from_dict({"ema_period": -1})


def test_breakout_levels_agree_with_detect():
    rng = np.random.default_rng(3)
    closes = 100 + np.cumsum(rng.normal(0, 0.5, size=80))
    bars = [(c + abs(rng.normal(0, 0.3)), c - abs(rng.normal(0, 0.3)), c, 1.0) for c in closes]
    frame = _frame(bars)
    params = SignalParams(N=10, atr_len=14)

    levels = breakout_levels(frame, params)

    assert params.min_required == 14
    for i in range(len(frame)):
        window = frame.iloc[max(0, i - params.min_required + 1) : i + 1]
        result = detect(window, params)
        if result.resistance is None:
            assert math.isnan(levels["resistance"].iloc[i])
            assert math.isnan(levels["support"].iloc[i])
        else:
            assert levels["resistance"].iloc[i] == pytest.approx(result.resistance)
            assert levels["support"].iloc[i] == pytest.approx(result.support)


def test_breakout_levels_accepts_candle_lists():
    frame = _frame(_quiet(8))
    candles = [
        Candle(int(r.open_time), int(r.close_time), r.open, r.high, r.low, r.close, r.volume)
        for r in frame.itertuples(index=False)
    ]

    levels = breakout_levels(candles, PARAMS)

    assert isinstance(levels, pd.DataFrame)
    assert levels["resistance"].isna().sum() == PARAMS.min_required - 1
    assert levels["resistance"].iloc[-1] == 100.5
