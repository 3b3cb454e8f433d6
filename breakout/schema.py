"""Parameter schema for the breakout detector, the simulation engine and a single run."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Sequence, Union

import pandas as pd

from datafeed.candles import Candle

from .errors import InputError


def _known_keys(dataclass_type, values: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(dataclass_type)}
    return {key: value for key, value in values.items() if key in names}


@dataclass(frozen=True)
class SignalParams:
    N: int = 2880
    atr_len: int = 14
    K: int = 5
    eps: float = 0.0005
    m_atr: float = 0.25
    roc_min: float = 0.0001
    ema_period: int = 10
    need_two_closes: bool = False
    vol_mult: float = 1.3

    def validate(self) -> "SignalParams":
        for name in ("N", "atr_len", "K", "ema_period"):
            value = getattr(self, name)
            if int(value) != value or value <= 0:
                raise InputError(f"SignalParams.{name} must be a positive integer, got {value!r}")
        return self

    @property
    def min_required(self) -> int:
        """Bars needed before support/resistance become available."""

        return max(self.N + 1, self.atr_len, self.K, self.ema_period)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SignalParams":
        if not isinstance(data, dict):
            return cls()
        return cls(**_known_keys(cls, data)).validate()


@dataclass(frozen=True)
class StrategyConfig:
    """Account and execution settings shared by every candidate of a run."""

    margin: float = 100.0
    leverage: float = 20.0
    fee_rate: float = 0.0005
    price_precision: int = 4
    tick_size: Optional[float] = None
    slippage_unit: int = 0
    buffer_percentage: float = 0.0
    trail_confirm_bars: int = 1
    sleep_after_liquidation_minutes: float = 0.0
    flip_when_unprofitable: bool = False
    flip_accumulated_pnl: float = -300.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StrategyConfig":
        if not isinstance(data, dict):
            return cls()
        return cls(**_known_keys(cls, data))


CandleInput = Union[pd.DataFrame, Sequence[Candle]]


@dataclass(frozen=True)
class BacktestArgs:
    """Everything one simulation run needs. Workers receive this object as-is."""

    candles: CandleInput
    trailing_atr_length: int = 14
    highest_lookback: int = 14
    trail_multiplier: float = 10.0
    signal_params: SignalParams = field(default_factory=SignalParams)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    symbol: str = "BTCUSDT"
    interval: str = "1m"
    requested_start_time: Optional[Union[str, int]] = None
    requested_end_time: Optional[Union[str, int]] = None
    end_candle: Optional[Candle] = None


__all__ = ["BacktestArgs", "CandleInput", "SignalParams", "StrategyConfig"]
