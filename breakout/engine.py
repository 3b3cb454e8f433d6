"""Breakout entry / trailing-ATR exit simulation engine.

A run replays a candle frame bar by bar through a ``Flat -> Long|Short -> Flat``
state machine. Prices, fees and P&L are ``Decimal`` values quantised onto the
symbol's tick grid, so two runs over the same inputs are bit-identical.

Per bar, in order:

1. ATR window update (one true range per bar from the second bar on).
2. Warm-up / post-liquidation sleep guard: levels are refreshed, nothing trades.
3. Liquidation check on the intrabar high/low, ahead of everything else.
4. Trailing stop: push the close, ratchet the stop, count close-based breaches.
5. Entry when flat and the bar crosses the previous bar's trigger level.
6. Level refresh for the next bar and the per-bar equity delta.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from datafeed.candles import Candle, ensure_frame, normalize_timestamp, to_iso

from .errors import InputError
from .metrics import duration_parts, format_duration, projections, sharpe_ratio
from .schema import BacktestArgs
from .signals import breakout_levels
from .ticks import quantize_to_tick, resolve_tick_size, round_to_precision, to_decimal
from .windows import RollingExtrema, RollingMean

LOGGER = logging.getLogger(__name__)

LONG = "long"
SHORT = "short"
FLAT = "flat"

EXIT_ATR_TRAILING = "atr_trailing"
EXIT_SIGNAL_CHANGE = "signal_change"
EXIT_END = "end"
EXIT_LIQUIDATION = "liquidation_exit"

_ZERO = Decimal(0)
_ONE = Decimal(1)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class PnlPoint:
    """One closed trade."""

    timestamp: int
    side: str
    total_pnl: Decimal
    entry_timestamp: Optional[int]
    entry_fill_price: Optional[Decimal]
    exit_timestamp: int
    exit_fill_price: Decimal
    trade_pnl: Decimal
    exit_reason: str

    def to_dict(self) -> Dict[str, Any]:
        payload = _jsonable(asdict(self))
        payload["timestamp_iso"] = to_iso(self.timestamp)
        return payload


@dataclass(frozen=True)
class TracePoint:
    i: int
    timestamp: int
    position_side: str
    entry_timestamp: Optional[int]
    entry_fill_price: Optional[Decimal]
    trailing_stop: Optional[Decimal]
    breach_count: int
    exit_timestamp: Optional[int]
    exit_fill_price: Optional[Decimal]


@dataclass(frozen=True)
class TradeEvent:
    type: str
    side: str
    timestamp: int
    fill_price: Decimal
    reason: Optional[str] = None


@dataclass(frozen=True)
class BacktestRunSummary:
    symbol: str
    interval: str
    requested_start_time: Optional[Union[str, int]]
    requested_end_time: Optional[Union[str, int]]
    actual_start_time: str
    actual_end_time: str
    candle_count: int
    duration: str
    margin: Decimal
    leverage: Decimal
    tick_size: Decimal
    price_precision: int
    number_of_trades: int
    liquidation_count: int
    fee_rate: Decimal
    total_fees_paid: Decimal
    total_pnl: Decimal
    pnl_history: List[PnlPoint]
    per_bar_returns: List[Decimal]
    daily_pnl: Decimal
    projected_yearly_pnl: Decimal
    apy_percent: Decimal
    sharpe_ratio: float
    slippage_accumulated: Decimal
    events: List[TradeEvent] = field(default_factory=list)

    def to_dict(self, include_series: bool = False) -> Dict[str, Any]:
        payload = _jsonable(asdict(self))
        if not include_series:
            payload.pop("per_bar_returns", None)
            payload.pop("events", None)
        return payload


@dataclass
class Position:
    side: str
    entry_price: Decimal


@dataclass
class SimulationState:
    """All mutable state of one run. Never shared between runs."""

    atr_window: RollingMean
    closes: RollingExtrema
    previous_equity: Decimal
    number_of_trades: int = 0
    position: Optional[Position] = None
    base_amount: Decimal = _ZERO
    total_pnl: Decimal = _ZERO
    total_fees: Decimal = _ZERO
    accumulated_negative_pnl: Decimal = _ZERO
    slippage_accumulated: Decimal = _ZERO
    flipped: bool = False
    liquidation_price: Optional[Decimal] = None
    liquidation_count: int = 0
    liquidation_time: Optional[int] = None
    support: Optional[Decimal] = None
    resistance: Optional[Decimal] = None
    prev_close: Optional[Decimal] = None
    trailing_stop: Optional[Decimal] = None
    breach_count: int = 0
    last_entry_time: Optional[int] = None
    last_entry_fill: Optional[Decimal] = None
    last_exit_time: Optional[int] = None
    last_exit_fill: Optional[Decimal] = None
    pnl_history: List[PnlPoint] = field(default_factory=list)
    per_bar_returns: List[Decimal] = field(default_factory=list)
    trace: List[TracePoint] = field(default_factory=list)
    events: List[TradeEvent] = field(default_factory=list)


def parse_time_ms(value: Optional[Union[str, int, float, pd.Timestamp]]) -> Optional[int]:
    """Millisecond epoch for an ISO string, a timestamp or a numeric epoch."""

    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return normalize_timestamp(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def _optional_decimal(value: float) -> Optional[Decimal]:
    if pd.isna(value):
        return None
    return to_decimal(float(value))


class BreakoutTrailingAtrEngine:
    """Steps one run over a candle frame. Create one instance per run."""

    def __init__(self, args: BacktestArgs) -> None:
        frame = ensure_frame(args.candles)
        if frame.empty:
            raise InputError("No candles provided")
        prices = frame[["open", "high", "low", "close"]].to_numpy(dtype=float)
        if not np.isfinite(prices).all():
            raise InputError("Candle prices must be finite numbers")
        if int(args.trailing_atr_length) <= 0:
            raise InputError(f"trailing_atr_length must be positive, got {args.trailing_atr_length!r}")
        if int(args.highest_lookback) <= 0:
            raise InputError(f"highest_lookback must be positive, got {args.highest_lookback!r}")
        cfg = args.strategy
        if cfg.leverage <= 0:
            raise InputError(f"leverage must be positive, got {cfg.leverage!r}")

        self.args = args
        self.frame = frame
        self.signal_params = args.signal_params.validate()
        self.min_candles_for_signal = self.signal_params.min_required

        self.margin = to_decimal(cfg.margin)
        self.leverage = to_decimal(cfg.leverage)
        self.fee_rate = to_decimal(cfg.fee_rate)
        self.price_precision = int(cfg.price_precision)
        self.tick = resolve_tick_size(cfg.tick_size, self.price_precision)
        self.slippage = to_decimal(cfg.slippage_unit) * self.tick
        self.buffer = to_decimal(cfg.buffer_percentage)
        self.trail_multiplier = to_decimal(args.trail_multiplier)
        self.trail_confirm_bars = max(1, int(cfg.trail_confirm_bars))
        self.sleep_ms = int(to_decimal(cfg.sleep_after_liquidation_minutes) * 60_000)
        self.flip_enabled = bool(cfg.flip_when_unprofitable)
        self.flip_threshold = to_decimal(cfg.flip_accumulated_pnl)
        self.trailing_atr_length = int(args.trailing_atr_length)
        self.highest_lookback = int(args.highest_lookback)

        first_open = int(frame["open_time"].iloc[0])
        requested_start = parse_time_ms(args.requested_start_time)
        self.trade_start_ms = max(first_open, requested_start) if requested_start is not None else first_open

        self._open_times = [int(v) for v in frame["open_time"].tolist()]
        self._highs = [to_decimal(float(v)) for v in frame["high"].tolist()]
        self._lows = [to_decimal(float(v)) for v in frame["low"].tolist()]
        self._closes = [to_decimal(float(v)) for v in frame["close"].tolist()]

        levels = breakout_levels(frame, self.signal_params)
        self._resistance = [_optional_decimal(v) for v in levels["resistance"].tolist()]
        self._support = [_optional_decimal(v) for v in levels["support"].tolist()]

        self.state = SimulationState(
            atr_window=RollingMean(self.trailing_atr_length),
            closes=RollingExtrema(self.highest_lookback),
            previous_equity=self.margin,
        )

    # -- bookkeeping -------------------------------------------------------

    def _apply_fee(self, notional: Decimal) -> None:
        st = self.state
        fee = notional * self.fee_rate
        st.total_fees += fee
        st.total_pnl -= fee
        st.accumulated_negative_pnl -= fee

    def _track_slippage(self, slippage: Decimal) -> None:
        self.state.slippage_accumulated += slippage

    def _reset_trailing_state(self) -> None:
        st = self.state
        st.trailing_stop = None
        st.breach_count = 0
        st.closes = RollingExtrema(self.highest_lookback)

    def _refresh_levels(self, i: int) -> None:
        if i >= self.min_candles_for_signal:
            self.state.resistance = self._resistance[i]
            self.state.support = self._support[i]

    def _record_trace(self, i: int) -> None:
        st = self.state
        st.trace.append(
            TracePoint(
                i=i,
                timestamp=self._open_times[i],
                position_side=st.position.side if st.position else FLAT,
                entry_timestamp=st.last_entry_time,
                entry_fill_price=st.last_entry_fill,
                trailing_stop=st.trailing_stop,
                breach_count=st.breach_count,
                exit_timestamp=st.last_exit_time,
                exit_fill_price=st.last_exit_fill,
            )
        )

    def _update_atr(self, i: int) -> Optional[Decimal]:
        st = self.state
        high, low, close = self._highs[i], self._lows[i], self._closes[i]
        if st.prev_close is not None:
            tr = max(high - low, abs(high - st.prev_close), abs(low - st.prev_close))
            st.atr_window.push(tr)
        st.prev_close = close
        return st.atr_window.value

    def _update_trailing(self, close: Decimal, atr: Optional[Decimal]) -> None:
        st = self.state
        if st.position is None:
            return
        st.closes.push(close)
        if atr is None:
            return

        offset = atr * self.trail_multiplier
        if st.position.side == LONG:
            highest = st.closes.max if st.closes.max is not None else close
            candidate = highest - offset
            if candidate > 0 and (st.trailing_stop is None or candidate > st.trailing_stop):
                st.trailing_stop = quantize_to_tick(candidate, self.tick, "up")
        else:
            lowest = st.closes.min if st.closes.min is not None else close
            candidate = lowest + offset
            if candidate > 0 and (st.trailing_stop is None or candidate < st.trailing_stop):
                st.trailing_stop = quantize_to_tick(candidate, self.tick, "down")

    # -- position lifecycle ------------------------------------------------

    def _long_trigger(self) -> Optional[Decimal]:
        if self.state.resistance is None:
            return None
        raw = self.state.resistance * (_ONE - self.buffer)
        return round_to_precision(raw, self.price_precision, "down")

    def _short_trigger(self) -> Optional[Decimal]:
        if self.state.support is None:
            return None
        raw = self.state.support * (_ONE + self.buffer)
        return round_to_precision(raw, self.price_precision, "up")

    def _enter(self, side: str, trigger: Decimal, reference: Optional[Decimal], ts: int) -> None:
        st = self.state
        st.number_of_trades += 1
        self._reset_trailing_state()

        if side == LONG:
            fill = quantize_to_tick(trigger + self.slippage, self.tick, "up")
            liquidation = quantize_to_tick(fill * (_ONE - _ONE / self.leverage), self.tick, "up")
        else:
            fill = quantize_to_tick(trigger - self.slippage, self.tick, "down")
            liquidation = quantize_to_tick(fill * (_ONE + _ONE / self.leverage), self.tick, "down")

        if reference is not None:
            self._track_slippage(fill - reference if side == LONG else reference - fill)

        st.position = Position(side=side, entry_price=fill)
        st.liquidation_price = liquidation
        st.base_amount = self.margin * self.leverage / fill
        self._apply_fee(self.margin * self.leverage)

        st.last_entry_time = ts
        st.last_entry_fill = fill
        st.events.append(TradeEvent(type="entry", side=side, timestamp=ts, fill_price=fill))
        LOGGER.debug("Entered %s at %s (liq=%s)", side, fill, liquidation)

    def _close(self, price: Decimal, ts: int, reason: str) -> None:
        st = self.state
        position = st.position
        if position is None:
            return

        st.number_of_trades += 1
        if position.side == LONG:
            fill = quantize_to_tick(price - self.slippage, self.tick, "down")
        else:
            fill = quantize_to_tick(price + self.slippage, self.tick, "up")

        exit_value = st.base_amount * fill
        entry_value = self.margin * self.leverage
        pnl = exit_value - entry_value if position.side == LONG else entry_value - exit_value
        st.total_pnl += pnl
        self._apply_fee(exit_value)

        level = st.support if position.side == LONG else st.resistance
        if level is not None:
            self._track_slippage(level - fill if position.side == LONG else fill - level)

        st.pnl_history.append(
            PnlPoint(
                timestamp=ts,
                side=position.side,
                total_pnl=st.total_pnl,
                entry_timestamp=st.last_entry_time,
                entry_fill_price=st.last_entry_fill,
                exit_timestamp=ts,
                exit_fill_price=fill,
                trade_pnl=pnl,
                exit_reason=reason,
            )
        )

        st.accumulated_negative_pnl += pnl
        if pnl > 0 and st.accumulated_negative_pnl >= 0:
            st.accumulated_negative_pnl = _ZERO

        st.last_exit_time = ts
        st.last_exit_fill = fill
        st.events.append(TradeEvent(type="exit", side=position.side, timestamp=ts, fill_price=fill, reason=reason))
        LOGGER.debug("Closed %s at %s (%s) pnl=%s", position.side, fill, reason, pnl)

        st.position = None
        st.base_amount = _ZERO
        st.liquidation_price = None
        self._reset_trailing_state()

    def _in_sleep(self, ts: int) -> bool:
        st = self.state
        if st.liquidation_time is None:
            return False
        if ts < st.liquidation_time + self.sleep_ms:
            return True
        st.liquidation_time = None
        return False

    def _check_liquidation(self, i: int) -> bool:
        st = self.state
        position = st.position
        if position is None or not st.liquidation_price:
            return False

        liquidation = st.liquidation_price
        hit = self._lows[i] <= liquidation if position.side == LONG else self._highs[i] >= liquidation
        if not hit:
            return False

        ts = self._open_times[i]
        pnl = -self.margin
        st.total_pnl += pnl
        st.pnl_history.append(
            PnlPoint(
                timestamp=ts,
                side=position.side,
                total_pnl=st.total_pnl,
                entry_timestamp=st.last_entry_time,
                entry_fill_price=st.last_entry_fill,
                exit_timestamp=ts,
                exit_fill_price=liquidation,
                trade_pnl=pnl,
                exit_reason=EXIT_LIQUIDATION,
            )
        )
        st.accumulated_negative_pnl += pnl
        self._apply_fee(self.margin * self.leverage)

        st.last_exit_time = ts
        st.last_exit_fill = liquidation
        st.events.append(
            TradeEvent(type="exit", side=position.side, timestamp=ts, fill_price=liquidation, reason=EXIT_LIQUIDATION)
        )
        LOGGER.debug("Liquidated %s at %s", position.side, liquidation)

        st.position = None
        st.base_amount = _ZERO
        st.liquidation_price = None
        st.liquidation_count += 1
        st.liquidation_time = ts
        self._reset_trailing_state()
        return True

    # -- main loop ---------------------------------------------------------

    def step(self, i: int) -> None:
        st = self.state
        ts = self._open_times[i]
        close = self._closes[i]
        atr = self._update_atr(i)

        if ts < self.trade_start_ms or self._in_sleep(ts) or self._check_liquidation(i):
            self._refresh_levels(i)
            self._record_trace(i)
            return

        if st.position is not None:
            self._update_trailing(close, atr)
            if st.trailing_stop is not None:
                if st.position.side == LONG:
                    breached = close <= st.trailing_stop
                else:
                    breached = close >= st.trailing_stop
                st.breach_count = st.breach_count + 1 if breached else 0
                if st.breach_count >= self.trail_confirm_bars:
                    self._close(close, ts, EXIT_ATR_TRAILING)
            else:
                st.breach_count = 0

        if self.flip_enabled and st.accumulated_negative_pnl <= self.flip_threshold:
            st.flipped = not st.flipped
            st.accumulated_negative_pnl = _ZERO

        if st.position is None:
            long_trigger = self._long_trigger()
            short_trigger = self._short_trigger()
            entered = False
            if long_trigger is not None and self._highs[i] > long_trigger:
                self._enter(SHORT if st.flipped else LONG, long_trigger, st.resistance, ts)
                entered = True
            elif short_trigger is not None and self._lows[i] < short_trigger:
                self._enter(LONG if st.flipped else SHORT, short_trigger, st.support, ts)
                entered = True
            if entered:
                self._update_trailing(close, atr)
                st.breach_count = 0

        self._refresh_levels(i)

        equity = self.margin + st.total_pnl
        if st.previous_equity > 0:
            st.per_bar_returns.append(equity - st.previous_equity)
        st.previous_equity = equity

        self._record_trace(i)

    def close_at_end(self, candle: Candle) -> None:
        if self.state.position is not None:
            self._close(to_decimal(float(candle.close)), int(candle.close_time), EXIT_END)

    def run(self) -> Tuple[BacktestRunSummary, List[TracePoint]]:
        for i in range(len(self.frame)):
            self.step(i)

        end_candle = self.args.end_candle or self._last_candle()
        self.close_at_end(end_candle)
        summary = self._summarize(end_candle)
        LOGGER.debug(
            "Backtest %s len=%d mult=%s: trades=%d liq=%d pnl=%s",
            summary.symbol,
            self.trailing_atr_length,
            self.trail_multiplier,
            summary.number_of_trades,
            summary.liquidation_count,
            summary.total_pnl,
        )
        return summary, list(self.state.trace)

    def _last_candle(self) -> Candle:
        row = self.frame.iloc[-1]
        return Candle(
            open_time=int(row["open_time"]),
            close_time=int(row["close_time"]),
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row["volume"]),
        )

    def _summarize(self, end_candle: Candle) -> BacktestRunSummary:
        st = self.state
        start_ms = self._open_times[0]
        end_ms = int(end_candle.close_time)
        whole_days = duration_parts(start_ms, end_ms)[0]
        daily, yearly, apy = projections(st.total_pnl, whole_days, self.margin)

        return BacktestRunSummary(
            symbol=self.args.symbol,
            interval=self.args.interval,
            requested_start_time=self.args.requested_start_time,
            requested_end_time=self.args.requested_end_time,
            actual_start_time=to_iso(start_ms),
            actual_end_time=to_iso(end_ms),
            candle_count=len(self.frame),
            duration=format_duration(start_ms, end_ms),
            margin=self.margin,
            leverage=self.leverage,
            tick_size=self.tick,
            price_precision=self.price_precision,
            number_of_trades=st.number_of_trades,
            liquidation_count=st.liquidation_count,
            fee_rate=self.fee_rate,
            total_fees_paid=st.total_fees,
            total_pnl=st.total_pnl,
            pnl_history=list(st.pnl_history),
            per_bar_returns=list(st.per_bar_returns),
            daily_pnl=daily,
            projected_yearly_pnl=yearly,
            apy_percent=apy,
            sharpe_ratio=sharpe_ratio(st.per_bar_returns),
            slippage_accumulated=st.slippage_accumulated,
            events=list(st.events),
        )


def run_backtest_with_trace(args: BacktestArgs) -> Tuple[BacktestRunSummary, List[TracePoint]]:
    """Simulate one parameter set and also return the per-bar trace."""

    return BreakoutTrailingAtrEngine(args).run()


def run_backtest(args: BacktestArgs) -> BacktestRunSummary:
    summary, _ = run_backtest_with_trace(args)
    return summary


__all__ = [
    "BacktestRunSummary",
    "BreakoutTrailingAtrEngine",
    "EXIT_ATR_TRAILING",
    "EXIT_END",
    "EXIT_LIQUIDATION",
    "EXIT_SIGNAL_CHANGE",
    "FLAT",
    "LONG",
    "PnlPoint",
    "Position",
    "SHORT",
    "SimulationState",
    "TracePoint",
    "TradeEvent",
    "parse_time_ms",
    "run_backtest",
    "run_backtest_with_trace",
]
