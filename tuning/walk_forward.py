"""Walk-forward re-optimisation.

``[start, end)`` is cut into update intervals. Before each interval the
optimiser is fitted on the preceding optimisation window, and the interval is
then simulated with the winning parameters. Interval results are stitched into
one overall summary.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from breakout.engine import BacktestRunSummary, PnlPoint, run_backtest
from breakout.errors import InputError
from breakout.metrics import duration_parts, format_duration, projections, sharpe_ratio
from breakout.schema import BacktestArgs, SignalParams
from breakout.ticks import resolve_tick_size, to_decimal
from datafeed.candles import ONE_MINUTE_MS, frame_to_candles, slice_candles, to_iso

from .bayes import OptimizationResult, optimize
from .search_spaces import Bounds, Candidate
from .tpe import optimize_tpe

LOGGER = logging.getLogger(__name__)


def compute_warmup_bars(
    signal_params: SignalParams, trailing_atr_length: int, highest_lookback: Optional[int] = None
) -> int:
    """Bars of history a run needs before its first tradable bar."""

    lookback = trailing_atr_length if highest_lookback is None else highest_lookback
    min_trailing = max(trailing_atr_length + 1, trailing_atr_length, lookback)
    return max(signal_params.min_required, min_trailing)


def fetch_start_ms(start_ms: int, signal_params: SignalParams, bounds: Bounds) -> int:
    """Earliest open time any candidate inside ``bounds`` may need."""

    return max(0, start_ms - compute_warmup_bars(signal_params, bounds.length_max) * ONE_MINUTE_MS)


@dataclass(frozen=True)
class WalkForwardSettings:
    update_interval_minutes: int
    optimization_window_minutes: int
    bounds: Bounds = field(default_factory=Bounds)
    total_evaluations: int = 40
    initial_random: int = 8
    num_candidates: int = 200
    kappa: float = 2.0
    method: str = "gp"
    seed: Optional[int] = None


@dataclass
class WindowResult:
    step_index: int
    window_start_time: str
    window_end_time: str
    interval_start_time: str
    interval_end_time: str
    best_params: Candidate
    best_value: float
    evaluation_count: int
    history: List[Dict[str, Any]]
    interval_summary: BacktestRunSummary
    fit_seconds: float


@dataclass
class WalkForwardResult:
    window_results: List[WindowResult]
    final_params: Optional[Candidate]
    best_value: float
    overall: BacktestRunSummary
    candle_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_params": self.final_params.to_dict() if self.final_params else None,
            "best_value": self.best_value,
            "candle_count": self.candle_count,
            "overall": self.overall.to_dict(),
            "windows": [
                {
                    "step_index": w.step_index,
                    "window_start_time": w.window_start_time,
                    "window_end_time": w.window_end_time,
                    "interval_start_time": w.interval_start_time,
                    "interval_end_time": w.interval_end_time,
                    "best_params": w.best_params.to_dict(),
                    "best_value": w.best_value,
                    "evaluation_count": w.evaluation_count,
                    "interval_total_pnl": str(w.interval_summary.total_pnl),
                    "fit_seconds": round(w.fit_seconds, 3),
                }
                for w in self.window_results
            ],
        }


def _args_for(template: BacktestArgs, candles: pd.DataFrame, candidate: Candidate, start_ms: int, end_ms: int,
              by_open_time: Dict[int, Any]) -> BacktestArgs:
    return replace(
        template,
        candles=candles,
        trailing_atr_length=candidate.trailing_atr_length,
        highest_lookback=candidate.trailing_atr_length,
        trail_multiplier=candidate.trail_multiplier,
        requested_start_time=to_iso(start_ms),
        requested_end_time=to_iso(end_ms),
        end_candle=by_open_time.get(end_ms),
    )


def _optimize_window(objective, settings: WalkForwardSettings, rng: np.random.Generator, step_index: int) -> OptimizationResult:
    if settings.method == "tpe":
        seed = None if settings.seed is None else settings.seed + step_index
        return optimize_tpe(
            objective,
            settings.bounds,
            total_evaluations=settings.total_evaluations,
            initial_random=settings.initial_random,
            seed=seed,
        )
    if settings.method != "gp":
        raise ValueError(f"Unknown optimizer method '{settings.method}'. Expected 'gp' or 'tpe'")
    return optimize(
        objective,
        settings.bounds,
        total_evaluations=settings.total_evaluations,
        initial_random=settings.initial_random,
        num_candidates=settings.num_candidates,
        kappa=settings.kappa,
        rng=rng,
    )


def run_walk_forward(
    frame: pd.DataFrame,
    start_ms: int,
    end_ms: int,
    template: BacktestArgs,
    settings: WalkForwardSettings,
    rng: Optional[np.random.Generator] = None,
) -> WalkForwardResult:
    if end_ms <= start_ms:
        raise InputError("Invalid time range")
    update_ms = int(settings.update_interval_minutes) * ONE_MINUTE_MS
    window_ms = int(settings.optimization_window_minutes) * ONE_MINUTE_MS
    if update_ms <= 0 or window_ms <= 0:
        raise InputError("Invalid optimization interval/window")
    if frame.empty:
        raise InputError("No candles available for optimization")

    rng = rng if rng is not None else np.random.default_rng(settings.seed)
    signal_params = template.signal_params.validate()
    earliest_ms = fetch_start_ms(start_ms, signal_params, settings.bounds)
    candle_count = len(slice_candles(frame, start_ms, end_ms))
    if candle_count == 0:
        raise InputError("No candles available for the requested range")

    by_open_time = {c.open_time: c for c in frame_to_candles(frame)}
    steps = max(1, (end_ms - start_ms) // update_ms)

    overall_pnl = Decimal(0)
    total_fees = Decimal(0)
    number_of_trades = 0
    liquidation_count = 0
    slippage = Decimal(0)
    pnl_history: List[PnlPoint] = []
    per_bar_returns: List[Decimal] = []
    window_results: List[WindowResult] = []
    last_result: Optional[OptimizationResult] = None

    for step_index in range(steps):
        interval_start = start_ms + step_index * update_ms
        interval_end = end_ms if step_index == steps - 1 else start_ms + (step_index + 1) * update_ms
        window_end = interval_start
        window_start = max(earliest_ms, window_end - window_ms)
        if window_end <= window_start:
            raise InputError("Optimization window is empty")

        def objective(candidate: Candidate) -> float:
            warmup = compute_warmup_bars(signal_params, candidate.trailing_atr_length)
            warmup_start = max(0, window_start - warmup * ONE_MINUTE_MS)
            candles = slice_candles(frame, warmup_start, window_end)
            if slice_candles(candles, window_start, window_end).empty:
                raise InputError(
                    f"No candles between {to_iso(window_start)} and {to_iso(window_end)} for optimisation"
                )
            args = _args_for(template, candles, candidate, window_start, window_end, by_open_time)
            return float(run_backtest(args).total_pnl)

        LOGGER.info(
            "Walk-forward step %d/%d: fitting %s -> %s",
            step_index + 1,
            steps,
            to_iso(window_start),
            to_iso(window_end),
        )
        fit_started = time.perf_counter()
        result = _optimize_window(objective, settings, rng, step_index)
        fit_seconds = time.perf_counter() - fit_started
        last_result = result

        best = result.best_params
        warmup = compute_warmup_bars(signal_params, best.trailing_atr_length)
        interval_candles = slice_candles(frame, max(0, interval_start - warmup * ONE_MINUTE_MS), interval_end)
        if slice_candles(interval_candles, interval_start, interval_end).empty:
            raise InputError("No candles available for interval simulation")
        summary = run_backtest(
            _args_for(template, interval_candles, best, interval_start, interval_end, by_open_time)
        )

        offset = overall_pnl
        pnl_history.extend(replace(point, total_pnl=point.total_pnl + offset) for point in summary.pnl_history)
        overall_pnl += summary.total_pnl
        total_fees += summary.total_fees_paid
        number_of_trades += summary.number_of_trades
        liquidation_count += summary.liquidation_count
        slippage += summary.slippage_accumulated
        per_bar_returns.extend(summary.per_bar_returns)

        window_results.append(
            WindowResult(
                step_index=step_index,
                window_start_time=to_iso(window_start),
                window_end_time=to_iso(window_end),
                interval_start_time=to_iso(interval_start),
                interval_end_time=to_iso(interval_end),
                best_params=best,
                best_value=result.best_value,
                evaluation_count=len(result.history),
                history=[{"params": h.params.to_dict(), "value": h.value} for h in result.history],
                interval_summary=summary,
                fit_seconds=fit_seconds,
            )
        )
        LOGGER.info(
            "Walk-forward step %d: length=%d mult=%.4f interval pnl=%s",
            step_index + 1,
            best.trailing_atr_length,
            best.trail_multiplier,
            summary.total_pnl,
        )

    cfg = template.strategy
    margin = to_decimal(cfg.margin)
    daily, yearly, apy = projections(overall_pnl, duration_parts(start_ms, end_ms)[0], margin)
    overall = BacktestRunSummary(
        symbol=template.symbol,
        interval=template.interval,
        requested_start_time=to_iso(start_ms),
        requested_end_time=to_iso(end_ms),
        actual_start_time=to_iso(start_ms),
        actual_end_time=to_iso(end_ms),
        candle_count=candle_count,
        duration=format_duration(start_ms, end_ms),
        margin=margin,
        leverage=to_decimal(cfg.leverage),
        tick_size=resolve_tick_size(cfg.tick_size, cfg.price_precision),
        price_precision=int(cfg.price_precision),
        number_of_trades=number_of_trades,
        liquidation_count=liquidation_count,
        fee_rate=to_decimal(cfg.fee_rate),
        total_fees_paid=total_fees,
        total_pnl=overall_pnl,
        pnl_history=pnl_history,
        per_bar_returns=per_bar_returns,
        daily_pnl=daily,
        projected_yearly_pnl=yearly,
        apy_percent=apy,
        sharpe_ratio=sharpe_ratio(per_bar_returns),
        slippage_accumulated=slippage,
    )

    return WalkForwardResult(
        window_results=window_results,
        final_params=last_result.best_params if last_result else None,
        best_value=last_result.best_value if last_result else 0.0,
        overall=overall,
        candle_count=candle_count,
    )


__all__ = [
    "WalkForwardResult",
    "WalkForwardSettings",
    "WindowResult",
    "compute_warmup_bars",
    "fetch_start_ms",
    "run_walk_forward",
]
