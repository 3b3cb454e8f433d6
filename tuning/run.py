"""Command line entry point: ``python -m tuning.run <command> --config config/default.yaml``."""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from breakout.engine import run_backtest, run_backtest_with_trace
from breakout.errors import InputError
from datafeed.binance_client import BinanceClient, interval_ms
from datafeed.candles import candles_to_frame, load_candles_csv, slice_candles

from .bayes import optimize
from .config import RunConfig, load_yaml
from .pool import grid_search_trail_multiplier
from .search_spaces import Candidate
from .tpe import optimize_tpe
from .walk_forward import compute_warmup_bars, fetch_start_ms, run_walk_forward

LOGGER = logging.getLogger("tuning")

COMMANDS = ("backtest", "optimize", "grid", "walk-forward")


def _configure_logging(log_dir: Optional[Path], verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="[%(levelname)s] %(message)s")
    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / "run.log", mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logging.getLogger().addHandler(handler)


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _warmup_start(cfg: RunConfig, command: str, start_ms: int) -> int:
    if command == "backtest":
        bars = compute_warmup_bars(cfg.signal, cfg.trailing_atr_length, cfg.highest_lookback)
        return max(0, start_ms - bars * interval_ms(cfg.interval))
    return fetch_start_ms(start_ms, cfg.signal, cfg.optimizer.bounds)


def _load_frame(args: argparse.Namespace, cfg: RunConfig, raw_cfg: Dict[str, Any]) -> Tuple[pd.DataFrame, RunConfig]:
    """Return ``(frame, cfg)``; ``cfg`` may pick up the exchange price precision."""

    start_ms, end_ms = cfg.start_ms, cfg.end_ms
    if args.csv is not None:
        frame = load_candles_csv(args.csv, interval_ms(cfg.interval))
        if start_ms is not None:
            frame = slice_candles(frame, _warmup_start(cfg, args.command, start_ms), end_ms or 2**62)
        elif end_ms is not None:
            frame = slice_candles(frame, 0, end_ms)
        return frame, cfg

    if start_ms is None or end_ms is None:
        raise InputError("start and end are required when fetching candles from Binance")
    client = BinanceClient(futures=cfg.futures)
    candles = client.fetch_candles(
        cfg.symbol,
        _warmup_start(cfg, args.command, start_ms),
        end_ms + interval_ms(cfg.interval),
        cfg.interval,
    )
    strategy_raw = raw_cfg.get("strategy") if isinstance(raw_cfg.get("strategy"), dict) else {}
    if strategy_raw.get("price_precision") is None and strategy_raw.get("tick_size") is None:
        precision = client.price_precision(cfg.symbol)
        LOGGER.info("Using exchange price precision %d for %s", precision, cfg.symbol)
        cfg = replace(cfg, strategy=replace(cfg.strategy, price_precision=precision))
    return candles_to_frame(candles), cfg


def _backtest_frame(frame: pd.DataFrame, cfg: RunConfig) -> pd.DataFrame:
    if cfg.end_ms is None:
        return frame
    return slice_candles(frame, 0, cfg.end_ms)


def _cmd_backtest(args: argparse.Namespace, cfg: RunConfig, frame: pd.DataFrame) -> Dict[str, Any]:
    summary, trace = run_backtest_with_trace(cfg.backtest_args(_backtest_frame(frame, cfg)))
    if args.trace is not None:
        pd.DataFrame([asdict(point) for point in trace]).to_csv(args.trace, index=False)
        LOGGER.info("Wrote %d trace rows to %s", len(trace), args.trace)
    return summary.to_dict()


def _cmd_optimize(args: argparse.Namespace, cfg: RunConfig, frame: pd.DataFrame) -> Dict[str, Any]:
    base = cfg.backtest_args(_backtest_frame(frame, cfg))
    opt = cfg.optimizer

    def objective(candidate: Candidate) -> float:
        run_args = replace(
            base,
            trailing_atr_length=candidate.trailing_atr_length,
            highest_lookback=candidate.trailing_atr_length,
            trail_multiplier=candidate.trail_multiplier,
        )
        return float(run_backtest(run_args).total_pnl)

    seed_params = Candidate(cfg.trailing_atr_length, cfg.trail_multiplier) if args.seed_current else None
    if opt.method == "tpe":
        result = optimize_tpe(
            objective,
            opt.bounds,
            total_evaluations=opt.total_evaluations,
            initial_random=opt.initial_random,
            seed_params=seed_params,
            seed=opt.seed,
            verbose=opt.verbose,
        )
    else:
        result = optimize(
            objective,
            opt.bounds,
            total_evaluations=opt.total_evaluations,
            initial_random=opt.initial_random,
            num_candidates=opt.num_candidates,
            kappa=opt.kappa,
            seed_params=seed_params,
            rng=np.random.default_rng(opt.seed),
            verbose=opt.verbose,
        )
    return result.to_dict()


def _cmd_grid(args: argparse.Namespace, cfg: RunConfig, frame: pd.DataFrame) -> Dict[str, Any]:
    grid = cfg.grid
    result = grid_search_trail_multiplier(
        cfg.backtest_args(_backtest_frame(frame, cfg)),
        grid.low,
        grid.high,
        grid.step,
        max_workers=args.workers or grid.max_workers,
        executor=grid.executor,
    )
    return {
        "best_trail_multiplier": result.best_value,
        "best_total_pnl": str(result.best_pnl),
        "results": [
            {"job_id": r.job_id, "trail_multiplier": r.candidate_value, "total_pnl": str(r.total_pnl)}
            for r in result.results
        ],
    }


def _cmd_walk_forward(args: argparse.Namespace, cfg: RunConfig, frame: pd.DataFrame) -> Dict[str, Any]:
    if cfg.start_ms is None or cfg.end_ms is None:
        raise InputError("walk-forward needs both start and end")
    result = run_walk_forward(
        frame,
        cfg.start_ms,
        cfg.end_ms,
        cfg.backtest_args(frame),
        cfg.walk_forward_settings(),
    )
    return result.to_dict()


_HANDLERS = {
    "backtest": _cmd_backtest,
    "optimize": _cmd_optimize,
    "grid": _cmd_grid,
    "walk-forward": _cmd_walk_forward,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Breakout trailing-ATR backtests and parameter tuning")
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--config", type=Path, default=Path("config/default.yaml"))
    parser.add_argument("--csv", type=Path, help="Read 1m candles from CSV instead of Binance")
    parser.add_argument("--symbol", type=str, help="Override symbol")
    parser.add_argument("--start", type=str, help="Override start time (ISO8601)")
    parser.add_argument("--end", type=str, help="Override end time (ISO8601)")
    parser.add_argument("--workers", type=int, help="Override grid worker count")
    parser.add_argument("--trace", type=Path, help="backtest: write the per-bar trace to this CSV")
    parser.add_argument("--seed-current", action="store_true", help="optimize: evaluate the configured parameters first")
    parser.add_argument("--log-dir", type=Path, help="Also write logs to <log-dir>/run.log")
    parser.add_argument("--verbose", action="store_true")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def execute(args: argparse.Namespace) -> Dict[str, Any]:
    raw_cfg = load_yaml(args.config)
    if args.symbol:
        raw_cfg["symbol"] = args.symbol
    if args.start:
        raw_cfg["start"] = args.start
    if args.end:
        raw_cfg["end"] = args.end
    cfg = RunConfig.from_dict(raw_cfg)
    frame, cfg = _load_frame(args, cfg, raw_cfg)
    LOGGER.info("Loaded %d candles for %s", len(frame), cfg.symbol)
    return _HANDLERS[args.command](args, cfg, frame)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point for ``python -m tuning.run``."""

    args = parse_args(argv)
    _configure_logging(args.log_dir, args.verbose)
    try:
        payload = execute(args)
    except Exception:
        LOGGER.exception("%s failed", args.command)
        raise
    _print_json(payload)


if __name__ == "__main__":
    main()
