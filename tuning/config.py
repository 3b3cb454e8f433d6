"""YAML run configuration."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from breakout.engine import parse_time_ms
from breakout.schema import BacktestArgs, SignalParams, StrategyConfig

from .search_spaces import Bounds
from .walk_forward import WalkForwardSettings


def load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


@dataclass(frozen=True)
class OptimizerConfig:
    bounds: Bounds = field(default_factory=Bounds)
    total_evaluations: int = 40
    initial_random: int = 8
    num_candidates: int = 200
    kappa: float = 2.0
    method: str = "gp"
    seed: Optional[int] = None
    verbose: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OptimizerConfig":
        opt = data if isinstance(data, dict) else {}
        seed = opt.get("seed")
        method = str(opt.get("method", "gp")).lower()
        if method not in {"gp", "tpe"}:
            raise ValueError(f"optimizer.method must be 'gp' or 'tpe', got '{method}'")
        return cls(
            bounds=Bounds.from_dict(opt.get("bounds")),
            total_evaluations=int(opt.get("total_evaluations", 40)),
            initial_random=int(opt.get("initial_random", 8)),
            num_candidates=int(opt.get("num_candidates", 200)),
            kappa=float(opt.get("kappa", 2.0)),
            method=method,
            seed=None if seed is None else int(seed),
            verbose=bool(opt.get("verbose", False)),
        )


@dataclass(frozen=True)
class GridConfig:
    low: float = 1.0
    high: float = 20.0
    step: float = 0.5
    max_workers: Optional[int] = None
    executor: str = "process"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GridConfig":
        grid = data if isinstance(data, dict) else {}
        workers = grid.get("max_workers")
        return cls(
            low=float(grid.get("low", 1.0)),
            high=float(grid.get("high", 20.0)),
            step=float(grid.get("step", 0.5)),
            max_workers=None if workers is None else int(workers),
            executor=str(grid.get("executor", "process")),
        )


@dataclass(frozen=True)
class RunConfig:
    symbol: str
    interval: str
    start: Optional[str]
    end: Optional[str]
    futures: bool
    trailing_atr_length: int
    highest_lookback: Optional[int]
    trail_multiplier: float
    strategy: StrategyConfig
    signal: SignalParams
    optimizer: OptimizerConfig
    grid: GridConfig
    update_interval_minutes: int
    optimization_window_minutes: int

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "RunConfig":
        trailing = cfg.get("trailing", {}) if isinstance(cfg.get("trailing"), dict) else {}
        wf = cfg.get("walk_forward", {}) if isinstance(cfg.get("walk_forward"), dict) else {}
        lookback = trailing.get("highest_lookback")
        return cls(
            symbol=str(cfg.get("symbol", "BTCUSDT")).strip().upper(),
            interval=str(cfg.get("interval", "1m")),
            start=None if cfg.get("start") is None else str(cfg["start"]),
            end=None if cfg.get("end") is None else str(cfg["end"]),
            futures=bool(cfg.get("futures", True)),
            trailing_atr_length=int(trailing.get("trailing_atr_length", 14)),
            highest_lookback=None if lookback is None else int(lookback),
            trail_multiplier=float(trailing.get("trail_multiplier", 10.0)),
            strategy=StrategyConfig.from_dict(cfg.get("strategy")),
            signal=SignalParams.from_dict(cfg.get("signal")),
            optimizer=OptimizerConfig.from_dict(cfg.get("optimizer")),
            grid=GridConfig.from_dict(cfg.get("grid")),
            update_interval_minutes=int(wf.get("update_interval_minutes", 1440)),
            optimization_window_minutes=int(wf.get("optimization_window_minutes", 4320)),
        )

    @property
    def start_ms(self) -> Optional[int]:
        return parse_time_ms(self.start)

    @property
    def end_ms(self) -> Optional[int]:
        return parse_time_ms(self.end)

    def backtest_args(self, candles) -> BacktestArgs:
        return BacktestArgs(
            candles=candles,
            trailing_atr_length=self.trailing_atr_length,
            highest_lookback=self.highest_lookback or self.trailing_atr_length,
            trail_multiplier=self.trail_multiplier,
            signal_params=self.signal,
            strategy=self.strategy,
            symbol=self.symbol,
            interval=self.interval,
            requested_start_time=self.start,
            requested_end_time=self.end,
        )

    def walk_forward_settings(self) -> WalkForwardSettings:
        opt = self.optimizer
        return WalkForwardSettings(
            update_interval_minutes=self.update_interval_minutes,
            optimization_window_minutes=self.optimization_window_minutes,
            bounds=opt.bounds,
            total_evaluations=opt.total_evaluations,
            initial_random=opt.initial_random,
            num_candidates=opt.num_candidates,
            kappa=opt.kappa,
            method=opt.method,
            seed=opt.seed,
        )


__all__ = ["GridConfig", "OptimizerConfig", "RunConfig", "load_yaml"]
