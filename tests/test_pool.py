import os

import pytest

from breakout.errors import JobFailure, WorkerFailure
from breakout.schema import BacktestArgs, SignalParams, StrategyConfig
from datafeed.candles import Candle
from tuning import pool
from tuning.pool import assign_round_robin, grid_search_trail_multiplier, run_batch
from tuning.worker import run_batch_jobs

BASE_MS = 1_704_067_200_000
MINUTE = 60_000


def _args():
    bars = [(100.0, 100.0, 100.0, 100.0)] * 30 + [(100.0, 101.0, 100.0, 101.0)] + [(101.0, 104.0, 100.0, 103.0)] * 5
    candles = [
        Candle(BASE_MS + i * MINUTE, BASE_MS + (i + 1) * MINUTE, o, h, l, c, 1.0)
        for i, (o, h, l, c) in enumerate(bars)
    ]
    return BacktestArgs(
        candles=candles,
        trailing_atr_length=3,
        highest_lookback=3,
        trail_multiplier=2.0,
        signal_params=SignalParams(N=5, atr_len=3, K=2, ema_period=3),
        strategy=StrategyConfig(price_precision=4),
    )


def _crash(request):
    os._exit(3)


def test_assign_round_robin():
    assert assign_round_robin(5, 2) == [[0, 2, 4], [1, 3]]
    assert assign_round_robin(2, 3) == [[0], [1], []]


def test_worker_reports_results_and_errors():
    response = run_batch_jobs(
        {
            "shared_args": _args(),
            "candidate_field": "trailing_atr_length",
            "jobs": [{"job_id": 0, "candidate_value": 3}, {"job_id": 1, "candidate_value": 0}],
        }
    )

    assert [item["job_id"] for item in response["results"]] == [0]
    assert response["errors"][0]["job_id"] == 1
    assert "trailing_atr_length" in response["errors"][0]["error_message"]


def test_inline_results_are_indexed_by_job_id():
    results = run_batch(_args(), [1.0, 2.0, 3.0, 4.0], max_workers=3, executor="inline")

    assert [r.job_id for r in results] == [0, 1, 2, 3]
    assert [r.candidate_value for r in results] == [1.0, 2.0, 3.0, 4.0]


def test_empty_batch_returns_nothing():
    assert run_batch(_args(), [], executor="inline") == []


def test_unknown_executor_is_rejected():
    with pytest.raises(ValueError):
        run_batch(_args(), [1.0], executor="threads")


def test_job_errors_are_collected_in_job_order():
    with pytest.raises(JobFailure) as excinfo:
        run_batch(_args(), [3, 0, -1], candidate_field="trailing_atr_length", max_workers=2, executor="inline")

    assert excinfo.value.count == 2
    assert [failure.job_id for failure in excinfo.value.failures] == [1, 2]


def test_process_pool_matches_inline_execution():
    values = [1.0, 2.5, 4.0]

    inline = run_batch(_args(), values, max_workers=2, executor="inline")
    processes = run_batch(_args(), values, max_workers=2, executor="process")

    assert processes == inline


def test_crashed_worker_raises_worker_failure(monkeypatch):
    monkeypatch.setattr(pool, "run_batch_jobs", _crash)

    with pytest.raises(WorkerFailure):
        run_batch(_args(), [1.0, 2.0], max_workers=2, executor="process")


def test_grid_search_keeps_first_value_on_ties():
    flat = BacktestArgs(
        candles=[Candle(BASE_MS + i * MINUTE, BASE_MS + (i + 1) * MINUTE, 1.0, 1.0, 1.0, 1.0, 1.0) for i in range(20)],
        signal_params=SignalParams(N=5, atr_len=3, K=2, ema_period=3),
    )

    result = grid_search_trail_multiplier(flat, 1.0, 3.0, 1.0, executor="inline")

    assert result.best_value == 1.0
    assert result.best_pnl == 0
    assert [r.candidate_value for r in result.results] == [1.0, 2.0, 3.0]


def test_grid_search_picks_the_highest_pnl():
    result = grid_search_trail_multiplier(_args(), 1.0, 4.0, 1.0, max_workers=2, executor="inline")

    assert result.best_pnl == max(r.total_pnl for r in result.results)
    first_best = next(r for r in result.results if r.total_pnl == result.best_pnl)
    assert result.best_value == first_best.candidate_value
