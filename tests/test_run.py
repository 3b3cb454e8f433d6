import json
import logging

import pytest

pytest.importorskip("ccxt")

from datafeed.candles import to_iso  # noqa: E402
from tuning import run  # noqa: E402

BASE_MS = 1_704_067_200_000
MINUTE = 60_000

CONFIG = """
symbol: ethusdt
trailing:
  trailing_atr_length: 3
  trail_multiplier: 2.0
strategy:
  price_precision: 2
signal:
  N: 5
  atr_len: 3
  K: 2
  ema_period: 3
optimizer:
  total_evaluations: 3
  initial_random: 2
  num_candidates: 10
  seed: 1
  bounds:
    trailing_atr_length: {min: 3, max: 6}
    trail_multiplier: {min: 1.0, max: 3.0}
grid:
  low: 1.0
  high: 2.0
  step: 1.0
  executor: inline
"""


@pytest.fixture()
def workspace(tmp_path):
    rows = ["timestamp,open,high,low,close,volume"]
    for i in range(60):
        price = 100.0 if i < 40 else 100.0 + (i - 39)
        rows.append(f"{to_iso(BASE_MS + i * MINUTE)},{price},{price},{price},{price},1")
    (tmp_path / "candles.csv").write_text("\n".join(rows) + "\n", encoding="utf-8")
    (tmp_path / "run.yaml").write_text(CONFIG, encoding="utf-8")
    return tmp_path


def _main(workspace, capsys, *extra):
    run.main([*extra, "--config", str(workspace / "run.yaml"), "--csv", str(workspace / "candles.csv")])
    return json.loads(capsys.readouterr().out)


def test_backtest_command_prints_summary_and_trace(workspace, capsys):
    payload = _main(workspace, capsys, "backtest", "--trace", str(workspace / "trace.csv"))

    assert payload["symbol"] == "ETHUSDT"
    assert payload["candle_count"] == 60
    assert payload["number_of_trades"] == 2
    assert payload["pnl_history"][0]["exit_reason"] == "end"
    assert (workspace / "trace.csv").read_text(encoding="utf-8").count("\n") == 61


def test_optimize_command_seeds_current_parameters(workspace, capsys):
    payload = _main(workspace, capsys, "optimize", "--seed-current")

    assert len(payload["history"]) == 3
    assert payload["history"][0]["params"] == {"trailing_atr_length": 3, "trail_multiplier": 2.0}


def test_grid_command_lists_every_multiplier(workspace, capsys):
    payload = _main(workspace, capsys, "grid")

    assert [r["trail_multiplier"] for r in payload["results"]] == [1.0, 2.0]
    assert payload["best_trail_multiplier"] in (1.0, 2.0)


def test_log_dir_receives_a_run_log(workspace, capsys):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        _main(workspace, capsys, "backtest", "--log-dir", str(workspace / "logs"))
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()

    assert (workspace / "logs" / "run.log").exists()


def test_failures_are_logged_and_reraised(workspace, caplog):
    (workspace / "run.yaml").write_text(CONFIG + "\nstart: '2024-01-01T00:30:00Z'\nend: '2024-01-01T00:10:00Z'\n",
                                        encoding="utf-8")

    with pytest.raises(Exception):
        run.main(["walk-forward", "--config", str(workspace / "run.yaml"), "--csv", str(workspace / "candles.csv")])
    assert "walk-forward failed" in caplog.text
