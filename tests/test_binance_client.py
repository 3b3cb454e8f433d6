from decimal import Decimal

import pytest

ccxt = pytest.importorskip("ccxt")

from datafeed.binance_client import (  # noqa: E402
    BinanceClient,
    _precision_to_decimals,
    interval_ms,
    normalize_timeframe,
)

BASE_MS = 1_704_067_200_000
MINUTE = 60_000


class _FakeExchange:
    def __init__(self, bars=2500, error=None):
        self.rows = [[BASE_MS + i * MINUTE, 1.0, 2.0, 0.5, 1.5, 3.0] for i in range(bars)]
        self.error = error
        self.calls = []
        self.market_loads = 0

    def fetch_ohlcv(self, symbol, timeframe="1m", since=None, limit=None):
        self.calls.append((symbol, timeframe, since, limit))
        if self.error is not None:
            raise self.error
        return [row for row in self.rows if row[0] >= since][:limit]

    def load_markets(self):
        self.market_loads += 1
        return {
            "BTC/USDT:USDT": {"id": "BTCUSDT", "precision": {"price": 0.1}},
            "ETH/USDT:USDT": {"id": "ETHUSDT", "precision": {"price": 2}},
        }


def _client(exchange):
    return BinanceClient(exchange=exchange, rate_limit=0)


@pytest.mark.parametrize(
    "raw, expected",
    [("1m", "1m"), ("1H", "1h"), ("60", "1h"), ("15m", "15m"), ("1440", "1d")],
)
def test_normalize_timeframe(raw, expected):
    assert normalize_timeframe(raw) == expected


def test_normalize_timeframe_rejects_unknown_values():
    with pytest.raises(ValueError):
        normalize_timeframe("7m")
    with pytest.raises(ValueError):
        normalize_timeframe("")


def test_interval_ms():
    assert interval_ms("5m") == 5 * MINUTE
    assert interval_ms("4h") == 240 * MINUTE


@pytest.mark.parametrize("raw, expected", [(0.01, 2), (2, 2), ("0.10", 1), (1e-05, 5), (1, 1)])
def test_precision_to_decimals(raw, expected):
    assert _precision_to_decimals(raw) == expected


def test_fetch_candles_pages_and_filters_half_open_range():
    exchange = _FakeExchange()

    candles = _client(exchange).fetch_candles("BINANCE:BTCUSDT", BASE_MS + 10 * MINUTE, BASE_MS + 2100 * MINUTE)

    assert len(candles) == 2090
    assert candles[0].open_time == BASE_MS + 10 * MINUTE
    assert candles[-1].open_time == BASE_MS + 2099 * MINUTE
    assert [call[2] for call in exchange.calls] == [
        BASE_MS + 10 * MINUTE,
        BASE_MS + 1010 * MINUTE,
        BASE_MS + 2010 * MINUTE,
    ]
    assert all(call[0] == "BTCUSDT" for call in exchange.calls)


def test_fetch_candles_stops_when_exchange_runs_dry():
    exchange = _FakeExchange(bars=50)

    candles = _client(exchange).fetch_candles("BTCUSDT", BASE_MS, BASE_MS + 500 * MINUTE)

    assert len(candles) == 50
    assert len(exchange.calls) == 2


def test_exchange_errors_propagate():
    exchange = _FakeExchange(error=ccxt.ExchangeError("bad symbol"))

    with pytest.raises(ccxt.ExchangeError):
        _client(exchange).fetch_candles("BTCUSDT", BASE_MS, BASE_MS + MINUTE)
    assert len(exchange.calls) == 1


def test_price_precision_and_tick_size_from_markets():
    exchange = _FakeExchange()
    client = _client(exchange)

    assert client.price_precision("BTCUSDT") == 1
    assert client.price_precision("ETH/USDT:USDT") == 2
    assert client.tick_size("BINANCE:BTCUSDT") == Decimal("0.1")
    assert exchange.market_loads == 1
    with pytest.raises(ValueError):
        client.price_precision("DOGEUSDT")
