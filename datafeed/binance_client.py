"""Binance candle and symbol-metadata access over ccxt, with a simple retry loop."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

import ccxt  # type: ignore

from breakout.ticks import tick_size_from_precision

from .candles import ONE_MINUTE_MS, Candle, normalize_candles

LOGGER = logging.getLogger(__name__)

_TIMEFRAME_MINUTES = {
    "1m": 1,
    "3m": 3,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "6h": 360,
    "8h": 480,
    "12h": 720,
    "1d": 1440,
}
_MINUTES_TO_TIMEFRAME = {minutes: tf for tf, minutes in _TIMEFRAME_MINUTES.items()}


def normalize_timeframe(timeframe: str) -> str:
    """Map ``"1H"``, ``"60"`` or ``"60m"`` onto the Binance spelling ``"1h"``."""

    tf = str(timeframe).strip().lower()
    if not tf:
        raise ValueError("Timeframe must be a non-empty string")
    if tf in _TIMEFRAME_MINUTES:
        return tf
    digits = tf[:-1] if tf.endswith("m") else tf
    if digits.isdigit() and int(digits) in _MINUTES_TO_TIMEFRAME:
        return _MINUTES_TO_TIMEFRAME[int(digits)]
    raise ValueError(f"Unsupported timeframe: {timeframe}. Allowed values: {sorted(_TIMEFRAME_MINUTES)}")


def interval_ms(timeframe: str) -> int:
    return _TIMEFRAME_MINUTES[normalize_timeframe(timeframe)] * ONE_MINUTE_MS


def _parse_symbol(symbol: str) -> str:
    if symbol.upper().startswith("BINANCE:"):
        return symbol.split(":", 1)[1]
    return symbol


def _precision_to_decimals(value: Any) -> int:
    """ccxt reports precision either as decimal places or as a tick size."""

    number = Decimal(str(value))
    if number >= 1 and number == number.to_integral_value():
        return int(number)
    return max(0, -number.normalize().as_tuple().exponent)


@dataclass
class BinanceClient:
    """Wrapper around ``ccxt.binanceusdm`` (or spot ``ccxt.binance``)."""

    futures: bool = True
    max_retries: int = 5
    retry_wait: float = 2.0
    rate_limit: float = 0.2
    page_limit: int = 1000
    exchange: Optional[Any] = None
    _markets: Optional[Dict[str, Any]] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.exchange is None:
            exchange_class = ccxt.binanceusdm if self.futures else ccxt.binance
            self.exchange = exchange_class({"enableRateLimit": True})

    def _fetch_page(self, market_symbol: str, timeframe: str, since: int) -> List[List[float]]:
        for attempt in range(1, self.max_retries + 1):
            try:
                return self.exchange.fetch_ohlcv(market_symbol, timeframe=timeframe, since=since, limit=self.page_limit)
            except ccxt.NetworkError as err:  # pragma: no cover - network failure path
                LOGGER.warning("Network error from Binance: %s (attempt %d)", err, attempt)
                time.sleep(self.retry_wait * attempt)
            except ccxt.ExchangeError as err:
                LOGGER.error("Exchange error from Binance: %s", err)
                raise
        raise RuntimeError("Exceeded maximum retries while fetching candles")

    def fetch_candles(self, symbol: str, start_ms: int, end_ms: int, interval: str = "1m") -> List[Candle]:
        """Candles with ``start_ms <= open_time < end_ms``, normalised and de-duplicated."""

        timeframe = normalize_timeframe(interval)
        step_ms = interval_ms(timeframe)
        market_symbol = _parse_symbol(symbol)
        since = int(start_ms)
        rows: List[List[float]] = []

        while since < end_ms:
            batch = self._fetch_page(market_symbol, timeframe, since)
            if not batch:
                break
            rows.extend(batch)
            next_since = int(batch[-1][0]) + step_ms
            if next_since <= since:
                break
            since = next_since
            if self.rate_limit:
                time.sleep(self.rate_limit)

        candles = [c for c in normalize_candles(rows, step_ms) if start_ms <= c.open_time < end_ms]
        LOGGER.info("Fetched %d %s candles for %s", len(candles), timeframe, market_symbol)
        return candles

    def load_markets(self) -> Dict[str, Any]:
        if self._markets is None:
            self._markets = self.exchange.load_markets()
        return self._markets

    def price_precision(self, symbol: str) -> int:
        market_symbol = _parse_symbol(symbol)
        markets = self.load_markets()
        market = markets.get(market_symbol)
        if market is None:
            market = next((m for m in markets.values() if m.get("id") == market_symbol), None)
        if market is None:
            raise ValueError(f"Unknown Binance symbol: {symbol}")
        return _precision_to_decimals(market["precision"]["price"])

    def tick_size(self, symbol: str) -> Decimal:
        return tick_size_from_precision(self.price_precision(symbol))


__all__ = [
    "BinanceClient",
    "interval_ms",
    "normalize_timeframe",
]
