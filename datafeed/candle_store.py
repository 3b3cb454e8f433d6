"""Bounded, lock-guarded candle buffer shared by the optimiser and the signal watcher."""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

from breakout.errors import InsufficientDataError

from .candles import ONE_MINUTE_MS, Candle, RawCandle, normalize_candles, to_iso

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CandleFetcher = Callable[[str, int, int], Iterable[RawCandle]]

# Cold starts fetch a few extra minutes so exchange-side gaps do not leave the buffer short.
_COLD_START_PADDING = 3


class RingBuffer(Generic[T]):
    """Fixed-size ring buffer. ``push`` overwrites the oldest item in O(1)."""

    def __init__(self, capacity: int, items: Sequence[T]) -> None:
        if capacity <= 0:
            raise ValueError("RingBuffer capacity must be positive")
        if len(items) < capacity:
            raise InsufficientDataError(
                f"RingBuffer needs at least {capacity} items, got {len(items)}"
            )
        self._capacity = capacity
        self._buffer: List[T] = list(items[-capacity:])
        self._write_index = 0

    @classmethod
    def with_capacity(cls, capacity: int, items: Sequence[T]) -> "RingBuffer[T]":
        return cls(capacity, items)

    def push(self, item: T) -> None:
        self._buffer[self._write_index] = item
        self._write_index = (self._write_index + 1) % self._capacity

    def to_list(self) -> List[T]:
        return self._buffer[self._write_index :] + self._buffer[: self._write_index]

    def latest(self) -> T:
        return self._buffer[self._write_index - 1]

    def __len__(self) -> int:
        return self._capacity


class CandleStore:
    """Central 1m candle buffer.

    Every query and mutation runs under one exclusive lock, so the "is the latest
    candle fresh enough" decision in :meth:`ensure_populated` and the append that
    follows cannot interleave with another caller's refresh.
    """

    def __init__(
        self,
        symbol: str,
        capacity: int,
        fetch: CandleFetcher,
        *,
        interval_ms: int = ONE_MINUTE_MS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("CandleStore capacity must be positive")
        self.symbol = symbol
        self.capacity = int(capacity)
        self.interval_ms = int(interval_ms)
        self._fetch = fetch
        self._clock = clock or (lambda: time.time() * 1000)
        self._buffer: Optional[RingBuffer[Candle]] = None
        self._lock = threading.Lock()

    @property
    def is_populated(self) -> bool:
        return self._buffer is not None

    def ensure_populated(self) -> None:
        """Cold-fill the buffer or append candles newer than the latest one."""

        with self._lock:
            now_ms = int(self._clock())
            current_minute = now_ms // self.interval_ms * self.interval_ms
            previous_minute = current_minute - self.interval_ms

            latest_open: Optional[int] = None
            if self._buffer is not None:
                latest_open = self._buffer.latest().open_time
                if latest_open in (current_minute, previous_minute):
                    return
                start_ms = latest_open
            else:
                start_ms = current_minute - (self.capacity + _COLD_START_PADDING) * self.interval_ms

            candles = normalize_candles(self._fetch(self.symbol, start_ms, current_minute), self.interval_ms)
            if candles:
                LOGGER.info(
                    "Fetched %d candles for %s (%s -> %s)",
                    len(candles),
                    self.symbol,
                    to_iso(candles[0].open_time),
                    to_iso(candles[-1].open_time),
                )

            if latest_open is not None and self._buffer is not None:
                for candle in candles:
                    if candle.open_time > latest_open:
                        self._buffer.push(candle)
                return

            if len(candles) < self.capacity:
                raise InsufficientDataError(
                    f"Need at least {self.capacity} candles for initial population of "
                    f"{self.symbol}, got {len(candles)}"
                )
            self._buffer = RingBuffer.with_capacity(self.capacity, candles)

    def push_candle(self, candle: Candle) -> None:
        with self._lock:
            self._require_buffer().push(candle)

    def get_candles(self, start_ms: int, end_ms: int) -> List[Candle]:
        """Buffered candles with ``start_ms <= open_time < end_ms``."""

        with self._lock:
            return [
                candle
                for candle in self._require_buffer().to_list()
                if start_ms <= candle.open_time < end_ms
            ]

    def to_list(self) -> List[Candle]:
        with self._lock:
            return self._require_buffer().to_list()

    def _require_buffer(self) -> RingBuffer[Candle]:
        if self._buffer is None:
            raise RuntimeError("Candle buffer not populated. Call ensure_populated() first.")
        return self._buffer


__all__ = ["CandleFetcher", "CandleStore", "RingBuffer"]
