"""Fixed-length rolling windows used by the per-bar trailing-stop bookkeeping."""
from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import Deque, List, Optional, Tuple


class RollingMean:
    """Ring-sum window; :attr:`value` is the mean once ``length`` items were pushed."""

    def __init__(self, length: int) -> None:
        if length <= 0:
            raise ValueError("RollingMean length must be positive")
        self.length = length
        self._items: List[Decimal] = []
        self._head = 0
        self._sum = Decimal(0)

    def push(self, value: Decimal) -> None:
        if len(self._items) < self.length:
            self._items.append(value)
        else:
            self._sum -= self._items[self._head]
            self._items[self._head] = value
            self._head = (self._head + 1) % self.length
        self._sum += value

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.length

    @property
    def value(self) -> Optional[Decimal]:
        if not self.is_full:
            return None
        return self._sum / self.length


class RollingExtrema:
    """Sliding max/min over the last ``window`` pushes.

    Two monotonic deques of ``(seq, value)``; entries expire by age
    (``seq <= current_seq - window``), never by value.
    """

    def __init__(self, window: int) -> None:
        if window <= 0:
            raise ValueError("RollingExtrema window must be positive")
        self.window = window
        self._seq = 0
        self._count = 0
        self._max: Deque[Tuple[int, Decimal]] = deque()
        self._min: Deque[Tuple[int, Decimal]] = deque()

    def push(self, value: Decimal) -> None:
        self._seq += 1
        self._count = min(self._count + 1, self.window)

        while self._max and self._max[-1][1] <= value:
            self._max.pop()
        self._max.append((self._seq, value))

        while self._min and self._min[-1][1] >= value:
            self._min.pop()
        self._min.append((self._seq, value))

        expire = self._seq - self.window
        while self._max and self._max[0][0] <= expire:
            self._max.popleft()
        while self._min and self._min[0][0] <= expire:
            self._min.popleft()

    def __len__(self) -> int:
        return self._count

    @property
    def max(self) -> Optional[Decimal]:
        return self._max[0][1] if self._max else None

    @property
    def min(self) -> Optional[Decimal]:
        return self._min[0][1] if self._min else None


__all__ = ["RollingExtrema", "RollingMean"]
