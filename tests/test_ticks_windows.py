import random
from decimal import Decimal

import pytest

from breakout.errors import InputError
from breakout.ticks import (
    quantize_to_tick,
    resolve_tick_size,
    round_to_precision,
    tick_size_from_precision,
    to_decimal,
)
from breakout.windows import RollingExtrema, RollingMean

TICK = Decimal("0.0001")


def test_to_decimal_avoids_float_noise():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(3) == Decimal(3)
    assert to_decimal("1.25") == Decimal("1.25")


@pytest.mark.parametrize(
    "mode, expected",
    [("up", "100.0001"), ("down", "100.0000"), ("nearest", "100.0001")],
)
def test_quantize_modes_on_half_tick(mode, expected):
    assert quantize_to_tick(Decimal("100.00005"), TICK, mode) == Decimal(expected)


def test_quantize_floor_and_ceiling_for_negative_values():
    assert quantize_to_tick(Decimal("-1.00005"), TICK, "down") == Decimal("-1.0001")
    assert quantize_to_tick(Decimal("-1.00005"), TICK, "up") == Decimal("-1.0000")


def test_quantize_rejects_unknown_mode():
    with pytest.raises(ValueError):
        quantize_to_tick(Decimal("1"), TICK, "sideways")


def test_tick_size_from_precision():
    assert tick_size_from_precision(4) == TICK
    assert tick_size_from_precision(0) == Decimal(1)
    assert round_to_precision(Decimal("123.456"), 1, "down") == Decimal("123.4")


@pytest.mark.parametrize("tick", [0, -0.5, float("nan"), float("inf")])
def test_resolve_tick_size_rejects_invalid(tick):
    with pytest.raises(InputError):
        resolve_tick_size(tick, 4)


def test_resolve_tick_size_prefers_explicit_tick():
    assert resolve_tick_size(0.5, 4) == Decimal("0.5")
    assert resolve_tick_size(None, 2) == Decimal("0.01")


def test_rolling_mean_waits_until_full():
    window = RollingMean(3)
    window.push(Decimal(1))
    window.push(Decimal(2))
    assert window.value is None

    window.push(Decimal(3))
    assert window.value == Decimal(2)

    window.push(Decimal(9))
    assert window.value == Decimal(14) / 3


def test_rolling_extrema_matches_naive_scan():
    rng = random.Random(11)
    window = RollingExtrema(7)
    seen = []
    for _ in range(300):
        value = Decimal(rng.randint(-50, 50))
        window.push(value)
        seen.append(value)
        tail = seen[-7:]
        assert window.max == max(tail)
        assert window.min == min(tail)
        assert len(window) == len(tail)


def test_rolling_extrema_empty():
    window = RollingExtrema(3)
    assert window.max is None
    assert window.min is None
