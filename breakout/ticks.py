"""Fixed-point helpers: every price, fee and P&L value in the engine is a ``Decimal``."""
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .errors import InputError

Number = Union[Decimal, float, int, str]

ROUNDING_MODES = {
    "up": ROUND_CEILING,
    "down": ROUND_FLOOR,
    "nearest": ROUND_HALF_UP,
}


def to_decimal(value: Number) -> Decimal:
    """Convert without picking up binary float noise (``0.1`` -> ``Decimal('0.1')``)."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def tick_size_from_precision(precision: int) -> Decimal:
    if int(precision) != precision or precision < 0:
        raise InputError(f"Price precision must be a non-negative integer, got {precision!r}")
    return Decimal(1).scaleb(-int(precision))


def resolve_tick_size(tick_size: Optional[Number], price_precision: int) -> Decimal:
    tick = tick_size_from_precision(price_precision) if tick_size is None else to_decimal(tick_size)
    if not tick.is_finite() or tick <= 0:
        raise InputError(f"Tick size must be a positive finite number, got {tick_size!r}")
    return tick


def quantize_to_tick(price: Decimal, tick: Decimal, mode: str = "nearest") -> Decimal:
    """Snap ``price`` onto the tick grid using ``up`` (ceiling), ``down`` (floor) or ``nearest``."""

    try:
        rounding = ROUNDING_MODES[mode]
    except KeyError as exc:
        raise ValueError(f"Unknown tick rounding mode: {mode}") from exc
    steps = (price / tick).to_integral_value(rounding=rounding)
    return steps * tick


def round_to_precision(price: Decimal, precision: int, mode: str = "nearest") -> Decimal:
    return quantize_to_tick(price, tick_size_from_precision(precision), mode)


__all__ = [
    "Number",
    "ROUNDING_MODES",
    "quantize_to_tick",
    "resolve_tick_size",
    "round_to_precision",
    "tick_size_from_precision",
    "to_decimal",
]
