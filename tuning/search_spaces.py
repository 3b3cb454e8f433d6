"""Two-axis search space for ``(trailing_atr_length, trail_multiplier)``."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from breakout.errors import InputError

DEFAULT_LENGTH_BOUNDS = (10, 5000)
DEFAULT_MULTIPLIER_BOUNDS = (1.0, 50.0)


@dataclass(frozen=True)
class Candidate:
    trailing_atr_length: int
    trail_multiplier: float

    def as_point(self) -> Tuple[float, float]:
        return float(self.trailing_atr_length), float(self.trail_multiplier)

    def to_dict(self) -> Dict[str, Any]:
        return {"trailing_atr_length": self.trailing_atr_length, "trail_multiplier": self.trail_multiplier}


CandidateLike = Union[Candidate, Sequence[float], Dict[str, Any]]


@dataclass(frozen=True)
class Bounds:
    length_min: int = DEFAULT_LENGTH_BOUNDS[0]
    length_max: int = DEFAULT_LENGTH_BOUNDS[1]
    multiplier_min: float = DEFAULT_MULTIPLIER_BOUNDS[0]
    multiplier_max: float = DEFAULT_MULTIPLIER_BOUNDS[1]

    def __post_init__(self) -> None:
        if self.length_min > self.length_max:
            raise InputError(f"trailing_atr_length bounds are inverted: {self.length_min} > {self.length_max}")
        if self.multiplier_min > self.multiplier_max:
            raise InputError(
                f"trail_multiplier bounds are inverted: {self.multiplier_min} > {self.multiplier_max}"
            )
        if self.length_max < 1:
            raise InputError("trailing_atr_length upper bound must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Bounds":
        """Accept ``{"trailing_atr_length": {"min", "max"}, "trail_multiplier": {...}}``."""

        if not isinstance(data, dict):
            return cls()
        length = data.get("trailing_atr_length") or {}
        mult = data.get("trail_multiplier") or {}
        return cls(
            length_min=int(length.get("min", DEFAULT_LENGTH_BOUNDS[0])),
            length_max=int(length.get("max", DEFAULT_LENGTH_BOUNDS[1])),
            multiplier_min=float(mult.get("min", DEFAULT_MULTIPLIER_BOUNDS[0])),
            multiplier_max=float(mult.get("max", DEFAULT_MULTIPLIER_BOUNDS[1])),
        )


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _round_half_up(value: float) -> int:
    return int(np.floor(value + 0.5))


def to_candidate(raw: CandidateLike) -> Candidate:
    if isinstance(raw, Candidate):
        return raw
    if isinstance(raw, dict):
        return Candidate(raw["trailing_atr_length"], raw["trail_multiplier"])
    length, mult = raw
    return Candidate(length, mult)  # type: ignore[arg-type]


def normalize_candidate(raw: CandidateLike, bounds: Bounds) -> Candidate:
    """Round the length to an integer >= 1 and clamp both axes into ``bounds``."""

    candidate = to_candidate(raw)
    length = max(1, _round_half_up(float(candidate.trailing_atr_length)))
    length = int(_clamp(length, bounds.length_min, bounds.length_max))
    mult = float(_clamp(float(candidate.trail_multiplier), bounds.multiplier_min, bounds.multiplier_max))
    return Candidate(length, mult)


def candidate_key(candidate: Candidate) -> str:
    return f"{candidate.trailing_atr_length}|{candidate.trail_multiplier:.6f}"


def sample_random(bounds: Bounds, rng: np.random.Generator) -> Candidate:
    """Uniform draw inside ``bounds``; the length is left unrounded."""

    length = bounds.length_min + rng.random() * (bounds.length_max - bounds.length_min)
    mult = bounds.multiplier_min + rng.random() * (bounds.multiplier_max - bounds.multiplier_min)
    return Candidate(length, mult)  # type: ignore[arg-type]


def grid_values(low: float, high: float, step: float) -> List[float]:
    """Inclusive float grid ``low, low+step, ..., <= high``."""

    if step <= 0:
        raise InputError(f"Grid step must be positive, got {step!r}")
    if low > high:
        raise InputError(f"Grid bounds are inverted: {low} > {high}")
    values = np.arange(float(low), float(high) + 1e-12, float(step))
    return [round(val, 10) for val in values.tolist()]


__all__ = [
    "Bounds",
    "Candidate",
    "CandidateLike",
    "candidate_key",
    "grid_values",
    "normalize_candidate",
    "sample_random",
    "to_candidate",
]
