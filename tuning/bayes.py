"""GP-UCB Bayesian optimiser over ``(trailing_atr_length, trail_multiplier)``."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from .gp import build_gp_model, ucb_score
from .search_spaces import (
    Bounds,
    Candidate,
    CandidateLike,
    candidate_key,
    normalize_candidate,
    sample_random,
)

LOGGER = logging.getLogger(__name__)

Objective = Callable[[Candidate], float]

MAX_CONSECUTIVE_DUPLICATES = 10_000


@dataclass(frozen=True)
class HistoryEntry:
    params: Candidate
    value: float


@dataclass
class OptimizationResult:
    best_params: Candidate
    best_value: float
    history: List[HistoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "best_params": self.best_params.to_dict(),
            "best_value": self.best_value,
            "history": [{"params": h.params.to_dict(), "value": h.value} for h in self.history],
        }


def best_entry(history: List[HistoryEntry]) -> HistoryEntry:
    """Highest value by a strict ``>`` scan, so ties keep the earliest entry."""

    if not history:
        raise ValueError("Cannot pick a best entry from an empty history")
    best = history[0]
    for entry in history[1:]:
        if entry.value > best.value:
            best = entry
    return best


class CandidateEvaluator:
    """Normalises, de-duplicates and records objective evaluations."""

    def __init__(self, objective: Objective, bounds: Bounds, verbose: bool) -> None:
        self.objective = objective
        self.bounds = bounds
        self.verbose = verbose
        self.history: List[HistoryEntry] = []
        self.seen: Dict[str, float] = {}
        self.duplicates_in_a_row = 0

    def __call__(self, raw: CandidateLike) -> Optional[HistoryEntry]:
        params = normalize_candidate(raw, self.bounds)
        key = candidate_key(params)
        if key in self.seen:
            self.duplicates_in_a_row += 1
            if self.duplicates_in_a_row >= MAX_CONSECUTIVE_DUPLICATES:
                raise RuntimeError(
                    f"Optimizer drew {self.duplicates_in_a_row} duplicate candidates in a row; "
                    "the search space is exhausted for the requested evaluation count"
                )
            return None
        self.duplicates_in_a_row = 0
        value = float(self.objective(params))
        self.seen[key] = value
        entry = HistoryEntry(params=params, value=value)
        self.history.append(entry)
        LOGGER.log(
            logging.INFO if self.verbose else logging.DEBUG,
            "[optimizer] eval #%d length=%d mult=%.6f value=%s",
            len(self.history),
            params.trailing_atr_length,
            params.trail_multiplier,
            value,
        )
        return entry


def optimize(
    objective: Objective,
    bounds: Bounds,
    total_evaluations: int = 40,
    initial_random: int = 8,
    num_candidates: int = 200,
    kappa: float = 2.0,
    seed_params: Optional[CandidateLike] = None,
    rng: Optional[np.random.Generator] = None,
    verbose: bool = False,
) -> OptimizationResult:
    """Maximise ``objective`` with random exploration followed by GP-UCB steps.

    A :class:`~breakout.errors.NumericInstabilityError` from the GP fit is not
    caught: the caller has to widen the bounds or reduce the evaluation count.
    """

    if total_evaluations < 1:
        raise ValueError("total_evaluations must be at least 1")
    if num_candidates < 1:
        raise ValueError("num_candidates must be at least 1")
    rng = rng if rng is not None else np.random.default_rng()
    evaluate = CandidateEvaluator(objective, bounds, verbose)

    if seed_params is not None:
        evaluate(seed_params)

    while len(evaluate.history) < total_evaluations:
        if len(evaluate.history) < initial_random:
            evaluate(sample_random(bounds, rng))
            continue

        points = [entry.params.as_point() for entry in evaluate.history]
        values = [entry.value for entry in evaluate.history]
        model = build_gp_model(points, values)

        best_candidate: Optional[Candidate] = None
        best_score = -np.inf
        for _ in range(num_candidates):
            candidate = normalize_candidate(sample_random(bounds, rng), bounds)
            score = ucb_score(model, candidate.as_point(), kappa)
            if score > best_score:
                best_score = score
                best_candidate = candidate

        if best_candidate is not None:
            evaluate(best_candidate)

    best = best_entry(evaluate.history)
    LOGGER.info(
        "Optimizer finished after %d evaluations: length=%d mult=%.6f value=%s",
        len(evaluate.history),
        best.params.trailing_atr_length,
        best.params.trail_multiplier,
        best.value,
    )
    return OptimizationResult(best_params=best.params, best_value=best.value, history=list(evaluate.history))


__all__ = ["CandidateEvaluator", "HistoryEntry", "Objective", "OptimizationResult", "best_entry", "optimize"]
