"""Optuna TPE backend with the same contract as :func:`tuning.bayes.optimize`."""
from __future__ import annotations

from typing import Optional

import optuna

from .bayes import CandidateEvaluator, Objective, OptimizationResult, best_entry
from .search_spaces import Bounds, Candidate, CandidateLike, candidate_key, normalize_candidate


def _suggest(trial: optuna.Trial, bounds: Bounds) -> Candidate:
    return Candidate(
        trial.suggest_int("trailing_atr_length", max(1, bounds.length_min), max(1, bounds.length_max)),
        trial.suggest_float("trail_multiplier", bounds.multiplier_min, bounds.multiplier_max),
    )


def optimize_tpe(
    objective: Objective,
    bounds: Bounds,
    total_evaluations: int = 40,
    initial_random: int = 8,
    seed_params: Optional[CandidateLike] = None,
    seed: Optional[int] = None,
    verbose: bool = False,
) -> OptimizationResult:
    """Drive the objective through an optuna ask/tell loop.

    Duplicate keys are answered from the cache so the sampler still learns from
    them, but they never enter ``history``.
    """

    if total_evaluations < 1:
        raise ValueError("total_evaluations must be at least 1")
    sampler = optuna.samplers.TPESampler(seed=seed, n_startup_trials=max(1, int(initial_random)))
    study = optuna.create_study(direction="maximize", sampler=sampler)
    if seed_params is not None:
        study.enqueue_trial(normalize_candidate(seed_params, bounds).to_dict())

    evaluate = CandidateEvaluator(objective, bounds, verbose)
    while len(evaluate.history) < total_evaluations:
        trial = study.ask()
        raw = _suggest(trial, bounds)
        entry = evaluate(raw)
        if entry is None:
            study.tell(trial, evaluate.seen[candidate_key(normalize_candidate(raw, bounds))])
        else:
            study.tell(trial, entry.value)

    best = best_entry(evaluate.history)
    return OptimizationResult(best_params=best.params, best_value=best.value, history=list(evaluate.history))


__all__ = ["optimize_tpe"]
