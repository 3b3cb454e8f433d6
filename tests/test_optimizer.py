import numpy as np
import pytest

from breakout.errors import InputError
from tuning.bayes import HistoryEntry, best_entry, optimize
from tuning.search_spaces import (
    Bounds,
    Candidate,
    candidate_key,
    grid_values,
    normalize_candidate,
    sample_random,
)
from tuning.tpe import optimize_tpe

BOUNDS = Bounds(length_min=450, length_max=550, multiplier_min=5.0, multiplier_max=15.0)


def _bowl(candidate):
    return -(((candidate.trailing_atr_length - 500) / 50) ** 2) - ((candidate.trail_multiplier - 10) / 5) ** 2


def test_normalize_candidate_rounds_and_clamps():
    bounds = Bounds(length_min=1, length_max=100, multiplier_min=1.0, multiplier_max=50.0)

    assert normalize_candidate((2.5, 60.0), bounds) == Candidate(3, 50.0)
    assert normalize_candidate((0.2, 0.5), bounds) == Candidate(1, 1.0)
    assert normalize_candidate({"trailing_atr_length": 500, "trail_multiplier": 7}, bounds) == Candidate(100, 7.0)


def test_candidate_key_uses_six_decimals():
    assert candidate_key(Candidate(14, 2.5)) == "14|2.500000"
    assert candidate_key(Candidate(14, 2.5000001)) == candidate_key(Candidate(14, 2.5))


def test_bounds_validation_and_parsing():
    with pytest.raises(InputError):
        Bounds(length_min=10, length_max=5)
    with pytest.raises(InputError):
        Bounds(multiplier_min=3.0, multiplier_max=1.0)

    bounds = Bounds.from_dict({"trailing_atr_length": {"min": 20, "max": 40}, "trail_multiplier": {"max": 8}})
    assert bounds == Bounds(20, 40, 1.0, 8.0)


def test_random_samples_stay_inside_bounds():
    rng = np.random.default_rng(0)

    for _ in range(200):
        candidate = sample_random(BOUNDS, rng)
        assert 450 <= candidate.trailing_atr_length <= 550
        assert 5.0 <= candidate.trail_multiplier <= 15.0


def test_grid_values_are_inclusive():
    assert grid_values(1.0, 2.0, 0.5) == [1.0, 1.5, 2.0]
    assert grid_values(0.1, 0.3, 0.1) == [0.1, 0.2, 0.3]
    with pytest.raises(InputError):
        grid_values(1.0, 2.0, 0.0)


def test_best_entry_keeps_the_earliest_tie():
    history = [
        HistoryEntry(Candidate(1, 1.0), 3.0),
        HistoryEntry(Candidate(2, 1.0), 5.0),
        HistoryEntry(Candidate(3, 1.0), 5.0),
    ]

    assert best_entry(history).params == Candidate(2, 1.0)
    with pytest.raises(ValueError):
        best_entry([])


def test_history_is_unique_and_best_is_the_maximum():
    result = optimize(_bowl, BOUNDS, total_evaluations=15, initial_random=5, rng=np.random.default_rng(1))

    keys = [candidate_key(entry.params) for entry in result.history]
    assert len(result.history) == 15
    assert len(set(keys)) == 15
    assert result.best_value == max(entry.value for entry in result.history)
    for entry in result.history:
        assert isinstance(entry.params.trailing_atr_length, int)
        assert 450 <= entry.params.trailing_atr_length <= 550


def test_constant_objective_keeps_first_evaluation():
    result = optimize(lambda _: 1.0, BOUNDS, total_evaluations=6, initial_random=3, rng=np.random.default_rng(2))

    assert result.best_params == result.history[0].params
    assert result.best_value == 1.0


def test_seed_params_are_evaluated_first():
    calls = []

    def objective(candidate):
        calls.append(candidate)
        return _bowl(candidate)

    result = optimize(
        objective,
        BOUNDS,
        total_evaluations=4,
        initial_random=2,
        seed_params=Candidate(500, 10.0),
        rng=np.random.default_rng(3),
    )

    assert calls[0] == Candidate(500, 10.0)
    assert result.best_params == Candidate(500, 10.0)
    assert result.best_value == 0.0


def test_tiny_space_is_fully_explored():
    bounds = Bounds(length_min=1, length_max=2, multiplier_min=1.0, multiplier_max=1.0)

    result = optimize(lambda c: float(c.trailing_atr_length), bounds, total_evaluations=2, initial_random=10,
                      rng=np.random.default_rng(4))

    assert sorted(entry.params.trailing_atr_length for entry in result.history) == [1, 2]
    assert result.best_params == Candidate(2, 1.0)


def test_exhausted_space_raises_instead_of_spinning():
    bounds = Bounds(length_min=1, length_max=2, multiplier_min=1.0, multiplier_max=1.0)

    with pytest.raises(RuntimeError):
        optimize(lambda c: 0.0, bounds, total_evaluations=3, initial_random=10, rng=np.random.default_rng(5))


def test_invalid_budgets_raise():
    with pytest.raises(ValueError):
        optimize(_bowl, BOUNDS, total_evaluations=0)
    with pytest.raises(ValueError):
        optimize(_bowl, BOUNDS, num_candidates=0)


def test_gp_ucb_finds_the_bowl_minimum():
    result = optimize(
        _bowl,
        BOUNDS,
        total_evaluations=40,
        initial_random=8,
        num_candidates=200,
        kappa=2.0,
        rng=np.random.default_rng(7),
    )

    assert abs(result.best_params.trailing_atr_length - 500) <= 25
    assert abs(result.best_params.trail_multiplier - 10) <= 5
    assert result.to_dict()["best_value"] == result.best_value


def test_gp_ucb_recovers_the_quadratic_peak_over_the_wide_space():
    def objective(candidate):
        return -((candidate.trailing_atr_length - 500) ** 2 + (candidate.trail_multiplier - 10) ** 2)

    result = optimize(
        objective,
        Bounds(1, 1000, 1.0, 20.0),
        total_evaluations=40,
        initial_random=8,
        num_candidates=200,
        rng=np.random.default_rng(0),
    )

    assert abs(result.best_params.trailing_atr_length - 500) <= 5
    assert 1.0 <= result.best_params.trail_multiplier <= 20.0
    assert result.best_value == max(entry.value for entry in result.history)
    assert result.best_value > -(5**2 + 10**2)


def test_same_rng_seed_reproduces_history():
    first = optimize(_bowl, BOUNDS, total_evaluations=12, initial_random=4, rng=np.random.default_rng(9))
    second = optimize(_bowl, BOUNDS, total_evaluations=12, initial_random=4, rng=np.random.default_rng(9))

    assert first.history == second.history


def test_tpe_backend_shares_the_result_contract():
    result = optimize_tpe(_bowl, BOUNDS, total_evaluations=12, initial_random=4, seed=11,
                          seed_params=Candidate(480, 9.0))

    keys = [candidate_key(entry.params) for entry in result.history]
    assert result.history[0].params == Candidate(480, 9.0)
    assert len(keys) == len(set(keys)) == 12
    assert result.best_value == max(entry.value for entry in result.history)


def test_tpe_is_reproducible_with_a_seed():
    first = optimize_tpe(_bowl, BOUNDS, total_evaluations=10, initial_random=3, seed=5)
    second = optimize_tpe(_bowl, BOUNDS, total_evaluations=10, initial_random=3, seed=5)

    assert first.history == second.history
