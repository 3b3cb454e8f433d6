"""Gaussian-process surrogate used by the Bayesian optimiser.

Kernel matrices are small (one row per evaluation), so inversion is an explicit
Gauss-Jordan elimination with partial pivoting instead of a LAPACK call. The
pivot tolerance is part of the contract: a pivot below it raises.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from breakout.errors import NumericInstabilityError

PIVOT_TOLERANCE = 1e-12
NOISE = 1e-6
LENGTH_SCALE_FLOORS = (1.0, 1e-6)


def rbf_kernel(a: np.ndarray, b: np.ndarray, length_scales: np.ndarray) -> float:
    diff = (np.asarray(a, dtype=float) - np.asarray(b, dtype=float)) / length_scales
    return float(np.exp(-0.5 * np.sum(diff * diff)))


def invert_matrix(matrix: np.ndarray) -> np.ndarray:
    """Gauss-Jordan inverse with partial pivoting.

    Raises :class:`NumericInstabilityError` when the largest available pivot
    in a column is below :data:`PIVOT_TOLERANCE`.
    """

    matrix = np.asarray(matrix, dtype=float)
    n = matrix.shape[0]
    if matrix.shape != (n, n):
        raise ValueError(f"Expected a square matrix, got shape {matrix.shape}")
    augmented = np.hstack([matrix, np.eye(n)])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(augmented[col:, col])))
        if abs(augmented[pivot_row, col]) < PIVOT_TOLERANCE:
            raise NumericInstabilityError("Matrix inversion failed (singular matrix)")
        if pivot_row != col:
            augmented[[col, pivot_row]] = augmented[[pivot_row, col]]

        augmented[col] /= augmented[col, col]
        factors = augmented[:, col].copy()
        factors[col] = 0.0
        augmented -= np.outer(factors, augmented[col])

    return augmented[:, n:]


@dataclass(frozen=True)
class GPModel:
    points: np.ndarray
    length_scales: np.ndarray
    k_inv: np.ndarray
    k_inv_y: np.ndarray


def length_scales_for(points: np.ndarray) -> np.ndarray:
    spans = points.max(axis=0) - points.min(axis=0)
    return np.array([max(floor, span / 3) for floor, span in zip(LENGTH_SCALE_FLOORS, spans)])


def build_gp_model(points: Sequence[Sequence[float]], values: Sequence[float]) -> GPModel:
    pts = np.asarray(points, dtype=float)
    y = np.asarray(values, dtype=float)
    scales = length_scales_for(pts)
    n = len(pts)
    kernel = np.empty((n, n))
    for i in range(n):
        for j in range(n):
            kernel[i, j] = rbf_kernel(pts[i], pts[j], scales) + (NOISE if i == j else 0.0)
    k_inv = invert_matrix(kernel)
    return GPModel(points=pts, length_scales=scales, k_inv=k_inv, k_inv_y=k_inv @ y)


def predict(model: GPModel, candidate: Sequence[float]) -> Tuple[float, float]:
    """Posterior ``(mean, std)`` at ``candidate``; the prior variance is 1."""

    k = np.array([rbf_kernel(p, candidate, model.length_scales) for p in model.points])
    mu = float(k @ model.k_inv_y)
    sigma2 = max(0.0, 1.0 - float(k @ (model.k_inv @ k)))
    return mu, float(np.sqrt(sigma2))


def ucb_score(model: GPModel, candidate: Sequence[float], kappa: float) -> float:
    mu, sigma = predict(model, candidate)
    return mu + kappa * sigma


__all__ = [
    "GPModel",
    "NOISE",
    "PIVOT_TOLERANCE",
    "build_gp_model",
    "invert_matrix",
    "length_scales_for",
    "predict",
    "rbf_kernel",
    "ucb_score",
]
