"""Exception taxonomy for the simulation and tuning core."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence


class InputError(ValueError):
    """Caller supplied invalid input (empty candles, bad tick size, bad window)."""


class NumericInstabilityError(ArithmeticError):
    """The GP covariance matrix is singular or too close to singular to invert."""


class InsufficientDataError(RuntimeError):
    """Not enough candles to populate a fixed-capacity buffer."""


class WorkerFailure(RuntimeError):
    """A pool worker process died before reporting its batch."""


@dataclass(frozen=True)
class JobError:
    job_id: int
    candidate_value: float
    error_message: str


class JobFailure(RuntimeError):
    """One or more jobs raised inside otherwise healthy workers."""

    def __init__(self, failures: Sequence[JobError]) -> None:
        self.failures: List[JobError] = list(failures)
        first = self.failures[0]
        super().__init__(
            f"Backtest worker error ({len(self.failures)} job(s) failed): "
            f"{first.error_message} (candidate={first.candidate_value})"
        )

    @property
    def count(self) -> int:
        return len(self.failures)


__all__ = [
    "InputError",
    "InsufficientDataError",
    "JobError",
    "JobFailure",
    "NumericInstabilityError",
    "WorkerFailure",
]
