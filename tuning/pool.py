"""Parallel evaluation pool for one-dimensional candidate sweeps."""
from __future__ import annotations

import logging
import os
from concurrent.futures import ProcessPoolExecutor, wait
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from breakout.errors import JobError, JobFailure, WorkerFailure
from breakout.schema import BacktestArgs

from .search_spaces import grid_values
from .worker import run_batch_jobs

LOGGER = logging.getLogger(__name__)

EXECUTORS = ("process", "inline")


@dataclass(frozen=True)
class JobResult:
    job_id: int
    candidate_value: float
    total_pnl: Decimal


@dataclass(frozen=True)
class GridSearchResult:
    best_value: float
    best_pnl: Decimal
    results: List[JobResult]


def default_worker_count() -> int:
    return max(1, (os.cpu_count() or 1) - 1)


def assign_round_robin(job_count: int, worker_count: int) -> List[List[int]]:
    """Job ``i`` goes to worker ``i % worker_count``."""

    batches: List[List[int]] = [[] for _ in range(worker_count)]
    for job_id in range(job_count):
        batches[job_id % worker_count].append(job_id)
    return batches


def _run_in_processes(requests: List[Dict[str, Any]], worker_count: int) -> List[Dict[str, Any]]:
    with ProcessPoolExecutor(max_workers=worker_count) as executor:
        futures = [executor.submit(run_batch_jobs, request) for request in requests]
        wait(futures)

    responses: List[Dict[str, Any]] = []
    crashed: List[str] = []
    for worker_id, future in enumerate(futures):
        exc = future.exception()
        if exc is not None:
            crashed.append(f"worker {worker_id}: {exc!r}")
            continue
        responses.append(future.result())
    if crashed:
        raise WorkerFailure(f"{len(crashed)} backtest worker(s) failed: " + "; ".join(crashed))
    return responses


def run_batch(
    shared_args: BacktestArgs,
    candidate_values: Sequence[float],
    *,
    max_workers: Optional[int] = None,
    candidate_field: str = "trail_multiplier",
    executor: str = "process",
) -> List[JobResult]:
    """Run one backtest per candidate value and return results indexed by job id.

    All workers are joined before any failure is raised. A crashed worker raises
    :class:`WorkerFailure`; jobs that raised inside healthy workers are
    collected into a single :class:`JobFailure`.
    """

    if executor not in EXECUTORS:
        raise ValueError(f"Unknown executor '{executor}'. Expected one of {EXECUTORS}")
    values = list(candidate_values)
    if not values:
        return []

    worker_count = max(1, min(max_workers or default_worker_count(), len(values)))
    batches = assign_round_robin(len(values), worker_count)
    requests = [
        {
            "shared_args": shared_args,
            "candidate_field": candidate_field,
            "jobs": [{"job_id": job_id, "candidate_value": values[job_id]} for job_id in batch],
        }
        for batch in batches
    ]
    LOGGER.info("Dispatching %d job(s) across %d worker(s) (%s)", len(values), worker_count, executor)

    if executor == "inline":
        responses = [run_batch_jobs(request) for request in requests]
    else:
        responses = _run_in_processes(requests, worker_count)

    results: List[Optional[JobResult]] = [None] * len(values)
    failures: List[JobError] = []
    for response in responses:
        for item in response["results"]:
            results[item["job_id"]] = JobResult(item["job_id"], item["candidate_value"], item["total_pnl"])
        for item in response["errors"]:
            failures.append(JobError(item["job_id"], item["candidate_value"], item["error_message"]))

    if failures:
        failures.sort(key=lambda failure: failure.job_id)
        raise JobFailure(failures)

    missing = [job_id for job_id, result in enumerate(results) if result is None]
    if missing:
        raise WorkerFailure(f"Workers returned no result for job(s) {missing}")
    return [result for result in results if result is not None]


def grid_search_trail_multiplier(
    shared_args: BacktestArgs,
    low: float,
    high: float,
    step: float,
    *,
    max_workers: Optional[int] = None,
    executor: str = "process",
) -> GridSearchResult:
    """Evaluate every multiplier in ``[low, high]`` and keep the best by strict ``>``."""

    grid = grid_values(low, high, step)
    results = run_batch(shared_args, grid, max_workers=max_workers, executor=executor)
    best = results[0]
    for result in results[1:]:
        if result.total_pnl > best.total_pnl:
            best = result
    LOGGER.info("Grid search best trail_multiplier=%s pnl=%s", best.candidate_value, best.total_pnl)
    return GridSearchResult(best_value=best.candidate_value, best_pnl=best.total_pnl, results=results)


__all__ = [
    "EXECUTORS",
    "GridSearchResult",
    "JobResult",
    "assign_round_robin",
    "default_worker_count",
    "grid_search_trail_multiplier",
    "run_batch",
]
