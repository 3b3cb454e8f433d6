"""Pool worker: runs one batch of backtest jobs and reports results and errors.

Request::

    {"shared_args": BacktestArgs, "candidate_field": "trail_multiplier",
     "jobs": [{"job_id": 0, "candidate_value": 4.5}, ...]}

Response::

    {"results": [{"job_id", "candidate_value", "total_pnl"}, ...],
     "errors": [{"job_id", "candidate_value", "error_message"}, ...]}
"""
from __future__ import annotations

import logging
import os
from dataclasses import replace
from typing import Any, Dict, List

from breakout.engine import run_backtest

LOGGER = logging.getLogger(__name__)


def run_batch_jobs(request: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    shared_args = request["shared_args"]
    field_name = request.get("candidate_field", "trail_multiplier")
    jobs = request.get("jobs", [])
    LOGGER.debug("Worker %d received %d job(s)", os.getpid(), len(jobs))

    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for job in jobs:
        job_id = job["job_id"]
        value = job["candidate_value"]
        try:
            summary = run_backtest(replace(shared_args, **{field_name: value}))
        except Exception as exc:  # reported back to the pool per job
            errors.append({"job_id": job_id, "candidate_value": value, "error_message": str(exc) or repr(exc)})
            continue
        results.append({"job_id": job_id, "candidate_value": value, "total_pnl": summary.total_pnl})
    return {"results": results, "errors": errors}


__all__ = ["run_batch_jobs"]
