"""
Bounded, time-limited fan-out of dispatches for the heartbeat.

Each claimed item becomes one task on a thread pool. Results are joined
with a deadline; anything still running at the deadline is reported as timed
out and left to finish in the background. The pool is never joined on a hung
dispatcher.
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional

from ..interfaces import ActionDispatcher, DispatchOutcome

logger = logging.getLogger(__name__)


@dataclass
class DispatchJob:
    key: Hashable
    action_type: str
    config: Dict[str, Any]
    entity_context: Dict[str, Any]


@dataclass
class DispatchResult:
    key: Hashable
    outcome: Optional[DispatchOutcome] = None
    error: Optional[str] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is not None and self.outcome.success

    @property
    def failure_details(self) -> str:
        if self.timed_out:
            return "Dispatch timed out"
        if self.error:
            return self.error
        if self.outcome is None:
            return "Dispatcher returned no outcome"
        return self.outcome.details or "Dispatch failed"


def run_dispatch(dispatcher: ActionDispatcher, job: DispatchJob) -> DispatchOutcome:
    outcome = dispatcher.dispatch(job.action_type, job.config, job.entity_context)
    if not isinstance(outcome, DispatchOutcome):
        return DispatchOutcome.failed("Dispatcher returned no outcome")
    return outcome


def batch_deadline_seconds(job_count: int, max_workers: int, timeout_seconds: float) -> float:
    """Longest dispatch_concurrently can wait on job_count jobs."""
    if job_count <= 0:
        return 0.0
    workers = max(1, min(max_workers, job_count))
    return timeout_seconds * math.ceil(job_count / workers)


def dispatch_concurrently(
    dispatcher: ActionDispatcher,
    jobs: List[DispatchJob],
    max_workers: int,
    timeout_seconds: float,
) -> Dict[Hashable, DispatchResult]:
    """
    Dispatch every job and return one result per job key.

    Every job is given at least timeout_seconds of wall time: the join
    deadline scales with the number of waves the pool needs.
    """
    if not jobs:
        return {}

    workers = max(1, min(max_workers, len(jobs)))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fieldflow-dispatch")
    try:
        futures = {executor.submit(run_dispatch, dispatcher, job): job for job in jobs}
        done, not_done = wait(futures, timeout=batch_deadline_seconds(len(jobs), max_workers, timeout_seconds))

        results: Dict[Hashable, DispatchResult] = {}
        for future in done:
            job = futures[future]
            try:
                results[job.key] = DispatchResult(key=job.key, outcome=future.result())
            except Exception as e:
                logger.error(f"Dispatch of {job.action_type} for {job.key} raised: {e}")
                results[job.key] = DispatchResult(key=job.key, error=str(e) or type(e).__name__)

        for future in not_done:
            job = futures[future]
            future.cancel()
            logger.warning(f"Dispatch of {job.action_type} for {job.key} timed out after {timeout_seconds}s")
            results[job.key] = DispatchResult(key=job.key, timed_out=True)

        return results
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
