"""
Parallel Execution Helpers
==========================

Deadline tracking and a bounded, order-preserving parallel map used for
Monte Carlo batches and the N+1 sub-portfolio evaluations of the
decomposition. Work items are independent; results come back in input order.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Iterable, TypeVar

from risk_engine.exceptions import CalculationTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class Deadline:
    """Time budget for one calculation request."""

    def __init__(self, budget_seconds: float | None):
        self.budget_seconds = budget_seconds
        self._start = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start

    @property
    def remaining(self) -> float | None:
        if self.budget_seconds is None:
            return None
        return max(self.budget_seconds - self.elapsed, 0.0)

    def expired(self) -> bool:
        return self.budget_seconds is not None and self.elapsed >= self.budget_seconds

    def check(self, stage: str) -> None:
        """Raise CalculationTimeout if the budget is exhausted."""
        if self.expired():
            raise CalculationTimeout(self.budget_seconds, self.elapsed, stage)


def default_workers(max_workers: int | None = None) -> int:
    """Worker count bounded by available CPU cores."""
    cpus = os.cpu_count() or 1
    if max_workers is None:
        return cpus
    return max(1, min(max_workers, cpus))


def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int | None = None,
    deadline: Deadline | None = None,
    stage: str = "parallel_map",
) -> list[R]:
    """
    Apply ``func`` to every item on a thread pool.

    Args:
        func: Pure function of one item
        items: Work items
        max_workers: Upper bound on threads (capped by CPU count)
        deadline: Request deadline; exceeded -> CalculationTimeout
        stage: Stage name for timeout diagnostics

    Returns:
        Results in the same order as ``items``
    """
    work = list(items)
    workers = min(default_workers(max_workers), max(len(work), 1))

    if workers <= 1:
        results = []
        for item in work:
            if deadline is not None:
                deadline.check(stage)
            results.append(func(item))
        return results

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="risk-engine")
    futures = [executor.submit(func, item) for item in work]
    try:
        results = []
        for future in futures:
            timeout = deadline.remaining if deadline is not None else None
            results.append(future.result(timeout=timeout))
        return results
    except FutureTimeoutError:
        elapsed = deadline.elapsed if deadline is not None else 0.0
        budget = deadline.budget_seconds if deadline is not None else 0.0
        raise CalculationTimeout(budget, elapsed, stage) from None
    finally:
        for future in futures:
            future.cancel()
        executor.shutdown(wait=False)
