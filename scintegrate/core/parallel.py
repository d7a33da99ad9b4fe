"""
Parallel task execution for per-sample and per-pair work.

Stages that fan out over samples or sample pairs follow the same pattern:
1. Extract minimal data (numpy arrays) into work items
2. Run a module-level worker function per item, in worker processes
3. Merge the results back once every task has completed

n_jobs == 1 runs sequentially in the calling process.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def run_tasks(
    worker: Callable[[T], R],
    work_items: Sequence[T],
    n_jobs: int = 1,
    label: str = "tasks",
    logger: Optional[logging.Logger] = None,
) -> List[R]:
    """Run a worker over work items, preserving input order.

    Parameters
    ----------
    worker : Callable
        Picklable module-level function taking one work item
    work_items : Sequence
        Work items
    n_jobs : int
        Number of parallel workers (1 = sequential, -1 = all cores)
    label : str
        Name used in log messages
    logger : logging.Logger, optional
        Logger for progress tracking

    Returns
    -------
    List
        One result per work item, in the same order
    """
    _logger = logger or logging.getLogger(__name__)
    if not work_items:
        return []

    start_time = time.time()
    if n_jobs == 1 or len(work_items) == 1:
        results = [worker(item) for item in work_items]
    else:
        from joblib import Parallel, delayed

        _logger.info("Processing %d %s with n_jobs=%d", len(work_items), label, n_jobs)
        # 'loky' backend for process isolation
        results = Parallel(n_jobs=n_jobs, backend="loky")(
            delayed(worker)(item) for item in work_items
        )

    _logger.debug(
        "%d %s completed in %.2f seconds", len(work_items), label, time.time() - start_time
    )
    return list(results)
