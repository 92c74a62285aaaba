"""
Bounded worker pool for the task list.

Tasks start in list order with at most ``max_workers`` running at once. The
calling thread is the single aggregator: it collects finished results and is
the only writer of the status ledger.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Sequence

from topupbatch.ledger import ExecutionResult, StatusLedger
from topupbatch.scan import Task

logger = logging.getLogger(__name__)

Worker = Callable[[Task], ExecutionResult]


def run_batch(
    tasks: Sequence[Task],
    worker: Worker,
    ledger: StatusLedger,
    max_workers: int = 1,
) -> List[ExecutionResult]:
    """
    Execute every task and record one ledger entry per task.

    A worker that raises is recorded as FAIL for its task; the batch goes on.
    Results are returned in completion order.
    """
    if max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    results: List[ExecutionResult] = []
    if not tasks:
        return results

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="topup-worker") as executor:
        future_to_task = {executor.submit(worker, task): task for task in tasks}
        for future in as_completed(future_to_task):
            task = future_to_task[future]
            try:
                result = future.result()
            except Exception as err:  # noqa: BLE001
                logger.exception("FAIL [%s] unexpected error", task.label)
                result = ExecutionResult(task=task, outcome="FAIL", reason=f"unexpected error: {err}")
            ledger.record(result)
            results.append(result)
    return results
