"""
CompletionMonitor - Poll tasks until all are terminal or a deadline passes.

Completed and Failed are reported separately. On deadline (or cancellation)
the monitor returns what it has observed so far, with timed_out=True for every
task that was not terminal, instead of raising or blocking.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from batchrun.src.interfaces import ComputeCluster
from batchrun.src.models import MonitorResult, TaskState, TaskStatus

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 15.0


class CompletionMonitor:
    """
    Wait for a job's tasks to reach a terminal state.

    Attributes:
        cluster: ComputeCluster to poll
        poll_interval: Seconds between polls
    """

    def __init__(
        self,
        cluster: ComputeCluster,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.cluster = cluster
        self.poll_interval = poll_interval
        self._clock = clock or time.monotonic

    def await_completion(
        self,
        job_id: str,
        task_ids: Sequence[str],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[MonitorResult]:
        """
        Poll until every task is terminal or timeout seconds have elapsed.

        A task seen terminal is recorded once and never re-polled.

        Args:
            job_id: Job the tasks belong to
            task_ids: Tasks to wait for (duplicates collapsed)
            timeout: Seconds from now until the deadline
            cancel_event: Set to stop waiting early

        Returns:
            One MonitorResult per task, in task_ids order
        """
        cancel_event = cancel_event or threading.Event()
        pending: Dict[str, None] = dict.fromkeys(task_ids)
        order = list(pending)
        last_seen: Dict[str, TaskStatus] = {}
        results: Dict[str, MonitorResult] = {}

        deadline = self._clock() + timeout
        stopped_by = None

        logger.info(
            f"Monitoring {len(order)} tasks in job {job_id} for a terminal state, "
            f"timeout in {timeout:.0f}s..."
        )

        while pending:
            for status in self.cluster.list_task_states(job_id):
                if status.task_id not in pending:
                    continue
                last_seen[status.task_id] = status

                if status.state.is_terminal:
                    results[status.task_id] = MonitorResult(
                        task_id=status.task_id,
                        final_state=status.state,
                        timed_out=False,
                        node_id=status.node_id,
                    )
                    del pending[status.task_id]
                    log = logger.warning if status.state == TaskState.FAILED else logger.info
                    log(f"Task {status.task_id}: {status.state.value}")

            if not pending:
                break

            remaining = deadline - self._clock()
            if remaining <= 0:
                stopped_by = "timeout"
                break

            running = sum(
                1 for t in pending
                if t in last_seen and last_seen[t].state == TaskState.RUNNING
            )
            logger.info(
                f"Progress: {len(results)}/{len(order)} terminal, "
                f"{running} running, {len(pending) - running} pending"
            )

            if cancel_event.wait(min(self.poll_interval, remaining)):
                stopped_by = "cancellation"
                break

        for task_id in pending:
            seen = last_seen.get(task_id)
            results[task_id] = MonitorResult(
                task_id=task_id,
                final_state=seen.state if seen else TaskState.PENDING,
                timed_out=True,
                node_id=seen.node_id if seen else None,
            )

        if stopped_by:
            logger.warning(
                f"Monitoring stopped by {stopped_by}: "
                f"{len(pending)}/{len(order)} tasks not terminal"
            )

        final = [results[task_id] for task_id in order]
        completed = sum(1 for r in final if not r.timed_out and r.final_state == TaskState.COMPLETED)
        failed = sum(1 for r in final if not r.timed_out and r.final_state == TaskState.FAILED)
        logger.info(
            f"Monitoring done: {completed} completed, {failed} failed, "
            f"{len(pending)} timed out"
        )
        return final
