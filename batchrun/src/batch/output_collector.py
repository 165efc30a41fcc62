"""
OutputCollector - Read each task's recorded output stream.
"""

import logging
from typing import Dict, Iterable

from batchrun.src.exceptions import OutputUnavailableError
from batchrun.src.interfaces import ComputeCluster
from batchrun.src.models import MonitorResult, TaskOutput

logger = logging.getLogger(__name__)


class OutputCollector:
    """
    Collect task outputs; a missing or unreadable stream is reported on that
    task's TaskOutput.error and does not stop the rest of the batch.
    """

    def __init__(self, cluster: ComputeCluster, stream_name: str = "stdout"):
        self.cluster = cluster
        self.stream_name = stream_name

    def collect_outputs(
        self,
        job_id: str,
        results: Iterable[MonitorResult],
    ) -> Dict[str, TaskOutput]:
        """
        Read the output stream of every task.

        Args:
            job_id: Job the tasks belong to
            results: Monitor results (task id and assigned node)

        Returns:
            Dict mapping task_id to TaskOutput
        """
        outputs: Dict[str, TaskOutput] = {}

        for result in results:
            try:
                text = self.cluster.read_task_output(job_id, result.task_id, self.stream_name)
                outputs[result.task_id] = TaskOutput(
                    task_id=result.task_id,
                    node_id=result.node_id,
                    output_text=text,
                )
            except OutputUnavailableError as e:
                logger.warning(f"No output for task {result.task_id}: {e}")
                outputs[result.task_id] = TaskOutput(
                    task_id=result.task_id,
                    node_id=result.node_id,
                    error=str(e),
                )

        readable = sum(1 for o in outputs.values() if o.ok)
        logger.info(f"Collected output of {readable}/{len(outputs)} tasks")
        return outputs
