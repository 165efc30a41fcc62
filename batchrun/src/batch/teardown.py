"""
TeardownManager - Best-effort deletion of the job and pool.

Deleting a resource that is already gone is success: the end state is what
matters, not whether this call caused it. Failures are logged and reported,
never raised, and never retried or rolled back.
"""

import logging
from typing import Dict

from batchrun.src.exceptions import TeardownError
from batchrun.src.interfaces import ComputeCluster

logger = logging.getLogger(__name__)

SKIPPED = "skipped"
FAILED = "failed"


class TeardownManager:
    """Delete jobs and pools, each gated by its own flag."""

    def __init__(self, cluster: ComputeCluster):
        self.cluster = cluster

    def delete_job(self, job_id: str) -> str:
        """
        Returns:
            "deleted", "already_absent" or "failed"
        """
        try:
            return self.cluster.delete_job(job_id).value
        except TeardownError as e:
            logger.error(f"Teardown of job {job_id} failed: {e}")
            return FAILED

    def delete_pool(self, pool_id: str) -> str:
        """
        Returns:
            "deleted", "already_absent" or "failed"
        """
        try:
            return self.cluster.delete_pool(pool_id).value
        except TeardownError as e:
            logger.error(f"Teardown of pool {pool_id} failed: {e}")
            return FAILED

    def teardown(
        self,
        job_id: str,
        pool_id: str,
        delete_job: bool = True,
        delete_pool: bool = True,
    ) -> Dict[str, str]:
        """
        Delete the job, then the pool, as requested.

        Returns:
            {"job": outcome, "pool": outcome} where outcome is "deleted",
            "already_absent", "failed" or "skipped"
        """
        outcome = {
            "job": self.delete_job(job_id) if delete_job else SKIPPED,
            "pool": self.delete_pool(pool_id) if delete_pool else SKIPPED,
        }
        logger.info(f"Teardown: job {job_id} {outcome['job']}, pool {pool_id} {outcome['pool']}")
        return outcome
