"""
ClusterProvisioner - Idempotent creation of a fixed-size worker pool.
"""

import logging

from batchrun.src.exceptions import PoolMismatchError
from batchrun.src.interfaces import ComputeCluster
from batchrun.src.models import CreateOutcome, Pool, PoolState

logger = logging.getLogger(__name__)


class ClusterProvisioner:
    """
    Ensure a pool exists.

    "Already exists" is success. The existing pool's configuration is compared
    with the request; a mismatch is logged, or raised as PoolMismatchError when
    verify_existing is set. Other failures propagate unchanged, no retry.
    """

    def __init__(self, cluster: ComputeCluster, verify_existing: bool = False):
        self.cluster = cluster
        self.verify_existing = verify_existing

    def ensure_pool(
        self,
        pool_id: str,
        target_node_count: int,
        vm_size: str,
        vm_image: str,
    ) -> Pool:
        """
        Create the pool, or reuse it if pool_id already exists.

        Args:
            pool_id: Caller-chosen pool id
            target_node_count: Number of worker nodes
            vm_size: Instance type
            vm_image: Image type or AMI id

        Returns:
            Pool with outcome CREATED or ALREADY_EXISTS

        Raises:
            ValueError: Negative node count
            PoolMismatchError: Existing pool differs and verify_existing is set
        """
        if target_node_count < 0:
            raise ValueError(f"target_node_count must be >= 0, got {target_node_count}")

        logger.info(f"Creating pool [{pool_id}]...")
        outcome = self.cluster.create_pool(pool_id, target_node_count, vm_size, vm_image)

        requested = Pool(
            pool_id=pool_id,
            target_node_count=target_node_count,
            vm_size=vm_size,
            vm_image=vm_image,
            state=PoolState.PROVISIONING,
            outcome=outcome,
        )
        if outcome == CreateOutcome.CREATED:
            return requested

        logger.info(f"The pool {pool_id} already existed when we tried to create it")
        existing = self.cluster.describe_pool(pool_id)
        if existing is None:
            # Deleted between create and describe; report what was asked for
            return requested

        mismatches = []
        if existing.target_node_count != target_node_count:
            mismatches.append(f"nodes {existing.target_node_count} != {target_node_count}")
        if existing.vm_size != vm_size:
            mismatches.append(f"vm_size {existing.vm_size} != {vm_size}")

        if mismatches:
            message = f"Existing pool {pool_id} differs from request: {', '.join(mismatches)}"
            if self.verify_existing:
                raise PoolMismatchError(message)
            logger.warning(f"{message}; using it as is")

        existing.outcome = CreateOutcome.ALREADY_EXISTS
        return existing
