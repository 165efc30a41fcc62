"""
Abstract interfaces for the two remote services the orchestrator drives.

These interfaces enable:
    - ObjectStore: Swappable object storage (S3, in-memory fakes for tests)
    - ComputeCluster: Swappable compute service (AWS Batch, in-memory fakes)

Design Philosophy:
    - Idempotent creates return CreateOutcome.ALREADY_EXISTS instead of raising
    - Idempotent deletes return DeleteOutcome.ALREADY_ABSENT instead of raising
    - Provider exceptions are translated to batchrun.src.exceptions at this seam
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterator, List, Optional

from batchrun.src.models import (
    CreateOutcome,
    DeleteOutcome,
    Pool,
    TaskSpec,
    TaskStatus,
)


class ObjectStore(ABC):
    """
    Abstract interface for the object store holding input artifacts.

    Implementations:
        - S3ObjectStore: S3 buckets with presigned GET URLs
    """

    @abstractmethod
    def ensure_container(self, name: str) -> CreateOutcome:
        """Create the container if it does not exist."""
        pass

    @abstractmethod
    def upload_object(self, container: str, name: str, local_path: str) -> str:
        """
        Upload a local file.

        Returns:
            Remote location of the object

        Raises:
            TransferError: On I/O or network failure
        """
        pass

    @abstractmethod
    def issue_read_token(self, container: str, name: str, expiry: datetime) -> str:
        """
        Mint a signed, read-only URL for an object.

        The URL is usable by an unauthenticated holder until expiry and grants
        no write or delete permission.
        """
        pass


class ComputeCluster(ABC):
    """
    Abstract interface for the elastic compute service.

    Implementations:
        - AWSBatchCluster: compute environments, job queues and jobs
    """

    @abstractmethod
    def create_pool(
        self,
        pool_id: str,
        node_count: int,
        vm_size: str,
        vm_image: str,
    ) -> CreateOutcome:
        pass

    @abstractmethod
    def describe_pool(self, pool_id: str) -> Optional[Pool]:
        """Return the pool as the service sees it, or None if absent."""
        pass

    @abstractmethod
    def create_job(self, job_id: str, pool_id: str) -> CreateOutcome:
        pass

    @abstractmethod
    def submit_tasks(self, job_id: str, specs: List[TaskSpec]) -> None:
        """
        Submit tasks to a job in one batched call.

        Raises:
            SubmissionError: The committed subset is unknown to the caller
        """
        pass

    @abstractmethod
    def list_task_states(self, job_id: str) -> Iterator[TaskStatus]:
        pass

    @abstractmethod
    def read_task_output(self, job_id: str, task_id: str, stream_name: str) -> str:
        """
        Raises:
            OutputUnavailableError: Stream missing or unreadable
        """
        pass

    @abstractmethod
    def delete_job(self, job_id: str) -> DeleteOutcome:
        """
        Raises:
            TeardownError: Deletion failed
        """
        pass

    @abstractmethod
    def delete_pool(self, pool_id: str) -> DeleteOutcome:
        """
        Raises:
            TeardownError: Deletion failed
        """
        pass
