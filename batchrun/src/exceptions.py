"""
Exception hierarchy for the batchrun orchestrator.

"Already exists" during provisioning and "already absent" during teardown are
not errors: they are CreateOutcome / DeleteOutcome values. A monitor timeout is
not an error either: it is MonitorResult.timed_out.
"""

from typing import List, Optional


class BatchRunError(Exception):
    """Base exception for orchestrator errors."""
    pass


class ConfigError(BatchRunError, ValueError):
    """Raised when the run configuration is invalid."""
    pass


class TransferError(BatchRunError):
    """Raised when an input artifact cannot be uploaded. Aborts staging."""

    def __init__(self, local_path: str, message: str):
        self.local_path = local_path
        super().__init__(f"Failed to upload {local_path}: {message}")


class ArtifactExpiredError(BatchRunError):
    """Raised when a task would be submitted with an already expired artifact."""
    pass


class ProvisioningError(BatchRunError):
    """Raised when a pool or job does not become usable."""
    pass


class PoolMismatchError(ProvisioningError):
    """Raised when an existing pool does not match the requested configuration."""
    pass


class SubmissionError(BatchRunError):
    """
    Raised when task submission fails.

    The subset of tasks committed remotely is unknown: committed_task_ids only
    lists tasks the service acknowledged before the failure. Callers must
    inspect the remote task list before retrying.
    """

    def __init__(
        self,
        job_id: str,
        task_ids: List[str],
        message: str,
        committed_task_ids: Optional[List[str]] = None,
    ):
        self.job_id = job_id
        self.task_ids = list(task_ids)
        self.committed_task_ids = list(committed_task_ids or [])
        super().__init__(
            f"Task submission to job {job_id} failed: {message} "
            f"({len(self.committed_task_ids)}/{len(self.task_ids)} acknowledged; "
            f"check the remote task list before retrying)"
        )


class OutputUnavailableError(BatchRunError):
    """Raised when a task's output stream is missing or unreadable."""
    pass


class TeardownError(BatchRunError):
    """Raised by a cluster backend when deleting a job or pool fails."""

    def __init__(self, kind: str, resource_id: str, message: str):
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"Failed to delete {kind} {resource_id}: {message}")


class OperationCancelled(BatchRunError):
    """Raised when the operator cancels staging before it completes."""
    pass
