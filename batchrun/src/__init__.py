"""
batchrun - Batch run orchestration on an elastic compute cluster

This package stages input files in object storage, provisions a fixed-size
worker pool, submits one task per file, waits for completion within a
deadline, collects task output and tears the resources down.

Core modules:
    - models: Data classes (ArtifactReference, Pool, Job, Task, MonitorResult, ...)
    - interfaces: Abstract interfaces (ObjectStore, ComputeCluster)
    - connectors: AWS implementations (S3ObjectStore, AWSBatchCluster)
    - staging, batch, orchestrate: The run lifecycle components
"""

from batchrun.src.models import (
    ArtifactReference,
    CreateOutcome,
    DeleteOutcome,
    Job,
    MonitorResult,
    Pool,
    PoolState,
    RunSummary,
    Task,
    TaskOutput,
    TaskSpec,
    TaskState,
    TaskStatus,
)
from batchrun.src.interfaces import ComputeCluster, ObjectStore

__all__ = [
    "ArtifactReference",
    "CreateOutcome",
    "DeleteOutcome",
    "Job",
    "MonitorResult",
    "Pool",
    "PoolState",
    "RunSummary",
    "Task",
    "TaskOutput",
    "TaskSpec",
    "TaskState",
    "TaskStatus",
    "ComputeCluster",
    "ObjectStore",
]
