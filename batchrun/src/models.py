"""
Data models for the batchrun orchestrator.

These dataclasses define the contract between the orchestration components
and the two remote services (object store, compute cluster).

Design Philosophy:
    - Pool and job ids are chosen by the caller, never generated remotely
    - "Already exists" / "already gone" are outcomes, not exceptions
    - Failed is always reported distinctly from Completed
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class TaskState(str, Enum):
    """Lifecycle of a task: Pending -> Running -> {Completed | Failed}."""

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED)


class PoolState(str, Enum):
    PROVISIONING = "Provisioning"
    ACTIVE = "Active"
    DELETED = "Deleted"


class CreateOutcome(str, Enum):
    """Result of an idempotent create call."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class DeleteOutcome(str, Enum):
    """Result of an idempotent delete call."""

    DELETED = "deleted"
    ALREADY_ABSENT = "already_absent"


@dataclass(frozen=True)
class ArtifactReference:
    """
    Time-bounded, read-only pointer to an uploaded input file.

    Attributes:
        logical_name: Name of the object in the container (the file name)
        local_path: Path the file was uploaded from
        remote_location: Location of the object (e.g. s3://bucket/key)
        access_url: Signed URL carrying the read-only access token
        expiry: UTC instant after which access_url must not be used
    """

    logical_name: str
    local_path: str
    remote_location: str
    access_url: str
    expiry: datetime

    def is_valid_at(self, now: datetime) -> bool:
        """True while the access token may still be dereferenced."""
        return now < self.expiry


@dataclass
class Pool:
    """
    A named group of worker nodes.

    Attributes:
        pool_id: Caller-chosen id, unique per account
        target_node_count: Fixed number of worker nodes
        vm_size: Instance type of each node
        vm_image: Image type or AMI id the nodes boot from
        state: Provisioning, Active or Deleted
        outcome: Whether this call created the pool or found it existing
    """

    pool_id: str
    target_node_count: int
    vm_size: str
    vm_image: str
    state: PoolState = PoolState.PROVISIONING
    outcome: CreateOutcome = CreateOutcome.CREATED


@dataclass
class Job:
    """A named unit of work bound to one pool."""

    job_id: str
    pool_id: str
    outcome: CreateOutcome = CreateOutcome.CREATED


@dataclass(frozen=True)
class TaskSpec:
    """What is sent to the cluster for one task: a command and one artifact."""

    task_id: str
    command_line: str
    artifact: ArtifactReference


@dataclass
class Task:
    """
    A submitted task.

    Attributes:
        task_id: Unique within the job
        job_id: Job the task belongs to
        command_line: Command run on the node once the artifact is downloaded
        artifact: The single attached ArtifactReference
        state: Last known TaskState
        node_id: Node the task was assigned to (set once Running)
    """

    task_id: str
    job_id: str
    command_line: str
    artifact: ArtifactReference
    state: TaskState = TaskState.PENDING
    node_id: Optional[str] = None


@dataclass(frozen=True)
class TaskStatus:
    """One observation of a task reported by the cluster."""

    task_id: str
    state: TaskState
    node_id: Optional[str] = None


@dataclass
class MonitorResult:
    """
    Final observation of one task by the CompletionMonitor.

    timed_out is True when the task had not reached a terminal state when the
    monitor stopped (deadline or cancellation); final_state is then the last
    state observed.
    """

    task_id: str
    final_state: TaskState
    timed_out: bool = False
    node_id: Optional[str] = None


@dataclass
class TaskOutput:
    """Recorded output of one task, or the reason it could not be read."""

    task_id: str
    node_id: Optional[str]
    output_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.output_text is not None


@dataclass
class RunSummary:
    """Everything a single orchestrated run produced."""

    pool: Pool
    job: Job
    tasks: List[Task]
    results: List[MonitorResult]
    outputs: Dict[str, TaskOutput] = field(default_factory=dict)
    teardown: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> List[str]:
        return [
            r.task_id for r in self.results
            if not r.timed_out and r.final_state == TaskState.COMPLETED
        ]

    @property
    def failed(self) -> List[str]:
        return [
            r.task_id for r in self.results
            if not r.timed_out and r.final_state == TaskState.FAILED
        ]

    @property
    def timed_out(self) -> List[str]:
        return [r.task_id for r in self.results if r.timed_out]

    @property
    def all_completed(self) -> bool:
        return len(self.succeeded) == len(self.results)
