"""
Pytest configuration and shared fixtures for batchrun tests.

This module provides in-memory fakes of the two remote services so the
orchestration components can be tested without AWS:

    FakeObjectStore: containers, uploads and expiring read tokens
    FakeComputeCluster: pools, jobs and tasks that step through scripted
        state progressions, one step per list_task_states call
"""

import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import pytest

from batchrun.src.exceptions import (
    OutputUnavailableError,
    ProvisioningError,
    SubmissionError,
    TeardownError,
    TransferError,
)
from batchrun.src.interfaces import ComputeCluster, ObjectStore
from batchrun.src.models import (
    ArtifactReference,
    CreateOutcome,
    DeleteOutcome,
    Pool,
    PoolState,
    TaskSpec,
    TaskState,
    TaskStatus,
)

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

DEFAULT_PROGRESSION = [TaskState.PENDING, TaskState.RUNNING, TaskState.COMPLETED]


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Controllable UTC wall clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class SteppingClock:
    """Monotonic clock that moves forward by `step` seconds on every read."""

    def __init__(self, step: float = 1.0):
        self.step = step
        self.value = 0.0

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


# =============================================================================
# Fake object store
# =============================================================================


class FakeObjectStore(ObjectStore):
    """
    In-memory ObjectStore.

    Args:
        fail_on: File names whose upload raises TransferError
        upload_delay: Seconds each upload blocks (to observe concurrency)
    """

    def __init__(self, fail_on: Sequence[str] = (), upload_delay: float = 0.0):
        self.containers: Dict[str, Dict[str, bytes]] = {}
        self.tokens: Dict[str, tuple] = {}
        self.uploaded: List[str] = []
        self.fail_on = set(fail_on)
        self.upload_delay = upload_delay

        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def ensure_container(self, name: str) -> CreateOutcome:
        if name in self.containers:
            return CreateOutcome.ALREADY_EXISTS
        self.containers[name] = {}
        return CreateOutcome.CREATED

    def upload_object(self, container: str, name: str, local_path: str) -> str:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.upload_delay:
                time.sleep(self.upload_delay)
            if name in self.fail_on:
                raise TransferError(local_path, "simulated network failure")
            data = Path(local_path).read_bytes()
            with self._lock:
                self.containers[container][name] = data
                self.uploaded.append(name)
            return f"fake://{container}/{name}"
        finally:
            with self._lock:
                self.in_flight -= 1

    def issue_read_token(self, container: str, name: str, expiry: datetime) -> str:
        url = f"https://fake.store/{container}/{name}?expires={expiry.isoformat()}"
        self.tokens[url] = (container, name, expiry)
        return url

    def read(self, url: str, now: datetime) -> bytes:
        """Dereference a token URL the way an unauthenticated node would."""
        container, name, expiry = self.tokens[url]
        if now >= expiry:
            raise PermissionError(f"token for {name} expired")
        return self.containers[container][name]


# =============================================================================
# Fake compute cluster
# =============================================================================


class FakeComputeCluster(ComputeCluster):
    """
    In-memory ComputeCluster.

    Each submitted task steps through progressions[task_id] (default
    Pending -> Running -> Completed), one step per list_task_states call,
    staying at the last state. A task "runs" by reading its artifact through
    the object store, so its output is the artifact's contents.

    Args:
        store: FakeObjectStore artifacts are read from (None: output is the command line)
        progressions: Per-task state sequences
        fail_submit_after: Acknowledge this many tasks, then raise SubmissionError
        fail_delete: Kinds ("job", "pool") whose deletion raises TeardownError
        missing_outputs: Task ids whose output stream is unavailable
    """

    def __init__(
        self,
        store: Optional[FakeObjectStore] = None,
        progressions: Optional[Dict[str, List[TaskState]]] = None,
        fail_submit_after: Optional[int] = None,
        fail_delete: Sequence[str] = (),
        missing_outputs: Sequence[str] = (),
    ):
        self.store = store
        self.progressions = progressions or {}
        self.fail_submit_after = fail_submit_after
        self.fail_delete = set(fail_delete)
        self.missing_outputs = set(missing_outputs)

        self.pools: Dict[str, Pool] = {}
        self.jobs: Dict[str, str] = {}
        self.tasks: Dict[str, "OrderedDict[str, dict]"] = {}
        self.calls: List[tuple] = []

    def create_pool(self, pool_id, node_count, vm_size, vm_image) -> CreateOutcome:
        self.calls.append(("create_pool", pool_id))
        if pool_id in self.pools:
            return CreateOutcome.ALREADY_EXISTS
        self.pools[pool_id] = Pool(
            pool_id=pool_id,
            target_node_count=node_count,
            vm_size=vm_size,
            vm_image=vm_image,
            state=PoolState.ACTIVE,
            outcome=CreateOutcome.ALREADY_EXISTS,
        )
        return CreateOutcome.CREATED

    def describe_pool(self, pool_id) -> Optional[Pool]:
        pool = self.pools.get(pool_id)
        if pool is None:
            return None
        return Pool(
            pool_id=pool.pool_id,
            target_node_count=pool.target_node_count,
            vm_size=pool.vm_size,
            vm_image=pool.vm_image,
            state=pool.state,
            outcome=CreateOutcome.ALREADY_EXISTS,
        )

    def create_job(self, job_id, pool_id) -> CreateOutcome:
        self.calls.append(("create_job", job_id))
        if pool_id not in self.pools:
            raise ProvisioningError(f"Pool {pool_id} does not exist")
        if job_id in self.jobs:
            return CreateOutcome.ALREADY_EXISTS
        self.jobs[job_id] = pool_id
        self.tasks[job_id] = OrderedDict()
        return CreateOutcome.CREATED

    def submit_tasks(self, job_id, specs: List[TaskSpec]) -> None:
        self.calls.append(("submit_tasks", job_id, [s.task_id for s in specs]))
        committed = []
        for spec in specs:
            if self.fail_submit_after is not None and len(committed) >= self.fail_submit_after:
                raise SubmissionError(job_id, [s.task_id for s in specs], "simulated", committed)
            self.tasks[job_id][spec.task_id] = {
                "spec": spec,
                "states": list(self.progressions.get(spec.task_id, DEFAULT_PROGRESSION)),
                "index": 0,
                "node_id": None,
            }
            committed.append(spec.task_id)

    def _assign_node(self, job_id: str, position: int) -> str:
        pool = self.pools[self.jobs[job_id]]
        return f"node-{position % max(pool.target_node_count, 1)}"

    def list_task_states(self, job_id) -> Iterator[TaskStatus]:
        self.calls.append(("list_task_states", job_id))
        for position, (task_id, task) in enumerate(self.tasks.get(job_id, {}).items()):
            state = task["states"][task["index"]]
            task["index"] = min(task["index"] + 1, len(task["states"]) - 1)
            if state != TaskState.PENDING and task["node_id"] is None:
                task["node_id"] = self._assign_node(job_id, position)
            yield TaskStatus(task_id=task_id, state=state, node_id=task["node_id"])

    def read_task_output(self, job_id, task_id, stream_name) -> str:
        task = self.tasks.get(job_id, {}).get(task_id)
        if task is None or task["node_id"] is None or task_id in self.missing_outputs:
            raise OutputUnavailableError(f"No {stream_name} for task {task_id}")
        spec = task["spec"]
        if self.store is None:
            return spec.command_line
        return self.store.read(spec.artifact.access_url, datetime.now(timezone.utc)).decode()

    def delete_job(self, job_id) -> DeleteOutcome:
        self.calls.append(("delete_job", job_id))
        if "job" in self.fail_delete:
            raise TeardownError("job", job_id, "simulated")
        if job_id not in self.jobs:
            return DeleteOutcome.ALREADY_ABSENT
        del self.jobs[job_id]
        self.tasks.pop(job_id, None)
        return DeleteOutcome.DELETED

    def delete_pool(self, pool_id) -> DeleteOutcome:
        self.calls.append(("delete_pool", pool_id))
        if "pool" in self.fail_delete:
            raise TeardownError("pool", pool_id, "simulated")
        if pool_id not in self.pools:
            return DeleteOutcome.ALREADY_ABSENT
        del self.pools[pool_id]
        return DeleteOutcome.DELETED


# =============================================================================
# Test Helpers
# =============================================================================


def make_artifact(name: str, expiry: datetime = T0 + timedelta(hours=2)) -> ArtifactReference:
    """Helper to create an ArtifactReference without staging."""
    return ArtifactReference(
        logical_name=name,
        local_path=f"/tmp/{name}",
        remote_location=f"fake://input/{name}",
        access_url=f"https://fake.store/input/{name}",
        expiry=expiry,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def cluster(object_store) -> FakeComputeCluster:
    return FakeComputeCluster(store=object_store)


@pytest.fixture
def input_files(tmp_path) -> List[str]:
    """Three small input files, as in the sample run."""
    paths = []
    for i, text in enumerate(
        [
            "6 mon cheri je veux te dire que je t'aime",
            "Chaque jour je t'aime plus",
            "je vais chanter",
        ]
    ):
        path = tmp_path / f"taskdata{i}.txt"
        path.write_text(text)
        paths.append(str(path))
    return paths


@pytest.fixture
def artifacts() -> List[ArtifactReference]:
    return [make_artifact(f"taskdata{i}.txt") for i in range(3)]
