"""
AWSBatchCluster - AWS Batch implementation of the ComputeCluster interface.

Mapping:
    pool  -> managed EC2 compute environment, fixed size (min = desired = max)
    job   -> job queue bound to that compute environment
    task  -> Batch job submitted to the queue, jobName = task id
    node  -> ECS container instance the Batch job ran on
    output -> CloudWatch Logs stream of the job container

Each task container downloads its artifact into its working directory before
running the task command, using the ARTIFACT_URL / ARTIFACT_NAME environment
variables set at submission.

Usage:
    cluster = AWSBatchCluster(settings=config.aws, region="us-east-1")
    cluster.create_pool("samplePool", 2, "m5.large", "ECS_AL2")
    cluster.create_job("sampleJob", "samplePool")
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from batchrun.src.config import AWSBatchSettings
from batchrun.src.exceptions import (
    OperationCancelled,
    OutputUnavailableError,
    ProvisioningError,
    SubmissionError,
    TeardownError,
)
from batchrun.src.interfaces import ComputeCluster
from batchrun.src.models import (
    CreateOutcome,
    DeleteOutcome,
    Pool,
    PoolState,
    TaskSpec,
    TaskState,
    TaskStatus,
)

logger = logging.getLogger(__name__)

BATCH_STATUSES = (
    "SUBMITTED", "PENDING", "RUNNABLE", "STARTING", "RUNNING", "SUCCEEDED", "FAILED",
)
UNFINISHED_STATUSES = ("SUBMITTED", "PENDING", "RUNNABLE", "STARTING", "RUNNING")

TASK_STATE_MAP = {
    "SUBMITTED": TaskState.PENDING,
    "PENDING": TaskState.PENDING,
    "RUNNABLE": TaskState.PENDING,
    "STARTING": TaskState.RUNNING,
    "RUNNING": TaskState.RUNNING,
    "SUCCEEDED": TaskState.COMPLETED,
    "FAILED": TaskState.FAILED,
}

POOL_STATE_MAP = {
    "CREATING": PoolState.PROVISIONING,
    "UPDATING": PoolState.PROVISIONING,
    "INVALID": PoolState.PROVISIONING,
    "VALID": PoolState.ACTIVE,
    "DELETING": PoolState.DELETED,
    "DELETED": PoolState.DELETED,
}

# CloudWatch captures stdout and stderr of the container in a single stream
STDOUT_STREAMS = ("stdout", "stdout.txt")

FETCH_ARTIFACT = 'curl -sSf -o "$ARTIFACT_NAME" "$ARTIFACT_URL"'

# Batch API limits describe_jobs to 100 jobs per call
DESCRIBE_CHUNK = 100


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _error_message(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Message", "")


def _is_already_exists(e: ClientError) -> bool:
    return _error_code(e) == "ClientException" and "already exist" in _error_message(e).lower()


def _node_id(job: dict) -> Optional[str]:
    """Container instance id from a describe_jobs entry."""
    arn = job.get("container", {}).get("containerInstanceArn")
    if not arn:
        return None
    return arn.rsplit("/", 1)[-1]


def _chunks(items: List[str], size: int) -> Iterable[List[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


class AWSBatchCluster(ComputeCluster):
    """
    Compute cluster backed by AWS Batch.

    Attributes:
        settings: AWSBatchSettings (networking, roles, job definition, logs)
        region: AWS region
    """

    def __init__(
        self,
        settings: Optional[AWSBatchSettings] = None,
        region: str = "us-east-1",
        batch_client=None,
        logs_client=None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the cluster client.

        Args:
            settings: AWS specifics (default: AWSBatchSettings())
            region: AWS region
            batch_client: Optional Batch client (for testing)
            logs_client: Optional CloudWatch Logs client (for testing)
            cancel_event: Set to abandon waits for a pool or job to become VALID
        """
        self.settings = settings or AWSBatchSettings()
        self.region = region
        self._batch_client = batch_client or boto3.client("batch", region_name=region)
        self._logs_client = logs_client or boto3.client("logs", region_name=region)
        self._cancel_event = cancel_event

        # (job_id, task_id) -> Batch jobId, filled by submissions and listings
        self._job_ids: Dict[Tuple[str, str], str] = {}

    # ------------------------------------------------------------------
    # Pools (compute environments)
    # ------------------------------------------------------------------

    def _describe_compute_environment(self, pool_id: str) -> Optional[dict]:
        response = self._batch_client.describe_compute_environments(
            computeEnvironments=[pool_id]
        )
        environments = response.get("computeEnvironments", [])
        return environments[0] if environments else None

    def create_pool(
        self,
        pool_id: str,
        node_count: int,
        vm_size: str,
        vm_image: str,
    ) -> CreateOutcome:
        """
        Create a fixed-size managed compute environment.

        Creation is asynchronous on the service side; create_job waits for the
        environment to become VALID.
        """
        vcpus = node_count * self.settings.vcpus_per_node

        if vm_image.startswith("ami-"):
            ec2_configuration = [{"imageType": "ECS_AL2", "imageIdOverride": vm_image}]
        else:
            ec2_configuration = [{"imageType": vm_image}]

        compute_resources = {
            "type": "EC2",
            "minvCpus": vcpus,
            "desiredvCpus": vcpus,
            "maxvCpus": vcpus,
            "instanceTypes": [vm_size],
            "subnets": self.settings.subnets,
            "securityGroupIds": self.settings.security_group_ids,
            "instanceRole": self.settings.instance_role,
            "ec2Configuration": ec2_configuration,
        }
        kwargs = {
            "computeEnvironmentName": pool_id,
            "type": "MANAGED",
            "state": "ENABLED",
            "computeResources": compute_resources,
        }
        if self.settings.service_role:
            kwargs["serviceRole"] = self.settings.service_role

        try:
            self._batch_client.create_compute_environment(**kwargs)
        except ClientError as e:
            if _is_already_exists(e):
                return CreateOutcome.ALREADY_EXISTS
            raise

        logger.info(
            f"Created compute environment {pool_id}: {node_count} x {vm_size} "
            f"({vcpus} vCPUs, image {vm_image})"
        )
        return CreateOutcome.CREATED

    def describe_pool(self, pool_id: str) -> Optional[Pool]:
        environment = self._describe_compute_environment(pool_id)
        if environment is None:
            return None

        resources = environment.get("computeResources", {})
        instance_types = resources.get("instanceTypes") or [""]
        ec2_configuration = (resources.get("ec2Configuration") or [{}])[0]

        return Pool(
            pool_id=pool_id,
            target_node_count=resources.get("desiredvCpus", 0) // self.settings.vcpus_per_node,
            vm_size=instance_types[0],
            vm_image=ec2_configuration.get("imageIdOverride")
            or ec2_configuration.get("imageType", ""),
            state=POOL_STATE_MAP.get(environment.get("status", ""), PoolState.PROVISIONING),
            outcome=CreateOutcome.ALREADY_EXISTS,
        )

    # ------------------------------------------------------------------
    # Jobs (job queues)
    # ------------------------------------------------------------------

    def _describe_job_queue(self, job_id: str) -> Optional[dict]:
        response = self._batch_client.describe_job_queues(jobQueues=[job_id])
        queues = response.get("jobQueues", [])
        return queues[0] if queues else None

    def _wait_for(
        self,
        describe: Callable[[str], Optional[dict]],
        name: str,
        done: Callable[[Optional[dict]], bool],
        what: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Optional[dict]:
        """Poll describe(name) until done(resource), provisioning_timeout or cancel_event."""
        timeout = self.settings.provisioning_timeout
        deadline = time.monotonic() + timeout

        while True:
            resource = describe(name)
            if done(resource):
                return resource
            if time.monotonic() >= deadline:
                raise ProvisioningError(f"Timed out after {timeout:.0f}s waiting for {what}")
            logger.debug(f"Waiting for {what} (status={resource and resource.get('status')})")
            interval = self.settings.provisioning_poll_interval
            if cancel_event is None:
                time.sleep(interval)
            elif cancel_event.wait(interval):
                raise OperationCancelled(f"Cancelled while waiting for {what}")

    @staticmethod
    def _is_valid(kind: str, name: str) -> Callable[[Optional[dict]], bool]:
        def check(resource: Optional[dict]) -> bool:
            if resource is None:
                raise ProvisioningError(f"{kind} {name} does not exist")
            status = resource.get("status")
            if status == "INVALID":
                raise ProvisioningError(
                    f"{kind} {name} is INVALID: {resource.get('statusReason', 'no reason given')}"
                )
            if status in ("DELETING", "DELETED"):
                raise ProvisioningError(f"{kind} {name} is being deleted")
            return status == "VALID"

        return check

    def _ensure_job_definition(self) -> None:
        name = self.settings.job_definition
        response = self._batch_client.describe_job_definitions(
            jobDefinitionName=name, status="ACTIVE"
        )
        if response.get("jobDefinitions"):
            return

        self._batch_client.register_job_definition(
            jobDefinitionName=name,
            type="container",
            containerProperties={
                "image": self.settings.container_image,
                "command": ["sh", "-c", "true"],
                "resourceRequirements": [
                    {"type": "VCPU", "value": str(self.settings.container_vcpus)},
                    {"type": "MEMORY", "value": str(self.settings.container_memory)},
                ],
            },
        )
        logger.info(f"Registered job definition {name} ({self.settings.container_image})")

    def create_job(self, job_id: str, pool_id: str) -> CreateOutcome:
        """
        Create a job queue bound to the pool's compute environment.

        Blocks until the compute environment and the queue are VALID, since
        Batch rejects queues on environments still being created and jobs on
        queues still being created.

        Raises:
            ProvisioningError: Environment or queue INVALID, or not ready in time
            OperationCancelled: cancel_event was set while waiting
        """
        self._wait_for(
            self._describe_compute_environment,
            pool_id,
            self._is_valid("Compute environment", pool_id),
            f"compute environment {pool_id}",
            cancel_event=self._cancel_event,
        )
        self._ensure_job_definition()

        outcome = CreateOutcome.CREATED
        try:
            self._batch_client.create_job_queue(
                jobQueueName=job_id,
                state="ENABLED",
                priority=1,
                computeEnvironmentOrder=[{"order": 1, "computeEnvironment": pool_id}],
            )
            logger.info(f"Created job queue {job_id} on compute environment {pool_id}")
        except ClientError as e:
            if not _is_already_exists(e):
                raise
            outcome = CreateOutcome.ALREADY_EXISTS

        self._wait_for(
            self._describe_job_queue,
            job_id,
            self._is_valid("Job queue", job_id),
            f"job queue {job_id}",
            cancel_event=self._cancel_event,
        )
        return outcome

    # ------------------------------------------------------------------
    # Tasks (Batch jobs)
    # ------------------------------------------------------------------

    def submit_tasks(self, job_id: str, specs: List[TaskSpec]) -> None:
        """
        Submit one Batch job per task spec.

        Batch has no multi-job submit, so a failure part way leaves an
        unknown suffix uncommitted; SubmissionError lists what was acknowledged.
        """
        committed: List[str] = []
        task_ids = [spec.task_id for spec in specs]

        for spec in specs:
            try:
                response = self._batch_client.submit_job(
                    jobName=spec.task_id,
                    jobQueue=job_id,
                    jobDefinition=self.settings.job_definition,
                    containerOverrides={
                        "command": ["sh", "-c", f"{FETCH_ARTIFACT} && {spec.command_line}"],
                        "environment": [
                            {"name": "ARTIFACT_URL", "value": spec.artifact.access_url},
                            {"name": "ARTIFACT_NAME", "value": spec.artifact.logical_name},
                        ],
                    },
                )
            except (ClientError, BotoCoreError) as e:
                raise SubmissionError(job_id, task_ids, str(e), committed) from e

            self._job_ids[(job_id, spec.task_id)] = response["jobId"]
            committed.append(spec.task_id)
            logger.debug(f"Submitted task {spec.task_id} (Batch job {response['jobId']})")

        logger.info(f"Submitted {len(committed)} tasks to job queue {job_id}")

    def _list_jobs(self, job_id: str, statuses: Iterable[str] = BATCH_STATUSES) -> Dict[str, dict]:
        """Latest Batch job summary per task id (jobName) in the queue."""
        paginator = self._batch_client.get_paginator("list_jobs")
        latest: Dict[str, dict] = {}

        for status in statuses:
            for page in paginator.paginate(jobQueue=job_id, jobStatus=status):
                for summary in page.get("jobSummaryList", []):
                    name = summary["jobName"]
                    current = latest.get(name)
                    if current is None or summary.get("createdAt", 0) >= current.get("createdAt", 0):
                        latest[name] = summary

        for name, summary in latest.items():
            self._job_ids[(job_id, name)] = summary["jobId"]
        return latest

    def _describe_jobs(self, batch_job_ids: List[str]) -> Dict[str, dict]:
        described = {}
        for chunk in _chunks(batch_job_ids, DESCRIBE_CHUNK):
            response = self._batch_client.describe_jobs(jobs=chunk)
            for job in response.get("jobs", []):
                described[job["jobId"]] = job
        return described

    def list_task_states(self, job_id: str) -> Iterator[TaskStatus]:
        summaries = self._list_jobs(job_id)

        # Only started jobs have a container instance to report
        started = [
            s["jobId"] for s in summaries.values()
            if TASK_STATE_MAP[s["status"]] != TaskState.PENDING
        ]
        described = self._describe_jobs(started) if started else {}

        for task_id, summary in summaries.items():
            job = described.get(summary["jobId"], {})
            yield TaskStatus(
                task_id=task_id,
                state=TASK_STATE_MAP[summary["status"]],
                node_id=_node_id(job),
            )

    def _resolve_batch_job_id(self, job_id: str, task_id: str) -> Optional[str]:
        key = (job_id, task_id)
        if key not in self._job_ids:
            self._list_jobs(job_id)
        return self._job_ids.get(key)

    def read_task_output(self, job_id: str, task_id: str, stream_name: str) -> str:
        """
        Read the CloudWatch log stream of a task's container.

        Raises:
            OutputUnavailableError: Unknown task, no log stream yet, or a
                CloudWatch error
        """
        if stream_name not in STDOUT_STREAMS:
            raise OutputUnavailableError(
                f"Stream {stream_name!r} is not captured; Batch records stdout only"
            )

        try:
            batch_job_id = self._resolve_batch_job_id(job_id, task_id)
            if batch_job_id is None:
                raise OutputUnavailableError(f"Task {task_id} not found in job {job_id}")

            jobs = self._batch_client.describe_jobs(jobs=[batch_job_id]).get("jobs", [])
            log_stream = jobs[0].get("container", {}).get("logStreamName") if jobs else None
            if not log_stream:
                raise OutputUnavailableError(f"Task {task_id} has no log stream (never started?)")

            lines: List[str] = []
            token = None
            while True:
                kwargs = {
                    "logGroupName": self.settings.log_group,
                    "logStreamName": log_stream,
                    "startFromHead": True,
                }
                if token:
                    kwargs["nextToken"] = token
                response = self._logs_client.get_log_events(**kwargs)
                events = response.get("events", [])
                lines.extend(event["message"] for event in events)

                next_token = response.get("nextForwardToken")
                # The forward token repeats once the end of the stream is reached
                if not events or next_token == token:
                    break
                token = next_token
        except (ClientError, BotoCoreError) as e:
            raise OutputUnavailableError(f"Cannot read output of task {task_id}: {e}") from e

        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _terminate_unfinished(self, job_id: str) -> int:
        summaries = self._list_jobs(job_id, UNFINISHED_STATUSES)
        for task_id, summary in summaries.items():
            self._batch_client.terminate_job(
                jobId=summary["jobId"], reason="batchrun teardown"
            )
            logger.info(f"Terminated unfinished task {task_id} ({summary['status']})")
        return len(summaries)

    @staticmethod
    def _settled(resource: Optional[dict]) -> bool:
        return resource is None or resource.get("status") not in ("CREATING", "UPDATING")

    @staticmethod
    def _gone(resource: Optional[dict]) -> bool:
        return resource is None or resource.get("status") == "DELETED"

    def _disable_and_delete(
        self,
        kind: str,
        name: str,
        describe: Callable[[str], Optional[dict]],
        disable: Callable[[], None],
        delete: Callable[[], None],
    ) -> DeleteOutcome:
        try:
            resource = describe(name)
            if resource is None or resource.get("status") in ("DELETING", "DELETED"):
                logger.info(f"{kind} {name} already absent")
                return DeleteOutcome.ALREADY_ABSENT

            disable()
            self._wait_for(describe, name, self._settled, f"{kind} {name} to be disabled")
            delete()
        except (ClientError, BotoCoreError, ProvisioningError) as e:
            raise TeardownError(kind, name, str(e)) from e

        try:
            self._wait_for(describe, name, self._gone, f"{kind} {name} deletion")
        except ProvisioningError:
            # Deletion is accepted and continues service-side
            logger.warning(f"{kind} {name} still deleting after {self.settings.provisioning_timeout:.0f}s")

        logger.info(f"Deleted {kind} {name}")
        return DeleteOutcome.DELETED

    def _disable_job_queue(self, job_id: str) -> None:
        self._terminate_unfinished(job_id)
        self._batch_client.update_job_queue(jobQueue=job_id, state="DISABLED")

    def delete_job(self, job_id: str) -> DeleteOutcome:
        """Terminate unfinished tasks, then disable and delete the job queue."""
        return self._disable_and_delete(
            "job",
            job_id,
            self._describe_job_queue,
            lambda: self._disable_job_queue(job_id),
            lambda: self._batch_client.delete_job_queue(jobQueue=job_id),
        )

    def delete_pool(self, pool_id: str) -> DeleteOutcome:
        """Disable and delete the compute environment."""
        return self._disable_and_delete(
            "pool",
            pool_id,
            self._describe_compute_environment,
            lambda: self._batch_client.update_compute_environment(
                computeEnvironment=pool_id, state="DISABLED"
            ),
            lambda: self._batch_client.delete_compute_environment(computeEnvironment=pool_id),
        )
