"""
Job Submitter

Creates the job (idempotently) and submits one task per staged artifact.

Usage:
    from batchrun.src.batch import JobSubmitter

    submitter = JobSubmitter(cluster, command_template="cat {filename}")
    job = submitter.ensure_job("sampleJob", "samplePool")
    tasks = submitter.submit_tasks("sampleJob", references)

Submission is one batched call to the cluster. If it fails, the subset of
tasks committed remotely is unknown: SubmissionError is raised and callers
must not retry blindly. Re-running submit_tasks is safe, because task ids
already present in the job are skipped (see missing_task_ids).
"""

import logging
import shlex
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from batchrun.src.exceptions import ArtifactExpiredError
from batchrun.src.interfaces import ComputeCluster
from batchrun.src.models import (
    ArtifactReference,
    CreateOutcome,
    Job,
    Task,
    TaskSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = "cat {filename}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobSubmitter:
    """
    Submit one task per artifact to a job.

    Attributes:
        cluster: ComputeCluster the job lives on
        command_template: Task command line; {filename} is the artifact name
            as materialized in the task's working directory, shell-quoted
    """

    def __init__(
        self,
        cluster: ComputeCluster,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.cluster = cluster
        self.command_template = command_template
        self._clock = clock or _utcnow

    def ensure_job(self, job_id: str, pool_id: str) -> Job:
        """
        Create the job on the pool, or reuse it if job_id already exists.

        Returns:
            Job with outcome CREATED or ALREADY_EXISTS
        """
        logger.info(f"Creating job [{job_id}]...")
        outcome = self.cluster.create_job(job_id, pool_id)

        if outcome == CreateOutcome.ALREADY_EXISTS:
            logger.info(f"The job {job_id} already existed when we tried to create it")

        return Job(job_id=job_id, pool_id=pool_id, outcome=outcome)

    def build_task_specs(self, artifacts: Sequence[ArtifactReference]) -> List[TaskSpec]:
        """
        One TaskSpec per artifact, task ids Task0..TaskN-1 in artifact order.

        Each spec carries exactly one artifact. The file name is shell-quoted
        in the command line.
        """
        return [
            TaskSpec(
                task_id=f"Task{i}",
                command_line=self.command_template.format(
                    filename=shlex.quote(artifact.logical_name)
                ),
                artifact=artifact,
            )
            for i, artifact in enumerate(artifacts)
        ]

    def missing_task_ids(self, job_id: str, task_ids: Sequence[str]) -> List[str]:
        """
        Diff the intended task ids against the job's remote task list.

        Use after a SubmissionError to find what still needs submitting.

        Returns:
            Task ids not present in the job, in input order
        """
        existing = {status.task_id for status in self.cluster.list_task_states(job_id)}
        return [task_id for task_id in task_ids if task_id not in existing]

    def submit_tasks(
        self,
        job_id: str,
        artifacts: Sequence[ArtifactReference],
        skip_existing: bool = True,
    ) -> List[Task]:
        """
        Submit one task per artifact.

        Args:
            job_id: Job to add tasks to
            artifacts: Staged artifacts, one task each
            skip_existing: Skip task ids already present in the job

        Returns:
            One Task per artifact (including skipped, pre-existing ones)

        Raises:
            ValueError: If artifacts is empty
            ArtifactExpiredError: If an artifact's token has already expired
            SubmissionError: Submission failed; committed subset unknown
        """
        if not artifacts:
            raise ValueError("artifacts must be provided and non-empty")

        now = self._clock()
        expired = [a.logical_name for a in artifacts if not a.is_valid_at(now)]
        if expired:
            raise ArtifactExpiredError(f"Artifact access expired for: {expired}")

        specs = self.build_task_specs(artifacts)

        to_submit = specs
        if skip_existing:
            missing = set(self.missing_task_ids(job_id, [s.task_id for s in specs]))
            to_submit = [s for s in specs if s.task_id in missing]
            skipped = len(specs) - len(to_submit)
            if skipped:
                logger.warning(f"Skipping {skipped} tasks already present in job {job_id}")

        if to_submit:
            logger.info(f"Adding {len(to_submit)} tasks to job [{job_id}]...")
            self.cluster.submit_tasks(job_id, to_submit)

        return [
            Task(
                task_id=spec.task_id,
                job_id=job_id,
                command_line=spec.command_line,
                artifact=spec.artifact,
            )
            for spec in specs
        ]
