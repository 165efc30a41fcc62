"""
Run Orchestrator - Stage, provision, submit, monitor, collect, tear down.

This module provides the top-level driver for one batch run:
1. Stage input files in the object store with time-bounded read URLs
2. Ensure the pool exists (idempotent)
3. Ensure the job exists (idempotent) and submit one task per artifact
4. Monitor tasks until all are terminal or the deadline passes
5. Collect each task's output
6. Delete job and pool as decided by configuration flags

A failure in steps 1-3 aborts the run with the underlying error, and so does
an operator abort before monitoring starts (OperationCancelled). A monitor
timeout does not: the run continues with partial results and the summary
lists the tasks that timed out.

Usage:
    config = load_config("config/example.yaml")
    orchestrator = BatchRunOrchestrator(config)
    summary = orchestrator.run(["taskdata0.txt", "taskdata1.txt", "taskdata2.txt"])
"""

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from batchrun.src.batch import (
    ClusterProvisioner,
    CompletionMonitor,
    JobSubmitter,
    OutputCollector,
    TeardownManager,
)
from batchrun.src.config import RunConfig, load_config
from batchrun.src.connectors import AWSBatchCluster, S3ObjectStore
from batchrun.src.exceptions import BatchRunError, OperationCancelled
from batchrun.src.interfaces import ComputeCluster, ObjectStore
from batchrun.src.models import RunSummary, TaskState
from batchrun.src.staging import ArtifactStager

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_ERROR = 2


def _raise_if_cancelled(cancel_event: threading.Event, step: str) -> None:
    if cancel_event.is_set():
        raise OperationCancelled(f"Run cancelled before {step}")


class BatchRunOrchestrator:
    """
    Drive one batch run end to end.

    This is the main entry point for production runs.
    """

    def __init__(
        self,
        config: RunConfig,
        object_store: Optional[ObjectStore] = None,
        cluster: Optional[ComputeCluster] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Validated RunConfig
            object_store: Optional ObjectStore (default: S3ObjectStore)
            cluster: Optional ComputeCluster (default: AWSBatchCluster)
        """
        self.config = config
        self.object_store = object_store or S3ObjectStore(region=config.region)
        self.cluster = cluster or AWSBatchCluster(settings=config.aws, region=config.region)

        self.stager = ArtifactStager(
            self.object_store,
            expiry=timedelta(seconds=config.access_token_expiry),
            max_concurrent=config.upload_concurrency_limit,
        )
        self.provisioner = ClusterProvisioner(
            self.cluster, verify_existing=config.verify_existing_pool
        )
        self.submitter = JobSubmitter(self.cluster, command_template=config.task_command)
        self.monitor = CompletionMonitor(self.cluster, poll_interval=config.poll_interval)
        self.collector = OutputCollector(self.cluster, stream_name=config.output_stream)
        self.teardown_manager = TeardownManager(self.cluster)

    def run(
        self,
        input_paths: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> RunSummary:
        """
        Run the full pipeline.

        Args:
            input_paths: Local files, one task each
            cancel_event: Set to stop the run; provisioning and submission
                are not started once it is set, monitoring returns early

        Returns:
            RunSummary with monitor results, outputs and teardown outcomes

        Raises:
            TransferError: Staging failed
            OperationCancelled: cancel_event was set before monitoring
            ProvisioningError, botocore ClientError: Pool or job creation failed
            SubmissionError: Task submission failed (committed subset unknown)
        """
        config = self.config
        cancel_event = cancel_event or threading.Event()
        started_at = datetime.now(timezone.utc)
        timer = time.monotonic()

        logger.info(f"Run started: pool={config.pool_id}, job={config.job_id}, {len(input_paths)} inputs")

        references = self.stager.stage(config.container_name, input_paths, cancel_event)

        _raise_if_cancelled(cancel_event, "pool provisioning")
        pool = self.provisioner.ensure_pool(
            config.pool_id, config.target_node_count, config.vm_size, config.vm_image
        )
        _raise_if_cancelled(cancel_event, "job creation")
        job = self.submitter.ensure_job(config.job_id, pool.pool_id)
        _raise_if_cancelled(cancel_event, "task submission")
        tasks = self.submitter.submit_tasks(job.job_id, references)

        results = self.monitor.await_completion(
            job.job_id,
            [task.task_id for task in tasks],
            timeout=config.monitor_timeout,
            cancel_event=cancel_event,
        )

        by_id = {result.task_id: result for result in results}
        for task in tasks:
            result = by_id[task.task_id]
            task.state = result.final_state
            task.node_id = result.node_id

        outputs = self.collector.collect_outputs(job.job_id, results)

        summary = RunSummary(
            pool=pool,
            job=job,
            tasks=tasks,
            results=results,
            outputs=outputs,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            elapsed_seconds=time.monotonic() - timer,
        )

        summary.teardown = self.teardown_manager.teardown(
            job.job_id,
            pool.pool_id,
            delete_job=config.delete_job,
            delete_pool=config.delete_pool,
        )

        if summary.failed or summary.timed_out:
            logger.warning(
                f"Run completed with issues: {len(summary.succeeded)} succeeded, "
                f"{len(summary.failed)} failed, {len(summary.timed_out)} timed out"
            )
        else:
            logger.info(f"Run completed successfully: {len(summary.succeeded)} tasks")

        return summary


def print_report(summary: RunSummary) -> None:
    """Print task outputs and timing for the operator."""
    print()
    print("Printing task output...")
    for result in summary.results:
        output = summary.outputs.get(result.task_id)
        state = result.final_state.value + (" (timed out)" if result.timed_out else "")
        print(f"Task: {result.task_id}")
        print(f"Node: {result.node_id or '-'}")
        print(f"State: {state}")
        print("Standard out:")
        if output is not None and output.ok:
            print(output.output_text)
        else:
            print(f"  <unavailable: {output.error if output else 'not collected'}>")

    print()
    if summary.started_at:
        print(f"Sample start: {summary.started_at.isoformat()}")
    if summary.finished_at:
        print(f"Sample end: {summary.finished_at.isoformat()}")
    print(f"Elapsed time: {timedelta(seconds=round(summary.elapsed_seconds))}")

    print("\nResults:")
    print(f"  Succeeded: {len(summary.succeeded)}")
    print(f"  Failed: {len(summary.failed)}")
    print(f"  Timeout: {len(summary.timed_out)}")

    print("\nTeardown:")
    for kind in ("job", "pool"):
        print(f"  {kind.capitalize()}: {summary.teardown.get(kind, 'skipped')}")


def _config_from_args(args) -> RunConfig:
    config = load_config(args.config)
    return config.with_overrides(
        region=getattr(args, "region", None),
        pool_id=getattr(args, "pool_id", None),
        job_id=getattr(args, "job_id", None),
        target_node_count=getattr(args, "node_count", None),
        vm_size=getattr(args, "vm_size", None),
        vm_image=getattr(args, "vm_image", None),
        monitor_timeout=getattr(args, "timeout", None),
        access_token_expiry=getattr(args, "token_expiry", None),
        upload_concurrency_limit=getattr(args, "upload_concurrency", None),
        poll_interval=getattr(args, "poll_interval", None),
        container_name=getattr(args, "container", None),
        delete_job=getattr(args, "delete_job", None),
        delete_pool=getattr(args, "delete_pool", None),
    )


def cmd_run(args) -> int:
    """Run the full pipeline on the given input files."""
    config = _config_from_args(args)
    cancel_event = threading.Event()
    cluster = AWSBatchCluster(
        settings=config.aws, region=config.region, cancel_event=cancel_event
    )
    orchestrator = BatchRunOrchestrator(config, cluster=cluster)

    def request_cancel(signum, frame):
        logger.warning("Abort requested; stopping the run...")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, request_cancel)
    try:
        summary = orchestrator.run(args.files, cancel_event=cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_report(summary)

    if summary.all_completed:
        return EXIT_OK
    return EXIT_INCOMPLETE


def cmd_status(args) -> int:
    """Print the current state of every task in a job."""
    config = _config_from_args(args)
    cluster = AWSBatchCluster(settings=config.aws, region=config.region)

    statuses = sorted(cluster.list_task_states(config.job_id), key=lambda s: s.task_id)
    print(f"\nJob {config.job_id}: {len(statuses)} tasks")
    for status in statuses:
        print(f"  {status.task_id:<20} {status.state.value:<10} {status.node_id or '-'}")

    terminal = sum(1 for s in statuses if s.state.is_terminal)
    failed = sum(1 for s in statuses if s.state == TaskState.FAILED)
    print(f"\n  Terminal: {terminal}/{len(statuses)} ({failed} failed)")
    return EXIT_OK


def cmd_teardown(args) -> int:
    """Delete a job and/or pool left behind by an earlier run."""
    config = _config_from_args(args)
    cluster = AWSBatchCluster(settings=config.aws, region=config.region)

    outcome = TeardownManager(cluster).teardown(
        config.job_id,
        config.pool_id,
        delete_job=config.delete_job,
        delete_pool=config.delete_pool,
    )
    print(f"\nJob {config.job_id}: {outcome['job']}")
    print(f"Pool {config.pool_id}: {outcome['pool']}")
    return EXIT_INCOMPLETE if "failed" in outcome.values() else EXIT_OK


def _add_common_arguments(parser) -> None:
    parser.add_argument("--config", "-c", help="Path to YAML config file")
    parser.add_argument("--region", help="AWS region")
    parser.add_argument("--pool-id", help="Pool (compute environment) id")
    parser.add_argument("--job-id", help="Job (job queue) id")


def _add_teardown_flags(parser) -> None:
    parser.add_argument(
        "--delete-job",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Delete the job afterwards (default: from config, yes)",
    )
    parser.add_argument(
        "--delete-pool",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Delete the pool afterwards (default: from config, yes)",
    )


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint for batch runs."""
    from dotenv import load_dotenv

    parser = argparse.ArgumentParser(
        description="Orchestrate a batch run on AWS Batch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Full run, keep the pool for the next run
  batchrun run taskdata0.txt taskdata1.txt taskdata2.txt --no-delete-pool

  # Inspect task states of a job
  batchrun status --job-id sampleJob

  # Clean up a job and pool left behind
  batchrun teardown --job-id sampleJob --pool-id samplePool
        """,
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the full pipeline")
    run_parser.add_argument("files", nargs="+", help="Input files, one task each")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--node-count", type=int, help="Number of pool nodes")
    run_parser.add_argument("--vm-size", help="Instance type of the pool nodes")
    run_parser.add_argument("--vm-image", help="Batch image type or AMI id")
    run_parser.add_argument("--timeout", type=float, help="Monitor timeout in seconds")
    run_parser.add_argument("--token-expiry", type=float, help="Artifact URL lifetime in seconds")
    run_parser.add_argument("--upload-concurrency", type=int, help="Concurrent uploads")
    run_parser.add_argument("--poll-interval", type=float, help="Seconds between status polls")
    run_parser.add_argument("--container", help="Bucket to stage inputs in")
    _add_teardown_flags(run_parser)
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show task states of a job")
    _add_common_arguments(status_parser)
    status_parser.set_defaults(func=cmd_status)

    teardown_parser = subparsers.add_parser("teardown", help="Delete a job and/or pool")
    _add_common_arguments(teardown_parser)
    _add_teardown_flags(teardown_parser)
    teardown_parser.set_defaults(func=cmd_teardown)

    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info(f"Loaded environment from: {env_path.resolve()}")

    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_ERROR

    try:
        return args.func(args)
    except (BatchRunError, ClientError, BotoCoreError) as e:
        logger.error(f"Run aborted: {e}")
        print(f"\nError: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
