"""
Run configuration for the batchrun orchestrator.

Configuration is resolved in three layers, later layers winning:
    1. YAML file (see config/example.yaml)
    2. BATCHRUN_* environment variables (e.g. BATCHRUN_POOL_ID)
    3. CLI flags (applied by the run_orchestrator CLI)

The resulting RunConfig is passed explicitly into the orchestrator; nothing in
the package reads credentials or settings from module-level state.

Usage:
    config = load_config("config/production.yaml")
    orchestrator = BatchRunOrchestrator(config)
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from batchrun.src.exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "BATCHRUN_"

# Defaults mirror the sample run: 2 nodes, 30 minute monitor, 2 hour tokens
DEFAULT_POOL_ID = "samplePool"
DEFAULT_JOB_ID = "sampleJob"
DEFAULT_NODE_COUNT = 2
DEFAULT_VM_SIZE = "m5.large"
DEFAULT_VM_IMAGE = "ECS_AL2"
DEFAULT_MONITOR_TIMEOUT = 30 * 60.0
DEFAULT_TOKEN_EXPIRY = 2 * 60 * 60.0
DEFAULT_UPLOAD_CONCURRENCY = 4
DEFAULT_POLL_INTERVAL = 15.0

# SigV4 presigned URLs cannot outlive 7 days
MAX_TOKEN_EXPIRY = 7 * 24 * 60 * 60


@dataclass
class AWSBatchSettings:
    """
    AWS specifics of the compute cluster.

    Attributes:
        subnets: VPC subnets the compute environment launches nodes into
        security_group_ids: Security groups attached to the nodes
        instance_role: ECS instance profile name or ARN for the nodes
        service_role: Batch service role ARN (None = service-linked role)
        vcpus_per_node: vCPUs of one vm_size instance; a fixed-size pool of
            N nodes is min = desired = max = N * vcpus_per_node vCPUs
        job_definition: Name of the job definition tasks run under
        container_image: Image of the task container (needs sh and curl)
        container_vcpus: vCPUs reserved per task
        container_memory: MiB reserved per task
        log_group: CloudWatch log group Batch writes task output to
        provisioning_timeout: Seconds to wait for pool / job to become VALID
        provisioning_poll_interval: Seconds between provisioning checks
    """

    subnets: List[str] = field(default_factory=list)
    security_group_ids: List[str] = field(default_factory=list)
    instance_role: str = "ecsInstanceRole"
    service_role: Optional[str] = None
    vcpus_per_node: int = 2
    job_definition: str = "batchrun-task"
    container_image: str = "public.ecr.aws/amazonlinux/amazonlinux:2023"
    container_vcpus: int = 1
    container_memory: int = 512
    log_group: str = "/aws/batch/job"
    provisioning_timeout: float = 900.0
    provisioning_poll_interval: float = 10.0


@dataclass
class RunConfig:
    """
    Everything one orchestrated run needs.

    Attributes:
        pool_id: Caller-chosen pool id (compute environment name)
        job_id: Caller-chosen job id (job queue name)
        target_node_count: Fixed number of worker nodes
        vm_size: Instance type of the nodes
        vm_image: Batch image type (ECS_AL2, ECS_AL2023, ...) or an AMI id
        monitor_timeout: Seconds to wait for all tasks to reach a terminal state
        access_token_expiry: Lifetime in seconds of artifact read tokens
        upload_concurrency_limit: Maximum concurrent artifact uploads
        container_name: Bucket input artifacts are staged in
        region: AWS region
        poll_interval: Seconds between task state polls
        task_command: Task command line template, {filename} = artifact name
        output_stream: Output stream read for each task
        delete_job: Delete the job after the run
        delete_pool: Delete the pool after the run
        verify_existing_pool: Fail instead of warn when an existing pool
            does not match the requested size or VM configuration
        aws: AWS Batch specifics
    """

    pool_id: str = DEFAULT_POOL_ID
    job_id: str = DEFAULT_JOB_ID
    target_node_count: int = DEFAULT_NODE_COUNT
    vm_size: str = DEFAULT_VM_SIZE
    vm_image: str = DEFAULT_VM_IMAGE
    monitor_timeout: float = DEFAULT_MONITOR_TIMEOUT
    access_token_expiry: float = DEFAULT_TOKEN_EXPIRY
    upload_concurrency_limit: int = DEFAULT_UPLOAD_CONCURRENCY
    container_name: str = "batchrun-input"
    region: str = "us-east-1"
    poll_interval: float = DEFAULT_POLL_INTERVAL
    task_command: str = "cat {filename}"
    output_stream: str = "stdout"
    delete_job: bool = True
    delete_pool: bool = True
    verify_existing_pool: bool = False
    aws: AWSBatchSettings = field(default_factory=AWSBatchSettings)

    def validate(self) -> "RunConfig":
        """
        Check value ranges.

        Returns:
            self, for chaining

        Raises:
            ConfigError: On the first invalid value
        """
        if not self.pool_id or not self.job_id:
            raise ConfigError("pool_id and job_id must be non-empty")
        if self.target_node_count < 0:
            raise ConfigError(f"target_node_count must be >= 0, got {self.target_node_count}")
        if self.monitor_timeout <= 0:
            raise ConfigError(f"monitor_timeout must be > 0, got {self.monitor_timeout}")
        if not 0 < self.access_token_expiry <= MAX_TOKEN_EXPIRY:
            raise ConfigError(
                f"access_token_expiry must be in (0, {MAX_TOKEN_EXPIRY}], "
                f"got {self.access_token_expiry}"
            )
        if self.access_token_expiry <= self.monitor_timeout:
            # Tokens must outlive queueing + node provisioning
            logger.warning(
                f"access_token_expiry ({self.access_token_expiry}s) does not exceed "
                f"monitor_timeout ({self.monitor_timeout}s); late-starting tasks "
                f"may find their artifact URL expired"
            )
        if self.upload_concurrency_limit < 1:
            raise ConfigError(
                f"upload_concurrency_limit must be >= 1, got {self.upload_concurrency_limit}"
            )
        if self.poll_interval < 0:
            raise ConfigError(f"poll_interval must be >= 0, got {self.poll_interval}")
        if "{filename}" not in self.task_command:
            raise ConfigError("task_command must reference {filename}")
        if self.aws.vcpus_per_node < 1:
            raise ConfigError(f"aws.vcpus_per_node must be >= 1, got {self.aws.vcpus_per_node}")
        return self

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with non-None overrides applied (used for CLI flags)."""
        applied = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **applied).validate()


def _coerce(name: str, value: Any, template: Any) -> Any:
    """Convert a YAML/env value to the type of the field default."""
    if isinstance(template, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "y", "on"):
            return True
        if text in ("0", "false", "no", "n", "off"):
            return False
        raise ConfigError(f"{name}: expected a boolean, got {value!r}")
    if isinstance(template, list):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return [str(item) for item in value]
        raise ConfigError(f"{name}: expected a list, got {value!r}")
    if isinstance(template, (int, float)):
        try:
            return type(template)(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name}: expected a number, got {value!r}") from e
    if value is None:
        return None
    return str(value)


def _build(cls, values: Mapping[str, Any], section: str = ""):
    known = {f.name: f for f in fields(cls)}
    unknown = set(values) - set(known)
    if unknown:
        raise ConfigError(f"Unknown config keys{' in ' + section if section else ''}: {sorted(unknown)}")

    defaults = cls()
    kwargs = {}
    for name, value in values.items():
        if name == "aws" and cls is RunConfig:
            if not isinstance(value, Mapping):
                raise ConfigError("aws: expected a mapping")
            kwargs[name] = _build(AWSBatchSettings, value, section="aws")
            continue
        kwargs[name] = _coerce(f"{section}.{name}" if section else name, value, getattr(defaults, name))
    return cls(**kwargs)


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Collect BATCHRUN_<FIELD> and BATCHRUN_AWS_<FIELD> variables."""
    top = {f.name for f in fields(RunConfig)} - {"aws"}
    aws = {f.name for f in fields(AWSBatchSettings)}
    values: Dict[str, Any] = {}
    aws_values: Dict[str, Any] = {}

    for key, value in env.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name.startswith("aws_") and name[4:] in aws:
            aws_values[name[4:]] = value
        elif name in top:
            values[name] = value

    if aws_values:
        values["aws"] = aws_values
    return values


def load_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunConfig:
    """
    Load and validate a RunConfig.

    Args:
        path: Optional YAML file; missing file raises ConfigError
        env: Environment mapping (default: os.environ)

    Returns:
        Validated RunConfig

    Raises:
        ConfigError: Unknown keys, unparseable values or invalid ranges
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        values.update(loaded)
        logger.info(f"Loaded config from: {path}")

    overrides = _env_overrides(env)
    if overrides:
        aws_overrides = overrides.pop("aws", None)
        values.update(overrides)
        if aws_overrides:
            values["aws"] = {**(values.get("aws") or {}), **aws_overrides}
        logger.info(f"Applied environment overrides: {sorted(overrides)}")

    return _build(RunConfig, values).validate()
