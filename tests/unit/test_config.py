"""
Unit tests for run configuration loading.

Covers YAML parsing, BATCHRUN_* environment overrides, CLI-style overrides
and range validation.
"""

import logging

import pytest
import yaml

from batchrun.src.config import (
    DEFAULT_MONITOR_TIMEOUT,
    DEFAULT_TOKEN_EXPIRY,
    RunConfig,
    load_config,
)
from batchrun.src.exceptions import ConfigError


class TestDefaults:
    """Defaults should describe the sample run."""

    def test_sample_run_defaults(self):
        config = load_config(env={})

        assert config.pool_id == "samplePool"
        assert config.job_id == "sampleJob"
        assert config.target_node_count == 2
        assert config.monitor_timeout == DEFAULT_MONITOR_TIMEOUT == 1800
        assert config.access_token_expiry == DEFAULT_TOKEN_EXPIRY == 7200
        assert config.task_command == "cat {filename}"
        assert config.delete_job is True
        assert config.delete_pool is True

    def test_token_expiry_exceeds_monitor_timeout(self):
        config = RunConfig()
        assert config.access_token_expiry > config.monitor_timeout


class TestLoadYaml:
    """Tests for loading from a YAML file."""

    def test_load_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "pool_id": "myPool",
            "target_node_count": 4,
            "monitor_timeout": 600,
            "delete_pool": False,
            "aws": {"subnets": ["subnet-a", "subnet-b"], "vcpus_per_node": 4},
        }))

        config = load_config(path, env={})

        assert config.pool_id == "myPool"
        assert config.target_node_count == 4
        assert config.monitor_timeout == 600.0
        assert isinstance(config.monitor_timeout, float)
        assert config.delete_pool is False
        assert config.aws.subnets == ["subnet-a", "subnet-b"]
        assert config.aws.vcpus_per_node == 4
        # Untouched nested defaults survive
        assert config.aws.instance_role == "ecsInstanceRole"

    def test_example_config_loads(self):
        from pathlib import Path

        example = Path(__file__).resolve().parents[2] / "config" / "example.yaml"
        config = load_config(example, env={})
        assert config.pool_id == "samplePool"
        assert config.aws.job_definition == "batchrun-task"

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path, env={}) == RunConfig()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yaml", env={})

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path, env={})

    def test_unknown_key_raises(self, tmp_path):
        path = tmp_path / "typo.yaml"
        path.write_text("pool_idd: oops\n")
        with pytest.raises(ConfigError, match="pool_idd"):
            load_config(path, env={})

    def test_unknown_aws_key_raises(self, tmp_path):
        path = tmp_path / "typo.yaml"
        path.write_text("aws:\n  subnet: x\n")
        with pytest.raises(ConfigError, match="aws"):
            load_config(path, env={})


class TestEnvOverrides:
    """Tests for BATCHRUN_* environment variables."""

    def test_env_overrides_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("pool_id: fromYaml\njob_id: jobYaml\n")

        config = load_config(path, env={"BATCHRUN_POOL_ID": "fromEnv"})

        assert config.pool_id == "fromEnv"
        assert config.job_id == "jobYaml"

    def test_env_values_are_coerced(self):
        config = load_config(env={
            "BATCHRUN_TARGET_NODE_COUNT": "3",
            "BATCHRUN_MONITOR_TIMEOUT": "900.5",
            "BATCHRUN_DELETE_POOL": "no",
        })
        assert config.target_node_count == 3
        assert config.monitor_timeout == 900.5
        assert config.delete_pool is False

    def test_aws_env_overrides_merge_with_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("aws:\n  instance_role: myRole\n")

        config = load_config(path, env={"BATCHRUN_AWS_SUBNETS": "subnet-a, subnet-b"})

        assert config.aws.subnets == ["subnet-a", "subnet-b"]
        assert config.aws.instance_role == "myRole"

    def test_unrelated_env_ignored(self):
        config = load_config(env={"BATCHRUN_NOT_A_FIELD": "x", "HOME": "/root"})
        assert config == RunConfig()

    def test_bad_boolean_raises(self):
        with pytest.raises(ConfigError, match="boolean"):
            load_config(env={"BATCHRUN_DELETE_JOB": "maybe"})

    def test_bad_number_raises(self):
        with pytest.raises(ConfigError, match="number"):
            load_config(env={"BATCHRUN_MONITOR_TIMEOUT": "soon"})


class TestValidation:
    """Tests for RunConfig.validate and with_overrides."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"pool_id": ""},
            {"target_node_count": -1},
            {"monitor_timeout": 0},
            {"access_token_expiry": 0},
            {"access_token_expiry": 8 * 24 * 3600},
            {"upload_concurrency_limit": 0},
            {"poll_interval": -1},
            {"task_command": "cat input.txt"},
        ],
    )
    def test_invalid_values_raise(self, overrides):
        with pytest.raises(ConfigError):
            RunConfig().with_overrides(**overrides)

    def test_zero_nodes_allowed(self):
        assert RunConfig().with_overrides(target_node_count=0).target_node_count == 0

    def test_short_token_expiry_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            RunConfig(monitor_timeout=3600, access_token_expiry=600).validate()
        assert "may find their artifact URL expired" in caplog.text

    def test_with_overrides_ignores_none(self):
        config = RunConfig().with_overrides(pool_id=None, job_id="other", delete_pool=False)
        assert config.pool_id == "samplePool"
        assert config.job_id == "other"
        assert config.delete_pool is False

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            RunConfig(monitor_timeout=-5).validate()
