"""
Batch Lifecycle Module

Provisioning, task submission, completion monitoring, output collection and
teardown against a ComputeCluster.
"""

from .completion_monitor import CompletionMonitor
from .job_submitter import JobSubmitter
from .output_collector import OutputCollector
from .pool_provisioner import ClusterProvisioner
from .teardown import TeardownManager

__all__ = [
    "ClusterProvisioner",
    "CompletionMonitor",
    "JobSubmitter",
    "OutputCollector",
    "TeardownManager",
]
