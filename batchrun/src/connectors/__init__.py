"""
Service connectors for the batchrun orchestrator.

Available connectors:
    - S3ObjectStore: Input artifact staging in S3 with presigned URLs
    - AWSBatchCluster: Pools, jobs and tasks on AWS Batch
"""

from batchrun.src.connectors.batch_cluster import AWSBatchCluster
from batchrun.src.connectors.s3_store import S3ObjectStore

__all__ = ["AWSBatchCluster", "S3ObjectStore"]
