"""
S3ObjectStore - S3 implementation of the ObjectStore interface.

Containers are S3 buckets, objects are keyed by file name, and read tokens are
SigV4 presigned GET URLs. Keeps S3 interactions isolated for easier testing
with moto.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from batchrun.src.exceptions import ConfigError, TransferError
from batchrun.src.interfaces import ObjectStore
from batchrun.src.models import CreateOutcome

logger = logging.getLogger(__name__)

# SigV4 upper bound for presigned URL lifetime
MAX_PRESIGN_SECONDS = 7 * 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class S3ObjectStore(ObjectStore):
    """
    Object store backed by S3.

    Args:
        region: AWS region (default: us-east-1)
        s3_client: Optional S3 client (for testing)
        clock: Returns the current UTC time (for testing)
    """

    def __init__(
        self,
        region: str = "us-east-1",
        s3_client=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.region = region
        self._s3_client = s3_client or boto3.client(
            "s3", region_name=region, config=Config(signature_version="s3v4")
        )
        self._clock = clock or _utcnow

    def ensure_container(self, name: str) -> CreateOutcome:
        """
        Create the bucket if it does not exist.

        Args:
            name: Bucket name

        Returns:
            CreateOutcome.ALREADY_EXISTS if the bucket was already ours

        Raises:
            botocore.exceptions.ClientError: Any other S3 error (e.g. the name
                is owned by another account)
        """
        try:
            self._s3_client.head_bucket(Bucket=name)
            logger.info(f"Container s3://{name} already exists")
            return CreateOutcome.ALREADY_EXISTS
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code not in ("404", "NoSuchBucket", "NotFound"):
                raise

        kwargs = {"Bucket": name}
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}

        try:
            self._s3_client.create_bucket(**kwargs)
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "BucketAlreadyOwnedByYou":
                logger.info(f"Container s3://{name} was created concurrently")
                return CreateOutcome.ALREADY_EXISTS
            raise

        logger.info(f"Created container s3://{name}")
        return CreateOutcome.CREATED

    def upload_object(self, container: str, name: str, local_path: str) -> str:
        """
        Upload a local file to s3://container/name.

        Returns:
            The s3:// location of the object

        Raises:
            TransferError: On I/O or network failure
        """
        path = Path(local_path)
        logger.info(f"Uploading file {path} to container [{container}]...")

        try:
            self._s3_client.upload_file(str(path), container, name)
        except (ClientError, BotoCoreError, S3UploadFailedError, OSError) as e:
            raise TransferError(str(path), str(e)) from e

        location = f"s3://{container}/{name}"
        logger.debug(f"Uploaded {path} -> {location}")
        return location

    def issue_read_token(self, container: str, name: str, expiry: datetime) -> str:
        """
        Presign a GET URL for an object, valid until expiry.

        The signature covers the GET method only, so the URL grants no write
        or delete permission.

        Args:
            container: Bucket name
            name: Object key
            expiry: Timezone-aware UTC expiry instant

        Returns:
            Presigned URL

        Raises:
            ConfigError: If expiry is not in the future or exceeds the SigV4 limit
        """
        expires_in = int((expiry - self._clock()).total_seconds())
        if expires_in <= 0:
            raise ConfigError(f"Token expiry {expiry.isoformat()} is not in the future")
        if expires_in > MAX_PRESIGN_SECONDS:
            raise ConfigError(
                f"Token lifetime {expires_in}s exceeds the {MAX_PRESIGN_SECONDS}s presign limit"
            )

        url = self._s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": container, "Key": name},
            ExpiresIn=expires_in,
        )
        logger.debug(f"Issued read token for s3://{container}/{name} ({expires_in}s)")
        return url
