"""
ArtifactStager - Upload input files and mint time-bounded read references.

Uploads run concurrently, bounded by a semaphore, with the blocking object
store calls pushed to worker threads. The first failure aborts the batch:
uploads that have not started yet are cancelled and the TransferError is
raised to the caller. There is no partial-success policy.

Usage:
    stager = ArtifactStager(S3ObjectStore(), expiry=timedelta(hours=2))
    references = stager.stage("batchrun-input", ["taskdata0.txt", "taskdata1.txt"])
"""

import asyncio
import concurrent.futures
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from batchrun.src.exceptions import ConfigError, OperationCancelled, TransferError
from batchrun.src.interfaces import ObjectStore
from batchrun.src.models import ArtifactReference, CreateOutcome

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = timedelta(hours=2)
DEFAULT_MAX_CONCURRENT = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactStager:
    """
    Stage local input files in an object store.

    Attributes:
        store: ObjectStore the files are uploaded to
        expiry: Lifetime of each issued read token
        max_concurrent: Maximum number of uploads in flight
    """

    def __init__(
        self,
        store: ObjectStore,
        expiry: timedelta = DEFAULT_EXPIRY,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        if expiry <= timedelta(0):
            raise ValueError(f"expiry must be positive, got {expiry}")

        self.store = store
        self.expiry = expiry
        self.max_concurrent = max_concurrent
        self._clock = clock or _utcnow

    def _run_async(self, coro):
        """
        Run a coroutine from sync context.

        Uses asyncio.run() when no loop is running, otherwise runs it on a
        fresh loop in a worker thread (notebooks, async callers).
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(coro)

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()

    def _stage_one(self, container_name: str, path: Path) -> ArtifactReference:
        name = path.name
        remote_location = self.store.upload_object(container_name, name, str(path))

        # Expiry counts from issuance, not from the start of the batch
        expiry = self._clock() + self.expiry
        access_url = self.store.issue_read_token(container_name, name, expiry)

        return ArtifactReference(
            logical_name=name,
            local_path=str(path),
            remote_location=remote_location,
            access_url=access_url,
            expiry=expiry,
        )

    async def _stage_all(
        self,
        container_name: str,
        paths: List[Path],
        cancel_event: threading.Event,
    ) -> List[ArtifactReference]:
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def stage_bounded(path: Path) -> ArtifactReference:
            async with semaphore:
                if cancel_event.is_set():
                    raise OperationCancelled(f"Staging cancelled before uploading {path}")
                return await asyncio.to_thread(self._stage_one, container_name, path)

        tasks = [asyncio.ensure_future(stage_bounded(path)) for path in paths]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            # Let in-flight uploads settle before surfacing the first error
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def stage(
        self,
        container_name: str,
        local_paths: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[ArtifactReference]:
        """
        Upload files and issue one read-only reference per file.

        Args:
            container_name: Container (bucket) to upload into; created if absent
            local_paths: Files to upload; the remote name is the file name
            cancel_event: Set to stop uploads that have not started yet

        Returns:
            ArtifactReferences in the order of local_paths

        Raises:
            ConfigError: Empty input or two inputs sharing a file name
            TransferError: A file is missing or an upload failed
            OperationCancelled: cancel_event was set before all uploads started
        """
        if not local_paths:
            raise ConfigError("local_paths must be provided and non-empty")

        paths = [Path(p) for p in local_paths]

        names = [p.name for p in paths]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"Input files share remote names: {duplicates}")

        for path in paths:
            if not path.is_file():
                raise TransferError(str(path), "local file not found")

        outcome = self.store.ensure_container(container_name)
        if outcome == CreateOutcome.ALREADY_EXISTS:
            logger.info(f"Using existing container [{container_name}]")
        else:
            logger.info(f"Created container [{container_name}]")

        cancel_event = cancel_event or threading.Event()
        logger.info(
            f"Staging {len(paths)} files to [{container_name}] "
            f"(max {self.max_concurrent} concurrent uploads, tokens valid {self.expiry})"
        )

        references = self._run_async(self._stage_all(container_name, paths, cancel_event))

        logger.info(f"Staged {len(references)} artifacts to [{container_name}]")
        return references
