import asyncio
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from blob_server import config
from blob_server.app.errors import StorageError
from blob_server.app.services import identifier, quota
from blob_server.app.services.staging import StagedUpload, StagingWriter
from blob_server.logger_config import setup_logger

logger = setup_logger()


class PublishOutcome(Enum):
    PUBLISHED = "published"
    DEDUPED = "deduped"
    REJECTED = "rejected"


@dataclass(frozen=True)
class PublishResult:
    outcome: PublishOutcome
    blob_id: str
    size: int
    used_bytes: Optional[int] = None
    max_storage_bytes: Optional[int] = None

    @property
    def deduped(self) -> bool:
        return self.outcome is PublishOutcome.DEDUPED

    @property
    def rejected(self) -> bool:
        return self.outcome is PublishOutcome.REJECTED


class StorageManager:
    """Owns a storage root, its quota and the lock that serializes publishing.

    Hashing and staging of uploads run concurrently. The decision to keep a
    staged upload (dedup check, quota check and the rename into place) runs
    for one upload at a time.
    """

    def __init__(self, root: Path, limits: config.QuotaConfig):
        self.root = Path(root)
        self.limits = limits
        self.staging_dir = self.root / config.STAGING_DIRNAME
        self._publish_lock = asyncio.Lock()

    def staging_writer(self) -> StagingWriter:
        return StagingWriter(self.staging_dir, self.limits.max_upload_bytes)

    def object_path(self, blob_id: str) -> Path:
        return identifier.path_for(self.root, blob_id)

    async def initialize(self):
        """Create the storage directories and drop leftovers of earlier runs."""
        logger.info("Initializing storage manager...")

        await aiofiles.os.makedirs(self.root, exist_ok=True)
        await aiofiles.os.makedirs(self.staging_dir, exist_ok=True)
        logger.debug(f"Storage directories created/verified: {self.root}, {self.staging_dir}")

        files_removed = 0
        for file in self.staging_dir.glob(f"{config.STAGING_PREFIX}*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned staging directory, removed {files_removed} files")

        usage = await self.current_usage()
        logger.info(f"Current disk usage: {usage / (1024*1024):.2f} MB")

        _, _, free = shutil.disk_usage(str(self.root))
        if free < self.limits.max_storage_bytes - usage:
            logger.warning(
                f"Free space on {self.root} ({free / config.GIB:.2f} GiB) is below "
                f"the remaining storage quota ({(self.limits.max_storage_bytes - usage) / config.GIB:.2f} GiB)"
            )

    async def current_usage(self, exclude: Optional[Path] = None) -> int:
        return await asyncio.to_thread(quota.current_usage, self.root, exclude)

    async def publish(self, staged: StagedUpload) -> PublishResult:
        """Turn a staged upload into a stored object, unless it is a duplicate
        or does not fit in the storage quota.

        Raises:
            StorageError: If the store cannot be inspected or written.
        """
        blob_id = identifier.encode(staged.digest)
        target = self.object_path(blob_id)

        async with self._publish_lock:
            if await aiofiles.os.path.exists(target):
                logger.info(f"Deduplicated upload of {staged.size} bytes as {blob_id}")
                return PublishResult(PublishOutcome.DEDUPED, blob_id, staged.size)

            try:
                used = await self.current_usage(exclude=staged.path)
            except OSError as exc:
                raise StorageError("usage") from exc

            ceiling = self.limits.max_storage_bytes
            if quota.would_exceed(used, staged.size, ceiling):
                logger.warning(
                    f"Rejected upload of {staged.size} bytes: {used} of {ceiling} bytes used"
                )
                return PublishResult(
                    PublishOutcome.REJECTED,
                    blob_id,
                    staged.size,
                    used_bytes=used,
                    max_storage_bytes=ceiling,
                )

            try:
                await aiofiles.os.makedirs(target.parent, exist_ok=True)
            except OSError as exc:
                raise StorageError("mkdir") from exc

            try:
                await aiofiles.os.rename(staged.path, target)
            except OSError as exc:
                raise StorageError("rename") from exc

        logger.info(f"Published {blob_id} ({staged.size} bytes)")
        return PublishResult(PublishOutcome.PUBLISHED, blob_id, staged.size)

    async def locate(self, blob_id: str) -> Optional[Path]:
        """Return the path of a stored object, or None when `blob_id` is
        malformed or nothing is stored under it.

        Malformed ids are turned away before any filesystem access.
        """
        if not identifier.is_valid_id(blob_id):
            return None

        path = self.object_path(blob_id)
        if not await aiofiles.os.path.isfile(path):
            return None
        return path
