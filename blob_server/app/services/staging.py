"""Stage an upload on disk while hashing it in the same pass."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import aiofiles
import aiofiles.os
import aiofiles.tempfile
from blake3 import blake3

from blob_server import config
from blob_server.app.errors import StorageError, UploadTooLarge
from blob_server.logger_config import setup_logger

logger = setup_logger()


@dataclass(frozen=True)
class StagedUpload:
    path: Path
    size: int
    digest: bytes


async def discard(path: Path):
    """Remove a staging file, ignoring one that is already gone."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


class StagingWriter:
    """Copies upload streams into uniquely named files in `staging_dir`.

    The staging directory has to be on the same volume as the store so
    that publishing a staged file is a rename rather than a copy.
    """

    def __init__(self, staging_dir: Path, max_bytes: int):
        self.staging_dir = Path(staging_dir)
        self.max_bytes = max_bytes

    @asynccontextmanager
    async def stage(self, source: AsyncIterator[bytes]) -> AsyncIterator[StagedUpload]:
        """Write `source` to a staging file and yield what was written.

        Every chunk is written to the file and fed to the hasher as it
        arrives. The staging file is removed when the context exits, whether
        it was published, deduplicated, rejected or the copy failed.

        Raises:
            UploadTooLarge: If `source` yields more than :attr:`max_bytes`.
            StorageError: If the staging file cannot be created, written or
                closed.
        """
        try:
            f = await aiofiles.tempfile.NamedTemporaryFile(
                "wb", prefix=config.STAGING_PREFIX, dir=self.staging_dir, delete=False
            )
        except OSError as exc:
            raise StorageError("tmp") from exc

        path = Path(f.name)
        try:
            copied = False
            try:
                size, digest = await self._copy(source, f)
                copied = True
            finally:
                try:
                    await f.close()
                except OSError as exc:
                    # A failed copy already has its own error to report.
                    if copied:
                        raise StorageError("close") from exc
                    logger.warning(f"Cannot close staging file {path.name} after a failed copy: {exc}")

            yield StagedUpload(path=path, size=size, digest=digest)
        finally:
            await discard(path)

    async def _copy(self, source, f):
        hasher = blake3()
        size = 0
        async for chunk in source:
            size += len(chunk)
            if size > self.max_bytes:
                logger.info(f"Upload aborted after {size} bytes, limit is {self.max_bytes}")
                raise UploadTooLarge(self.max_bytes)
            hasher.update(chunk)
            try:
                await f.write(chunk)
            except OSError as exc:
                raise StorageError("tmp") from exc
        return size, hasher.digest()
