"""Durable blob storage addressed by relative path."""

import logging
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import PurePosixPath

import anyio

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """A blob could not be written or read."""


class BlobStore(ABC):
    @abstractmethod
    async def put(self, path: str, data: bytes) -> None:
        """Store ``data`` at ``path``, replacing nothing that already exists."""

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Return the exact bytes stored at ``path``."""


class LocalBlobStore(BlobStore):
    """
    Filesystem-backed store rooted at a directory.

    Writes go to a temporary sibling, are fsynced, then renamed into place,
    so a reader never observes a partially written blob.
    """

    def __init__(self, root: str):
        self.root = anyio.Path(root)

    def _resolve(self, path: str) -> anyio.Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise BlobStoreError(f"Invalid blob path: {path!r}")
        return self.root.joinpath(*relative.parts)

    async def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        if await target.exists():
            raise BlobStoreError(f"Blob already exists: {path}")

        temp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            await target.parent.mkdir(parents=True, exist_ok=True)
            await anyio.to_thread.run_sync(_write_synced, str(temp), data)
            await temp.rename(target)
        except OSError as e:
            if await temp.exists():
                await temp.unlink()
            raise BlobStoreError(f"Failed to write blob {path}: {e}") from e

        logger.debug(f"Stored blob {path} ({len(data)} bytes)")

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await target.read_bytes()
        except OSError as e:
            raise BlobStoreError(f"Failed to read blob {path}: {e}") from e


def _write_synced(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
