"""
Storage backend interface and the local filesystem backend.

Backends address objects by absolute POSIX-style paths rooted at the
backend's own root ("/"). Listings return Directory and File entries;
files carry a hex SHA-256 content hash, which is the only equality signal
the sync engine uses.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, BinaryIO, Union

from django.conf import settings

from drivesync.exceptions import ConflictError, ContentIntegrityError, NotFoundError

logger = logging.getLogger(__name__)

ROOT = PurePosixPath("/")

# Prefix of in-progress writes; such files are never listed
TMP_PREFIX = ".drivesync-"


def normalize_path(path: str | PurePosixPath) -> PurePosixPath:
    """
    Normalize a path to an absolute POSIX path.

    Relative paths are taken relative to the root; "." components are
    dropped.

    Raises:
        ValueError: If the path contains ".." components
    """
    parts = [part for part in PurePosixPath(path).parts if part not in ("/", ".")]
    if ".." in parts:
        raise ValueError(f"Path may not contain '..': {path}")
    return ROOT.joinpath(*parts)


@dataclass(frozen=True)
class Directory:
    """A directory entry in a backend listing."""

    identifier: str
    name: str


@dataclass(frozen=True)
class File:
    """A file entry in a backend listing."""

    identifier: str
    name: str
    content_hash: str | None
    size_bytes: int | None = None


Entry = Union[Directory, File]


class ByteSource:
    """
    A finite, single-use producer of byte chunks with a known total length.
    """

    def __init__(self, length: int, chunks: AsyncIterator[bytes]):
        self.length = length
        self._chunks = chunks
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("ByteSource can only be consumed once")
        self._consumed = True
        return self._chunks.__aiter__()

    @classmethod
    def from_bytes(cls, data: bytes, chunk_size: int = 65536) -> "ByteSource":
        async def chunks():
            for offset in range(0, len(data), chunk_size):
                yield data[offset:offset + chunk_size]

        return cls(len(data), chunks())


def compute_digest(data: bytes | BinaryIO) -> str:
    """
    Compute SHA256 digest of data.

    Args:
        data: Bytes or file-like object to hash

    Returns:
        Lowercase hex digest
    """
    hasher = hashlib.sha256()
    if isinstance(data, bytes):
        hasher.update(data)
    else:
        for chunk in iter(lambda: data.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class Storage(ABC):
    """
    Interface implemented by every storage backend.

    All operations take paths relative to the backend root; see
    ``normalize_path``.
    """

    @abstractmethod
    async def list(self, path: PurePosixPath) -> list[Entry]:
        """
        List the immediate children of a directory.

        Raises:
            NotFoundError: If path is not an existing directory
        """

    @abstractmethod
    async def create_dir(self, path: PurePosixPath) -> None:
        """Create a directory and any missing ancestors; no-op if it exists."""

    @abstractmethod
    async def write_file(self, path: PurePosixPath, source: ByteSource) -> None:
        """Store the bytes of ``source`` at ``path``, replacing any file there."""

    @abstractmethod
    async def copy_file(self, source_path: PurePosixPath, dest_path: PurePosixPath) -> None:
        """
        Duplicate a file within this backend.

        Raises:
            NotFoundError: If no object named like the source exists in its parent
        """

    @abstractmethod
    async def delete(self, path: PurePosixPath) -> None:
        """
        Remove a single object.

        Raises:
            NotFoundError: If nothing exists at path
        """

    @abstractmethod
    async def open_file(self, path: PurePosixPath, entry: File) -> ByteSource:
        """Open a listed file for reading as a ByteSource."""


class LocalStorage(Storage):
    """
    Storage backend over a local directory tree.

    Writes go to a temporary file in the target directory which is fsynced
    and then atomically renamed over the final path, so an interrupted
    write never leaves a truncated file visible.
    """

    def __init__(self, root: str | Path, chunk_size: int | None = None):
        self.root = Path(root)
        self.chunk_size = chunk_size or settings.SYNC_CHUNK_SIZE

    def __str__(self) -> str:
        return str(self.root)

    def _resolve(self, path: str | PurePosixPath) -> Path:
        """Map a backend path onto the local filesystem."""
        relative = normalize_path(path).relative_to(ROOT)
        return self.root.joinpath(*relative.parts)

    def _list_sync(self, path: PurePosixPath) -> list[Entry]:
        target = self._resolve(path)
        if not target.is_dir():
            raise NotFoundError(f"Not a directory: {path}")

        entries: list[Entry] = []
        with os.scandir(target) as it:
            for item in it:
                if item.name.startswith(TMP_PREFIX):
                    continue
                if item.is_dir():
                    entries.append(Directory(identifier=item.path, name=item.name))
                elif item.is_file():
                    with open(item.path, "rb") as f:
                        content_hash = compute_digest(f)
                    entries.append(
                        File(
                            identifier=item.path,
                            name=item.name,
                            content_hash=content_hash,
                            size_bytes=item.stat().st_size,
                        )
                    )
                else:
                    logger.warning(f"Skipping special file: {item.path}")
        return entries

    async def list(self, path: PurePosixPath) -> list[Entry]:
        return await asyncio.to_thread(self._list_sync, path)

    def _create_dir_sync(self, path: PurePosixPath) -> None:
        target = self._resolve(path)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as e:
            raise ConflictError(f"A file occupies the directory path {path}") from e

    async def create_dir(self, path: PurePosixPath) -> None:
        await asyncio.to_thread(self._create_dir_sync, path)

    async def write_file(self, path: PurePosixPath, source: ByteSource) -> None:
        target = self._resolve(path)
        if not target.parent.is_dir():
            raise NotFoundError(f"Parent directory does not exist: {path}")
        if target.is_dir():
            raise ConflictError(f"A directory occupies the file path {path}")

        tmp_path = target.parent / f"{TMP_PREFIX}{uuid.uuid4().hex}.tmp"

        try:
            size = 0
            f = await asyncio.to_thread(open, tmp_path, "wb")
            try:
                async for chunk in source:
                    await asyncio.to_thread(f.write, chunk)
                    size += len(chunk)
                await asyncio.to_thread(f.flush)
                await asyncio.to_thread(os.fsync, f.fileno())
            finally:
                f.close()

            if size != source.length:
                raise ContentIntegrityError(
                    f"Expected {source.length} bytes for {path}, received {size}"
                )

            await asyncio.to_thread(os.replace, tmp_path, target)

        except BaseException:
            # Covers cancellation as well; the final path is never touched
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    def _copy_file_sync(self, source_path: PurePosixPath, dest_path: PurePosixPath) -> None:
        source = self._resolve(source_path)
        target = self._resolve(dest_path)
        if not source.is_file():
            raise NotFoundError(f"File not found: {source_path}")
        if not target.parent.is_dir():
            raise NotFoundError(f"Parent directory does not exist: {dest_path}")

        tmp_path = target.parent / f"{TMP_PREFIX}{uuid.uuid4().hex}.tmp"
        try:
            shutil.copy2(source, tmp_path)
            os.replace(tmp_path, target)
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    async def copy_file(self, source_path: PurePosixPath, dest_path: PurePosixPath) -> None:
        await asyncio.to_thread(self._copy_file_sync, source_path, dest_path)

    def _delete_sync(self, path: PurePosixPath) -> None:
        target = self._resolve(path)
        if target.is_dir():
            try:
                target.rmdir()
            except OSError as e:
                raise ConflictError(f"Directory is not empty: {path}") from e
            return
        try:
            target.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}") from e

    async def delete(self, path: PurePosixPath) -> None:
        await asyncio.to_thread(self._delete_sync, path)

    async def open_file(self, path: PurePosixPath, entry: File) -> ByteSource:
        target = self._resolve(path)
        try:
            stat_result = await asyncio.to_thread(target.stat)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {path}") from e
        return ByteSource(stat_result.st_size, self._read_chunks(target))

    async def _read_chunks(self, target: Path) -> AsyncIterator[bytes]:
        f = await asyncio.to_thread(open, target, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()
