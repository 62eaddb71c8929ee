"""
Path to identifier index for ID-addressed backends.

Google Drive addresses folders by opaque IDs and only exposes each
folder's parent IDs, so absolute folder paths are reconstructed by walking
the parent links from the root.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Awaitable, Callable, Iterable

from drivesync.storage import ROOT, normalize_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FolderRecord:
    """A folder as fetched from the backend: its ID, name and parent ID."""

    identifier: str
    name: str
    parent: str | None


class PathIndex:
    """
    Injective mapping from absolute directory paths to backend identifiers.

    Only directories are indexed. The root path always maps to the root
    identifier. Entries are only ever added: at construction and when a
    directory is created during the session.
    """

    def __init__(self, root_id: str):
        self.root_id = root_id
        self._ids: dict[PurePosixPath, str] = {ROOT: root_id}
        self._paths: dict[str, PurePosixPath] = {root_id: ROOT}
        self._locks: dict[PurePosixPath, asyncio.Lock] = {}
        self.anomalies: list[str] = []

    @classmethod
    def build(cls, root_id: str, folders: Iterable[FolderRecord]) -> "PathIndex":
        """
        Reconstruct folder paths from parent links.

        Folders are resolved in passes: a folder whose parent path is known
        gets ``parent_path / name``. Passes repeat until one resolves
        nothing, since a child may be listed before its parent. Folders left
        over are unreachable from the root (orphaned or part of a parent
        cycle) and are recorded as anomalies rather than indexed. So are
        folders with unusable names and folders whose path is already taken
        by a sibling of the same name.

        Args:
            root_id: Identifier of the backend root
            folders: Every folder on the backend

        Returns:
            The populated index
        """
        index = cls(root_id)

        parents: dict[str, str | None] = {}
        names: dict[str, str] = {}
        for folder in folders:
            if folder.identifier == root_id:
                continue
            parents[folder.identifier] = folder.parent
            names[folder.identifier] = folder.name

        # Folders left out of the index; their subtrees stay unresolved
        ignored: set[str] = set()

        # Sorted so that duplicate-name resolution is deterministic
        pending = sorted(parents)
        while pending:
            unresolved = []
            for folder_id in pending:
                parent_path = index._paths.get(parents[folder_id])
                if parent_path is None:
                    unresolved.append(folder_id)
                    continue

                name = names[folder_id]
                if name in ("", ".", "..") or "/" in name:
                    index.anomalies.append(f"Folder {folder_id} has unusable name {name!r}; ignored")
                    ignored.add(folder_id)
                    continue

                path = parent_path / name
                if path in index._ids:
                    index.anomalies.append(
                        f"Folder {folder_id} duplicates the path {path}; ignored"
                    )
                    ignored.add(folder_id)
                    continue
                index._ids[path] = folder_id
                index._paths[folder_id] = path

            if len(unresolved) == len(pending):
                break
            pending = unresolved

        for folder_id in pending:
            if parents[folder_id] in ignored:
                reason = "is inside an ignored folder"
            else:
                reason = "is not reachable from the root"
            index.anomalies.append(f"Folder {folder_id} ({names[folder_id]!r}) {reason}")

        for anomaly in index.anomalies:
            logger.warning(anomaly)
        logger.debug(f"Indexed {len(index)} folders, {len(index.anomalies)} anomalies")
        return index

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, path: str | PurePosixPath) -> bool:
        return normalize_path(path) in self._ids

    def get(self, path: str | PurePosixPath) -> str | None:
        """Return the identifier of a directory path, or None."""
        return self._ids.get(normalize_path(path))

    def path_of(self, identifier: str) -> PurePosixPath | None:
        return self._paths.get(identifier)

    def paths(self) -> list[PurePosixPath]:
        return sorted(self._ids)

    def insert(self, path: str | PurePosixPath, identifier: str) -> str:
        """
        Insert a directory if its path is absent.

        Returns:
            The identifier now mapped to ``path``; the existing one if the
            path was already indexed

        Raises:
            ValueError: If ``identifier`` is already indexed under another path
        """
        path = normalize_path(path)
        existing = self._ids.get(path)
        if existing is not None:
            return existing

        other = self._paths.get(identifier)
        if other is not None:
            raise ValueError(f"Identifier {identifier} is already indexed as {other}")

        self._ids[path] = identifier
        self._paths[identifier] = path
        return identifier

    async def ensure(
        self,
        path: str | PurePosixPath,
        create: Callable[[str, str], Awaitable[str]],
    ) -> str:
        """
        Make sure a directory and all its ancestors exist.

        Ancestors are walked from the root towards the leaf. Each missing one
        is created through ``create(parent_id, name)`` while holding a lock
        for that path, and the path is re-checked once the lock is held, so
        concurrent callers create each directory only once.

        Returns:
            Identifier of the directory at ``path``
        """
        path = normalize_path(path)
        identifier = self.root_id
        current = ROOT

        for name in path.relative_to(ROOT).parts:
            parent_id = identifier
            current = current / name

            identifier = self._ids.get(current)
            if identifier is not None:
                continue

            lock = self._locks.setdefault(current, asyncio.Lock())
            async with lock:
                identifier = self._ids.get(current)
                if identifier is None:
                    created = await create(parent_id, name)
                    identifier = self.insert(current, created)
                    logger.debug(f"Indexed new directory {current} as {identifier}")
                # Later callers find the path indexed and never take the lock
                self._locks.pop(current, None)

        return identifier
