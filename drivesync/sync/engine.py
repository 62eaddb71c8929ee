"""
Mirror sync engine.

Walks the source tree one directory level at a time: both sides are
listed, the listings are diffed into a plan, and the plan is applied
before descending into subdirectories. Files are compared by content hash
only, so a re-run after an interrupted sync skips everything that already
matches and only retries the remaining divergence.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Awaitable, TypeVar

from django.conf import settings

from drivesync.exceptions import (
    AuthInvalidError,
    ConflictError,
    ContentIntegrityError,
    DriveSyncError,
    NotFoundError,
)
from drivesync.storage import ROOT, Directory, Entry, File, Storage

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Action(enum.Enum):
    SKIP = "skip"
    CREATE_DIRECTORY = "create_directory"
    DESCEND = "descend"
    TRANSFER = "transfer"
    COPY = "copy"
    REJECT = "reject"


@dataclass
class PlanItem:
    """What to do with one source entry."""

    action: Action
    entry: Entry
    copy_from: str | None = None
    error: DriveSyncError | None = None

    @property
    def name(self) -> str:
        return self.entry.name


def is_valid_name(name: str) -> bool:
    """Whether a listed name is a single usable path component."""
    return name not in ("", ".", "..") and "/" not in name


def plan_directory(source_entries: list[Entry], dest_entries: list[Entry]) -> list[PlanItem]:
    """
    Diff the listings of one directory level.

    Source entries are planned in name order. A source file whose name is
    free on the destination, or held by a file with another hash, is
    transferred. When another destination file at this level already has the
    wanted hash and is not itself being replaced, it is copied instead.

    Args:
        source_entries: Listing of the source directory
        dest_entries: Listing of the matching destination directory

    Returns:
        One PlanItem per source entry
    """
    dest_by_name = {entry.name: entry for entry in dest_entries}
    source_by_name = {entry.name: entry for entry in source_entries}

    # Destination files that stay as they are, by hash
    reusable: dict[str, str] = {}
    for entry in sorted(dest_entries, key=lambda e: e.name):
        if not isinstance(entry, File) or not entry.content_hash or not is_valid_name(entry.name):
            continue
        counterpart = source_by_name.get(entry.name)
        if counterpart is None or (
            isinstance(counterpart, File) and counterpart.content_hash == entry.content_hash
        ):
            reusable.setdefault(entry.content_hash, entry.name)

    plan = []
    for entry in sorted(source_entries, key=lambda e: e.name):
        existing = dest_by_name.get(entry.name)

        # Remote backends allow names such as ".." or "a/b"
        if not is_valid_name(entry.name):
            plan.append(PlanItem(
                Action.REJECT,
                entry,
                error=ConflictError(f"{entry.name!r} is not a valid path component"),
            ))
            continue

        if isinstance(entry, Directory):
            if existing is None:
                plan.append(PlanItem(Action.CREATE_DIRECTORY, entry))
            elif isinstance(existing, Directory):
                plan.append(PlanItem(Action.DESCEND, entry))
            else:
                plan.append(PlanItem(
                    Action.REJECT,
                    entry,
                    error=ConflictError(f"Destination has a file where {entry.name!r} is a directory"),
                ))
            continue

        if not entry.content_hash:
            plan.append(PlanItem(
                Action.REJECT,
                entry,
                error=ContentIntegrityError(f"Source file {entry.name!r} has no content hash"),
            ))
        elif isinstance(existing, Directory):
            plan.append(PlanItem(
                Action.REJECT,
                entry,
                error=ConflictError(f"Destination has a directory where {entry.name!r} is a file"),
            ))
        elif isinstance(existing, File) and existing.content_hash == entry.content_hash:
            plan.append(PlanItem(Action.SKIP, entry))
        elif entry.content_hash in reusable:
            plan.append(PlanItem(Action.COPY, entry, copy_from=reusable[entry.content_hash]))
        else:
            plan.append(PlanItem(Action.TRANSFER, entry))

    return plan


@dataclass
class SyncFailure:
    """A path that could not be synced and why."""

    path: PurePosixPath
    error: Exception

    @property
    def kind(self) -> str:
        return type(self.error).__name__

    def __str__(self) -> str:
        return f"{self.path}: {self.kind}: {self.error}"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    directories_created: int = 0
    files_transferred: int = 0
    files_copied: int = 0
    files_skipped: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0
    failures: list[SyncFailure] = field(default_factory=list)
    unpruned_directories: list[PurePosixPath] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def operations(self) -> int:
        """Number of mutating operations performed on the destination."""
        return (
            self.directories_created
            + self.files_transferred
            + self.files_copied
            + self.files_deleted
        )

    def merge(self, other: "SyncResult") -> None:
        self.directories_created += other.directories_created
        self.files_transferred += other.files_transferred
        self.files_copied += other.files_copied
        self.files_skipped += other.files_skipped
        self.files_deleted += other.files_deleted
        self.bytes_transferred += other.bytes_transferred
        self.failures.extend(other.failures)
        self.unpruned_directories.extend(other.unpruned_directories)

    def to_dict(self) -> dict:
        return {
            "status": "ok" if self.ok else "failed",
            "directories_created": self.directories_created,
            "files_transferred": self.files_transferred,
            "files_copied": self.files_copied,
            "files_skipped": self.files_skipped,
            "files_deleted": self.files_deleted,
            "bytes_transferred": self.bytes_transferred,
            "failures": [str(f) for f in self.failures],
            "unpruned_directories": [str(p) for p in self.unpruned_directories],
        }


class SyncEngine:
    """
    One-directional mirror of a source backend onto a destination backend.

    Subdirectories and file transfers within one level run concurrently;
    a semaphore bounds how many backend operations are in flight at once.
    Entries that exist only on the destination are left alone unless
    ``prune()`` is called explicitly.
    """

    def __init__(
        self,
        source: Storage,
        destination: Storage,
        concurrency: int | None = None,
        dry_run: bool = False,
    ):
        self.source = source
        self.destination = destination
        self.dry_run = dry_run
        self.semaphore = asyncio.Semaphore(concurrency or settings.SYNC_CONCURRENCY)
        self.result = SyncResult()
        self._fatal: AuthInvalidError | None = None

    async def _bounded(self, operation: Awaitable[T]) -> T:
        async with self.semaphore:
            return await operation

    def _fail(self, path: PurePosixPath, error: Exception) -> None:
        failure = SyncFailure(path, error)
        self.result.failures.append(failure)
        logger.warning(f"Sync failed for {failure}")
        if isinstance(error, AuthInvalidError) and self._fatal is None:
            # Every further call would be rejected as well
            self._fatal = error
            logger.error(f"Aborting sync: {error}")

    async def run(self) -> SyncResult:
        """
        Mirror the whole source tree onto the destination.

        Returns:
            SyncResult with counters and every per-path failure
        """
        self.result = SyncResult()
        self._fatal = None
        logger.info(
            f"Starting {'dry run' if self.dry_run else 'sync'} "
            f"from {self.source} to {self.destination}"
        )

        if not self.dry_run:
            try:
                await self._bounded(self.destination.create_dir(ROOT))
            except (DriveSyncError, OSError) as e:
                self._fail(ROOT, e)
                return self.result

        await self._sync_directory(ROOT)

        result = self.result
        logger.info(
            f"Sync finished: {result.directories_created} directories created, "
            f"{result.files_transferred} transferred, {result.files_copied} copied, "
            f"{result.files_skipped} skipped, {len(result.failures)} failed"
        )
        return result

    async def _list_pair(
        self,
        path: PurePosixPath,
        dest_absent: bool,
    ) -> tuple[list[Entry], list[Entry]] | None:
        """List both sides of a level; None if the subtree must be abandoned."""
        try:
            source_entries = await self._bounded(self.source.list(path))
        except (DriveSyncError, OSError) as e:
            self._fail(path, e)
            return None

        if dest_absent:
            return source_entries, []

        try:
            dest_entries = await self._bounded(self.destination.list(path))
        except NotFoundError as e:
            if not self.dry_run:
                self._fail(path, e)
                return None
            dest_entries = []
        except (DriveSyncError, OSError) as e:
            self._fail(path, e)
            return None

        return source_entries, dest_entries

    async def _sync_directory(self, path: PurePosixPath, dest_absent: bool = False) -> None:
        if self._fatal:
            return

        listings = await self._list_pair(path, dest_absent)
        if listings is None:
            return

        pending = []
        for item in plan_directory(*listings):
            child = path / item.name

            if item.action is Action.REJECT:
                self._fail(child, item.error)
            elif item.action is Action.SKIP:
                self.result.files_skipped += 1
                logger.debug(f"Unchanged: {child}")
            elif item.action is Action.DESCEND:
                pending.append(self._sync_directory(child))
            elif item.action is Action.CREATE_DIRECTORY:
                if await self._create_directory(child):
                    pending.append(self._sync_directory(child, dest_absent=self.dry_run))
            else:
                pending.append(self._transfer(child, item))

        await asyncio.gather(*pending)

    async def _create_directory(self, path: PurePosixPath) -> bool:
        if self.dry_run:
            logger.info(f"Would create directory {path}")
            self.result.directories_created += 1
            return True

        try:
            await self._bounded(self.destination.create_dir(path))
        except (DriveSyncError, OSError) as e:
            self._fail(path, e)
            return False

        self.result.directories_created += 1
        logger.info(f"Created directory {path}")
        return True

    async def _transfer(self, path: PurePosixPath, item: PlanItem) -> None:
        if self._fatal:
            return

        entry = item.entry
        try:
            if item.action is Action.COPY:
                copy_source = path.parent / item.copy_from
                if self.dry_run:
                    logger.info(f"Would copy {copy_source} to {path}")
                else:
                    await self._bounded(self.destination.copy_file(copy_source, path))
                    logger.info(f"Copied {copy_source} to {path}")
                self.result.files_copied += 1
                return

            if self.dry_run:
                logger.info(f"Would transfer {path}")
                self.result.files_transferred += 1
                return

            async with self.semaphore:
                source = await self.source.open_file(path, entry)
                await self.destination.write_file(path, source)

            self.result.files_transferred += 1
            self.result.bytes_transferred += source.length
            logger.info(f"Transferred {path} ({source.length} bytes)")

        except (DriveSyncError, OSError) as e:
            self._fail(path, e)

    async def prune(self) -> SyncResult:
        """
        Delete destination files that no longer exist in the source.

        Only files are deleted. Directories that exist only on the
        destination are reported in ``unpruned_directories``. A level whose
        listing fails on either side is left untouched.

        Returns:
            SyncResult with the deletions and failures of this pass
        """
        self.result = SyncResult()
        self._fatal = None
        await self._prune_directory(ROOT)
        logger.info(
            f"Prune finished: {self.result.files_deleted} deleted, "
            f"{len(self.result.unpruned_directories)} directories left in place"
        )
        return self.result

    async def _prune_directory(self, path: PurePosixPath) -> None:
        if self._fatal:
            return

        listings = await self._list_pair(path, dest_absent=False)
        if listings is None:
            return
        source_entries, dest_entries = listings
        source_by_name = {entry.name: entry for entry in source_entries}

        pending = []
        for entry in sorted(dest_entries, key=lambda e: e.name):
            child = path / entry.name
            counterpart = source_by_name.get(entry.name)

            if not is_valid_name(entry.name):
                self._fail(child, ConflictError(f"{entry.name!r} is not a valid path component"))
            elif isinstance(entry, Directory):
                if counterpart is None:
                    self.result.unpruned_directories.append(child)
                    logger.warning(f"Directory only exists on the destination: {child}")
                elif isinstance(counterpart, Directory):
                    pending.append(self._prune_directory(child))
            elif counterpart is None:
                pending.append(self._delete(child))

        await asyncio.gather(*pending)

    async def _delete(self, path: PurePosixPath) -> None:
        if self._fatal:
            return
        if self.dry_run:
            logger.info(f"Would delete {path}")
            self.result.files_deleted += 1
            return

        try:
            await self._bounded(self.destination.delete(path))
        except (DriveSyncError, OSError) as e:
            self._fail(path, e)
            return

        self.result.files_deleted += 1
        logger.info(f"Deleted {path}")


async def sync(
    source: Storage,
    destination: Storage,
    concurrency: int | None = None,
    dry_run: bool = False,
    prune: bool = False,
) -> SyncResult:
    """
    Mirror ``source`` onto ``destination``.

    Args:
        source: Backend to read from
        destination: Backend to write to
        concurrency: Bound on in-flight backend operations
        dry_run: Plan and log without changing the destination
        prune: Afterwards delete destination files missing from the
            source; skipped if the mirror had failures

    Returns:
        SyncResult; ``ok`` is False if any path failed
    """
    engine = SyncEngine(source, destination, concurrency=concurrency, dry_run=dry_run)
    result = await engine.run()

    if prune:
        if result.ok:
            result.merge(await engine.prune())
        else:
            logger.warning("Skipping prune because the sync had failures")

    return result
