"""
Sync locations given on the command line.

A location is either a local directory or ``name:path``, where ``name`` is
a drive in the identity store and ``path`` a folder on that drive.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from drivesync.auth import Authorizer
from drivesync.exceptions import NotFoundError
from drivesync.providers.google_drive import DriveClient, DriveStorage
from drivesync.secrets import IdentityStore
from drivesync.storage import LocalStorage, Storage, normalize_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Location:
    path: str
    drive: str | None = None

    @property
    def is_remote(self) -> bool:
        return self.drive is not None

    @classmethod
    def parse(cls, value: str) -> "Location":
        """
        Parse ``name:path`` or a plain local path.

        The text before the first colon is a drive name only if it is
        non-empty and contains no path separator, so ``./a:b`` stays local.

        Raises:
            ValueError: If the value is empty
        """
        if not value:
            raise ValueError("Location must not be empty")

        name, sep, path = value.partition(":")
        if sep and name and "/" not in name:
            return cls(path=str(normalize_path(path)), drive=name)
        return cls(path=value)

    def __str__(self) -> str:
        if self.is_remote:
            return f"{self.drive}:{self.path}"
        return self.path


async def open_storage(location: Location, store: IdentityStore) -> Storage:
    """
    Build the storage backend for a location.

    Remote locations connect to the drive and index its folders.

    Raises:
        NotFoundError: If the drive is not in the identity store
    """
    if not location.is_remote:
        return LocalStorage(location.path)

    if not await asyncio.to_thread(store.has_credential, location.drive):
        raise NotFoundError(f"Unknown drive {location.drive!r}; add it with add_drive")

    authorizer = await asyncio.to_thread(Authorizer, location.drive, store)
    return await DriveStorage.connect(DriveClient(authorizer), base=location.path)
