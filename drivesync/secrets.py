"""
Identity store for drive credentials.

Credentials are kept in a JSON file with restricted permissions (600),
keyed by drive name:

    {
        "drives": {
            "<name>": {"access_token": ..., "refresh_token": ...,
                       "expires_at": ..., "scopes": [...]}
        },
        "oauth_clients": {"google": {"client_id": ..., "client_secret": ...}}
    }

Every read and write holds an advisory lock on a sidecar ``.lock`` file so
that concurrent processes never interleave a read-modify-write cycle.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import stat
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from django.conf import settings

logger = logging.getLogger(__name__)

DRIVES_KEY = "drives"
OAUTH_CLIENTS_KEY = "oauth_clients"


class SecretsError(Exception):
    """Base exception for secrets operations."""

    pass


class IdentityStoreError(SecretsError):
    """Raised when the identity file cannot be read or written."""

    pass


@dataclass
class Credential:
    """Bearer credential for one named drive."""

    access_token: str
    refresh_token: str
    expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "scopes": list(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        expires_at = data.get("expires_at")
        if expires_at:
            try:
                expires_at = datetime.fromisoformat(expires_at)
            except (ValueError, TypeError):
                expires_at = None
            else:
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=expires_at or None,
            scopes=list(data.get("scopes", [])),
        )


class IdentityStore:
    """
    Keyed document store mapping drive names to credentials.

    The store is passed explicitly to whoever needs it rather than read
    from a process-wide location at call time.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path if path is not None else settings.DRIVESYNC_IDENTITY_FILE)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self, exclusive: bool = False) -> Iterator[None]:
        """Hold an advisory lock on the store for the duration of the block."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise IdentityStoreError(f"Failed to open lock file: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def _load(self) -> dict:
        """
        Load the identity file.

        Returns:
            Dict of stored documents, empty dict if the file doesn't exist
        """
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in identity file: {e}")
            raise IdentityStoreError(f"Invalid identity file format: {e}") from e
        except OSError as e:
            logger.error(f"Failed to read identity file: {e}")
            raise IdentityStoreError(f"Failed to read identity file: {e}") from e

    def _save(self, data: dict) -> None:
        """
        Save the identity file atomically.

        Uses atomic write (temp file + rename) and sets permissions to 600.
        """
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=".identities_",
                suffix=".tmp",
            )

            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2, default=str)

                os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
                os.replace(tmp_path, self.path)

            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

        except OSError as e:
            logger.error(f"Failed to save identity file: {e}")
            raise IdentityStoreError(f"Failed to save identity file: {e}") from e

    def get_credential(self, name: str) -> Credential | None:
        """
        Get the credential stored for a drive.

        Args:
            name: The drive name

        Returns:
            Credential, or None if the drive is unknown
        """
        with self._locked():
            data = self._load()

        record = data.get(DRIVES_KEY, {}).get(name)
        if record is None:
            return None
        return Credential.from_dict(record)

    def set_credential(self, name: str, credential: Credential) -> None:
        """Store or replace the credential for a drive."""
        with self._locked(exclusive=True):
            data = self._load()
            data.setdefault(DRIVES_KEY, {})[name] = credential.to_dict()
            self._save(data)
        logger.info(f"Saved credential for drive {name}")

    def delete_credential(self, name: str) -> bool:
        """
        Delete the credential for a drive.

        Returns:
            True if it was deleted, False if not found
        """
        with self._locked(exclusive=True):
            data = self._load()
            drives = data.get(DRIVES_KEY, {})
            if name not in drives:
                return False
            del drives[name]
            self._save(data)
        logger.info(f"Deleted credential for drive {name}")
        return True

    def has_credential(self, name: str) -> bool:
        with self._locked():
            data = self._load()
        return name in data.get(DRIVES_KEY, {})

    def list_drives(self) -> list[str]:
        """List drive names in insertion order."""
        with self._locked():
            data = self._load()
        return list(data.get(DRIVES_KEY, {}).keys())

    def get_oauth_client_config(self, provider: str) -> dict | None:
        """
        Get OAuth client configuration for a provider.

        Args:
            provider: Provider name (e.g., 'google')

        Returns:
            Dict with client_id, client_secret or None if not found
        """
        with self._locked():
            data = self._load()
        return data.get(OAUTH_CLIENTS_KEY, {}).get(provider)

    def set_oauth_client_config(
        self,
        provider: str,
        client_id: str,
        client_secret: str,
    ) -> None:
        """Store OAuth client configuration for a provider."""
        with self._locked(exclusive=True):
            data = self._load()
            data.setdefault(OAUTH_CLIENTS_KEY, {})[provider] = {
                "client_id": client_id,
                "client_secret": client_secret,
            }
            self._save(data)
        logger.info(f"Saved OAuth client config for provider {provider}")
