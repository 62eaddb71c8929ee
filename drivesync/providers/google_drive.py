"""
Google Drive API client and storage backend.

Every API call goes through ``authorized_call`` so that a rejected access
token is refreshed and the call retried once. Transient HTTP failures
(429, 5xx) are retried with exponential backoff by the Google client
library itself, bounded by DRIVE_API_NUM_RETRIES.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import IO, AsyncIterator, Callable, TypeVar

import httplib2
from django.conf import settings
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import HttpRequest, MediaIoBaseDownload, MediaIoBaseUpload

from drivesync.auth import Authorizer, authorized_call
from drivesync.exceptions import (
    AuthExpiredError,
    ConflictError,
    ContentIntegrityError,
    DriveSyncError,
    NotFoundError,
    TransientError,
)
from drivesync.providers.path_index import FolderRecord, PathIndex
from drivesync.storage import (
    ROOT,
    ByteSource,
    Directory,
    Entry,
    File,
    Storage,
    normalize_path,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"

FILE_FIELDS = "id,name,mimeType,size,sha256Checksum,md5Checksum,parents,trashed,modifiedTime"
FOLDER_FIELDS = "id,name,parents"

# 403 reasons Google uses for quota and rate limiting
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class GoogleDriveError(DriveSyncError):
    """Base exception for Google Drive API errors."""

    pass


@dataclass
class DriveFile:
    """Represents a file or folder from Google Drive."""

    id: str
    name: str
    mime_type: str = ""
    size: int | None = None
    sha256_checksum: str | None = None
    md5_checksum: str | None = None
    parents: list[str] = field(default_factory=list)
    trashed: bool = False
    modified_time: datetime | None = None

    @classmethod
    def from_api_response(cls, data: dict) -> "DriveFile":
        """Create DriveFile from Google API response."""
        modified = data.get("modifiedTime")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            size=int(data["size"]) if "size" in data else None,
            sha256_checksum=data.get("sha256Checksum"),
            md5_checksum=data.get("md5Checksum"),
            parents=data.get("parents", []),
            trashed=data.get("trashed", False),
            modified_time=datetime.fromisoformat(modified.replace("Z", "+00:00"))
            if modified
            else None,
        )

    @property
    def is_folder(self) -> bool:
        return self.mime_type == FOLDER_MIME_TYPE

    def to_entry(self) -> Entry:
        if self.is_folder:
            return Directory(identifier=self.id, name=self.name)
        return File(
            identifier=self.id,
            name=self.name,
            content_hash=self.sha256_checksum,
            size_bytes=self.size,
        )

    def to_folder_record(self) -> FolderRecord:
        # A folder's first parent is its tree parent
        return FolderRecord(
            identifier=self.id,
            name=self.name,
            parent=self.parents[0] if self.parents else None,
        )


def escape_query_value(value: str) -> str:
    """Escape a string for use inside a quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def translate_http_error(error: HttpError) -> DriveSyncError:
    """Map a Google API HttpError onto the drivesync error taxonomy."""
    status = error.resp.status
    reason = getattr(error, "reason", "") or ""
    message = f"Drive API error {status}: {reason}"

    if status == 401:
        return AuthExpiredError(message)
    if status == 404:
        return NotFoundError(message)
    if status == 429 or status >= 500:
        return TransientError(message)
    if status == 403:
        try:
            details = error.error_details or []
        except AttributeError:
            details = []
        if any(
            isinstance(d, dict) and d.get("reason") in RATE_LIMIT_REASONS for d in details
        ):
            return TransientError(message)
    return GoogleDriveError(message)


class DriveClient:
    """
    Async client for the Drive v3 API.

    Requests are built with the discovery-based client and executed in a
    worker thread on a fresh HTTP connection carrying the current bearer
    token, so concurrent calls never share connection state.
    """

    def __init__(
        self,
        authorizer: Authorizer,
        service=None,
        timeout: float | None = None,
        num_retries: int | None = None,
        page_size: int | None = None,
        upload_chunk_size: int | None = None,
    ):
        self.authorizer = authorizer
        self.timeout = timeout or settings.DRIVE_API_TIMEOUT
        self.num_retries = settings.DRIVE_API_NUM_RETRIES if num_retries is None else num_retries
        self.page_size = page_size or settings.DRIVE_PAGE_SIZE
        self.upload_chunk_size = upload_chunk_size or settings.DRIVE_UPLOAD_CHUNK_SIZE
        self._service = service

    @property
    def service(self):
        """Get or create the Drive API service."""
        if self._service is None:
            self._service = build(
                "drive",
                "v3",
                http=httplib2.Http(timeout=self.timeout),
                cache_discovery=False,
                static_discovery=True,
            )
        return self._service

    def _authorized_http(self, token: str) -> AuthorizedHttp:
        # Refreshing is left to authorized_call, so 401s surface as HttpError
        return AuthorizedHttp(
            Credentials(token=token),
            http=httplib2.Http(timeout=self.timeout),
            refresh_status_codes=(),
            max_refresh_attempts=0,
        )

    async def _call(self, operation: Callable[[AuthorizedHttp], T]) -> T:
        """Run a blocking API operation with authorization and error mapping."""

        async def attempt(token: str) -> T:
            http = self._authorized_http(token)
            try:
                return await asyncio.to_thread(operation, http)
            except HttpError as e:
                raise translate_http_error(e) from e
            except (httplib2.HttpLib2Error, OSError) as e:
                raise TransientError(f"Drive request failed: {e}") from e

        return await authorized_call(self.authorizer, attempt)

    async def execute(self, request_factory: Callable[[], HttpRequest]) -> dict:
        """
        Build and execute one API request.

        Args:
            request_factory: Builds the request; called again on retry

        Returns:
            The decoded JSON response
        """

        def operation(http: AuthorizedHttp) -> dict:
            request = request_factory()
            return request.execute(http=http, num_retries=self.num_retries)

        return await self._call(operation)

    async def get_file(self, file_id: str, fields: str = FILE_FIELDS) -> DriveFile:
        response = await self.execute(
            lambda: self.service.files().get(
                fileId=file_id,
                fields=fields,
                supportsAllDrives=True,
            )
        )
        return DriveFile.from_api_response(response)

    async def get_about(self) -> dict:
        """
        Get basic user info for connection testing.

        Returns:
            Dict with email and display_name
        """
        about = await self.execute(lambda: self.service.about().get(fields="user"))
        return {
            "email": about["user"].get("emailAddress"),
            "display_name": about["user"].get("displayName"),
        }

    async def list_files(self, query: str, fields: str = FILE_FIELDS) -> list[DriveFile]:
        """
        List all files matching a query, following page tokens.

        Args:
            query: Drive search query
            fields: Per-file fields to request

        Returns:
            Every matching file across all pages
        """
        files: list[DriveFile] = []
        page_token = None

        while True:
            params = {
                "q": query,
                "pageSize": self.page_size,
                "fields": f"nextPageToken,files({fields})",
                "supportsAllDrives": True,
                "includeItemsFromAllDrives": True,
            }
            if page_token:
                params["pageToken"] = page_token

            response = await self.execute(lambda: self.service.files().list(**params))

            files.extend(DriveFile.from_api_response(f) for f in response.get("files", []))
            logger.debug(f"Fetched page of {len(response.get('files', []))} files for {query!r}")

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return files

    async def list_children(self, folder_id: str) -> list[DriveFile]:
        return await self.list_files(
            f"'{escape_query_value(folder_id)}' in parents and trashed = false"
        )

    async def list_folders(self) -> list[DriveFile]:
        return await self.list_files(
            f"mimeType = '{FOLDER_MIME_TYPE}' and trashed = false",
            fields=FOLDER_FIELDS + ",mimeType",
        )

    async def find_children(self, parent_id: str, name: str) -> list[DriveFile]:
        """Find the non-trashed children of a folder with an exact name."""
        return await self.list_files(
            f"name = '{escape_query_value(name)}' and "
            f"'{escape_query_value(parent_id)}' in parents and trashed = false"
        )

    async def create_folder(self, parent_id: str, name: str) -> DriveFile:
        body = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]}
        response = await self.execute(
            lambda: self.service.files().create(
                body=body,
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            )
        )
        return DriveFile.from_api_response(response)

    async def upload_file(
        self,
        parent_id: str,
        name: str,
        stream: IO[bytes],
        file_id: str | None = None,
    ) -> DriveFile:
        """
        Upload content with a resumable upload.

        Args:
            parent_id: Folder to create the file in
            name: File name
            stream: Seekable stream holding the complete content
            file_id: Existing file whose content is replaced instead

        Returns:
            The created or updated file
        """
        mime_type = mimetypes.guess_type(name)[0] or "application/octet-stream"

        def operation(http: AuthorizedHttp) -> dict:
            stream.seek(0)
            media = MediaIoBaseUpload(
                stream,
                mimetype=mime_type,
                chunksize=self.upload_chunk_size,
                resumable=True,
            )
            if file_id:
                request = self.service.files().update(
                    fileId=file_id,
                    media_body=media,
                    fields=FILE_FIELDS,
                    supportsAllDrives=True,
                )
            else:
                request = self.service.files().create(
                    body={"name": name, "parents": [parent_id]},
                    media_body=media,
                    fields=FILE_FIELDS,
                    supportsAllDrives=True,
                )
            return request.execute(http=http, num_retries=self.num_retries)

        return DriveFile.from_api_response(await self._call(operation))

    async def copy_file(self, file_id: str, parent_id: str, name: str) -> DriveFile:
        body = {"name": name, "parents": [parent_id]}
        response = await self.execute(
            lambda: self.service.files().copy(
                fileId=file_id,
                body=body,
                fields=FILE_FIELDS,
                supportsAllDrives=True,
            )
        )
        return DriveFile.from_api_response(response)

    async def delete_file(self, file_id: str) -> None:
        await self.execute(
            lambda: self.service.files().delete(fileId=file_id, supportsAllDrives=True)
        )

    async def download_file(self, file_id: str, stream: IO[bytes]) -> int:
        """
        Download a file's content to a provided stream.

        The stream is rewound and truncated before every attempt.

        Returns:
            Number of bytes written
        """

        def operation(http: AuthorizedHttp) -> int:
            stream.seek(0)
            stream.truncate()
            request = self.service.files().get_media(fileId=file_id, supportsAllDrives=True)
            request.http = http
            downloader = MediaIoBaseDownload(stream, request)

            done = False
            while not done:
                status, done = downloader.next_chunk(num_retries=self.num_retries)
                if status:
                    logger.debug(f"Download progress: {int(status.progress() * 100)}%")
            return stream.tell()

        return await self._call(operation)


class DriveStorage(Storage):
    """
    Storage backend over Google Drive.

    Drive has no path lookup, so folder paths are resolved through a
    PathIndex built once at connection time. Files are looked up by name
    within their parent folder.
    """

    def __init__(self, client: DriveClient, index: PathIndex, base: str | PurePosixPath = ROOT):
        self.client = client
        self.index = index
        self.base = normalize_path(base)

    def __str__(self) -> str:
        return f"{self.client.authorizer.name}:{self.base}"

    @classmethod
    async def connect(cls, client: DriveClient, base: str | PurePosixPath = ROOT) -> "DriveStorage":
        """
        Resolve the root folder and build the path index.

        Args:
            client: Client for the drive
            base: Drive folder that acts as this backend's root
        """
        root = await client.get_file("root", fields="id,name")
        folders = await client.list_folders()
        index = PathIndex.build(root.id, (f.to_folder_record() for f in folders))
        logger.info(f"Connected to drive {client.authorizer.name}: {len(index)} folders indexed")
        return cls(client, index, base=base)

    def _absolute(self, path: str | PurePosixPath) -> PurePosixPath:
        return self.base.joinpath(*normalize_path(path).relative_to(ROOT).parts)

    def _directory_id(self, path: str | PurePosixPath) -> str:
        folder_id = self.index.get(self._absolute(path))
        if folder_id is None:
            raise NotFoundError(f"Directory not found: {path}")
        return folder_id

    async def list(self, path: PurePosixPath) -> list[Entry]:
        folder_id = self._directory_id(path)
        files = await self.client.list_children(folder_id)
        return [f.to_entry() for f in files]

    async def create_dir(self, path: PurePosixPath) -> None:
        await self.index.ensure(self._absolute(path), self._create_folder)

    async def _create_folder(self, parent_id: str, name: str) -> str:
        # The folder may have appeared since the index was built
        existing = await self.client.find_children(parent_id, name)
        for item in existing:
            if item.is_folder:
                return item.id
        if existing:
            raise ConflictError(f"A file named {name!r} occupies the folder name")

        folder = await self.client.create_folder(parent_id, name)
        logger.info(f"Created folder {name} ({folder.id})")
        return folder.id

    async def write_file(self, path: PurePosixPath, source: ByteSource) -> None:
        path = normalize_path(path)
        parent_id = self._directory_id(path.parent)

        existing = await self.client.find_children(parent_id, path.name)
        if any(item.is_folder for item in existing):
            raise ConflictError(f"A folder occupies the file path {path}")

        # Spooled so that the upload can be repeated after a token refresh
        with tempfile.SpooledTemporaryFile(max_size=settings.SYNC_SPOOL_MAX_SIZE) as buffer:
            size = 0
            async for chunk in source:
                await asyncio.to_thread(buffer.write, chunk)
                size += len(chunk)
            if size != source.length:
                raise ContentIntegrityError(
                    f"Expected {source.length} bytes for {path}, received {size}"
                )

            file_id = existing[0].id if existing else None
            await self.client.upload_file(parent_id, path.name, buffer, file_id=file_id)

    async def copy_file(self, source_path: PurePosixPath, dest_path: PurePosixPath) -> None:
        source_path = normalize_path(source_path)
        dest_path = normalize_path(dest_path)

        source_parent = self._directory_id(source_path.parent)
        matches = [
            f for f in await self.client.find_children(source_parent, source_path.name)
            if not f.is_folder
        ]
        if not matches:
            raise NotFoundError(f"File not found: {source_path}")

        dest_parent = self._directory_id(dest_path.parent)
        existing = await self.client.find_children(dest_parent, dest_path.name)
        if any(item.is_folder for item in existing):
            raise ConflictError(f"A folder occupies the file path {dest_path}")

        await self.client.copy_file(matches[0].id, dest_parent, dest_path.name)
        for stale in existing:
            await self.client.delete_file(stale.id)

    async def delete(self, path: PurePosixPath) -> None:
        path = normalize_path(path)
        parent_id = self._directory_id(path.parent)
        matches = await self.client.find_children(parent_id, path.name)
        if not matches:
            raise NotFoundError(f"Not found: {path}")

        # Deleting a Drive folder removes everything below it
        files = [item for item in matches if not item.is_folder]
        if files:
            await self.client.delete_file(files[0].id)
            return

        folder = matches[0]
        if await self.client.list_children(folder.id):
            raise ConflictError(f"Directory is not empty: {path}")
        await self.client.delete_file(folder.id)

    async def open_file(self, path: PurePosixPath, entry: File) -> ByteSource:
        if entry.size_bytes is None:
            raise ContentIntegrityError(f"File has no binary content: {path}")
        return ByteSource(entry.size_bytes, self._download_chunks(entry.identifier))

    async def _download_chunks(self, file_id: str) -> AsyncIterator[bytes]:
        with tempfile.SpooledTemporaryFile(max_size=settings.SYNC_SPOOL_MAX_SIZE) as buffer:
            await self.client.download_file(file_id, buffer)
            buffer.seek(0)
            while True:
                chunk = await asyncio.to_thread(buffer.read, settings.SYNC_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
