"""
Google Drive Storage Provider

DESIGN DECISION: Google Drive is the cloud sync target because:
1. Most families already have a Google account
2. No server of our own to run
3. The file stays visible (and downloadable) in the user's Drive
4. Drive reports a cheap modifiedTime we can poll

TRADEOFFS:
- No compare-and-swap on write (the merge engine handles concurrent edits)
- Network can disappear at any time (failed writes are queued offline)

The client is a thin synchronous wrapper over the Drive v3 REST API.
The provider runs it in a worker thread so the event loop never blocks.
"""

import asyncio
from typing import Any, Optional

import requests
import structlog
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.service_account import Credentials
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from familysync.config import get_settings
from familysync.config.settings import GoogleDriveSettings
from familysync.services.storage.interface import (
    ConnectionError,
    NotFoundError,
    PermissionDeniedError,
    ProviderType,
    StorageError,
    StorageProvider,
)
from familysync.services.storage.offline_queue import OfflineSaveQueue
from familysync.utils.dates import parse_iso, to_iso


logger = structlog.get_logger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SYNC_FILE_MIME_TYPE = "application/json"
REQUEST_TIMEOUT_SECONDS = 30


class GoogleDriveClient:
    """
    Low-level Google Drive client wrapper.

    Handles authentication and maps HTTP failures onto storage exceptions.
    """

    def __init__(
        self,
        settings: Optional[GoogleDriveSettings] = None,
        session: Optional[AuthorizedSession] = None,
    ):
        self._settings = settings
        self._session = session

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(ConnectionError),
        reraise=True,
    )
    def connect(self) -> AuthorizedSession:
        """
        Establish an authorized session.

        Uses service account credentials for authentication.
        """
        if self._session is None:
            settings = self._settings or get_settings().google_drive
            try:
                credentials = Credentials.from_service_account_file(
                    settings.credentials_path,
                    scopes=DRIVE_SCOPES,
                )
            except FileNotFoundError:
                raise PermissionDeniedError(
                    f"Google credentials file not found: {settings.credentials_path}"
                )
            except ValueError as e:
                raise PermissionDeniedError(f"Invalid Google credentials: {e}")
            self._session = AuthorizedSession(credentials)

        return self._session

    def read_file(self, file_id: str) -> bytes:
        response = self._request(
            "GET",
            f"{DRIVE_API}/files/{file_id}",
            params={"alt": "media"},
        )
        return response.content

    def update_file(self, file_id: str, content: bytes) -> dict[str, Any]:
        response = self._request(
            "PATCH",
            f"{DRIVE_UPLOAD_API}/files/{file_id}",
            params={"uploadType": "media", "fields": "id,modifiedTime"},
            data=content,
            headers={"Content-Type": SYNC_FILE_MIME_TYPE},
        )
        return response.json()

    def get_modified_time(self, file_id: str) -> Optional[str]:
        response = self._request(
            "GET",
            f"{DRIVE_API}/files/{file_id}",
            params={"fields": "modifiedTime,size"},
        )
        meta = response.json()
        if str(meta.get("size", "1")) == "0":
            return None
        return meta.get("modifiedTime")

    def list_files(
        self,
        name: Optional[str] = None,
        folder_id: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List non-trashed files, optionally filtered by name, parent and type."""
        clauses = ["trashed = false"]
        if name is not None:
            clauses.append(f"name = '{_escape(name)}'")
        if folder_id is not None:
            clauses.append(f"'{_escape(folder_id)}' in parents")
        if mime_type is not None:
            clauses.append(f"mimeType = '{_escape(mime_type)}'")

        response = self._request(
            "GET",
            f"{DRIVE_API}/files",
            params={
                "q": " and ".join(clauses),
                "fields": "files(id,name,modifiedTime)",
                "spaces": "drive",
            },
        )
        return response.json().get("files", [])

    def find_or_create_folder(self, name: str) -> str:
        folders = self.list_files(name=name, mime_type=FOLDER_MIME_TYPE)
        if folders:
            return folders[0]["id"]

        response = self._request(
            "POST",
            f"{DRIVE_API}/files",
            params={"fields": "id"},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE},
        )
        folder_id = response.json()["id"]
        logger.info("drive_folder_created", name=name, folder_id=folder_id)
        return folder_id

    def create_file(
        self,
        name: str,
        folder_id: Optional[str] = None,
        content: bytes = b"",
    ) -> str:
        metadata: dict[str, Any] = {"name": name, "mimeType": SYNC_FILE_MIME_TYPE}
        if folder_id:
            metadata["parents"] = [folder_id]

        response = self._request(
            "POST",
            f"{DRIVE_API}/files",
            params={"fields": "id"},
            json=metadata,
        )
        file_id = response.json()["id"]
        if content:
            self.update_file(file_id, content)
        logger.info("drive_file_created", name=name, file_id=file_id)
        return file_id

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        session = self.connect()
        kwargs.setdefault("timeout", REQUEST_TIMEOUT_SECONDS)
        try:
            response = session.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ConnectionError(f"Google Drive unreachable: {e}")

        if response.status_code in (401, 403):
            raise PermissionDeniedError(
                f"Google Drive denied access ({response.status_code})"
            )
        if response.status_code == 404:
            raise NotFoundError(f"Google Drive file not found: {url}")
        if response.status_code == 429 or response.status_code >= 500:
            raise ConnectionError(
                f"Google Drive temporarily unavailable ({response.status_code})"
            )
        if response.status_code >= 400:
            raise StorageError(
                f"Google Drive request failed ({response.status_code}): {response.text[:200]}"
            )
        return response


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(StorageProvider):
    """
    Sync file stored in Google Drive.

    The file is located by id if one is configured, otherwise by name inside
    the app folder (created on first access).
    """

    def __init__(
        self,
        client: Optional[GoogleDriveClient] = None,
        file_id: Optional[str] = None,
        file_name: Optional[str] = None,
        folder_name: Optional[str] = None,
        queue: Optional[OfflineSaveQueue] = None,
    ):
        settings = None
        if file_name is None or folder_name is None:
            settings = get_settings().google_drive
        self._client = client or GoogleDriveClient(settings)
        self._file_id = file_id if file_id is not None else (settings.file_id if settings else None)
        self._file_name = file_name or settings.file_name
        self._folder_name = folder_name or settings.folder_name
        self._queue = queue or OfflineSaveQueue()

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GOOGLE_DRIVE

    @property
    def file_id(self) -> Optional[str]:
        return self._file_id

    async def read(self) -> Optional[bytes]:
        file_id = await self._resolve_file_id(create=False)
        if file_id is None:
            return None
        try:
            content = await asyncio.to_thread(self._client.read_file, file_id)
        except NotFoundError:
            self._file_id = None
            return None
        if not content.strip():
            return None
        return content

    async def write(self, content: bytes) -> None:
        try:
            await self._write(content)
        except ConnectionError:
            self._queue.enqueue(content)
            raise
        self._queue.clear()

    async def get_last_modified(self) -> Optional[str]:
        file_id = await self._resolve_file_id(create=False)
        if file_id is None:
            return None
        try:
            modified = await asyncio.to_thread(self._client.get_modified_time, file_id)
        except NotFoundError:
            self._file_id = None
            return None
        parsed = parse_iso(modified)
        return to_iso(parsed) if parsed is not None else None

    def get_display_name(self) -> str:
        return self._file_name

    async def is_ready(self) -> bool:
        try:
            await asyncio.to_thread(self._client.connect)
        except PermissionDeniedError:
            return False
        return True

    async def request_access(self) -> bool:
        await asyncio.to_thread(self._client.connect)
        await self._resolve_file_id(create=True)
        return True

    async def disconnect(self) -> None:
        self._queue.clear()

    @property
    def has_pending_writes(self) -> bool:
        return self._queue.has_pending

    async def flush_pending_writes(self) -> bool:
        return await self._queue.flush(self._write)

    async def _write(self, content: bytes) -> None:
        file_id = await self._resolve_file_id(create=True)
        try:
            await asyncio.to_thread(self._client.update_file, file_id, content)
        except NotFoundError:
            # Deleted from Drive since we last looked; recreate it.
            self._file_id = None
            file_id = await self._resolve_file_id(create=True)
            await asyncio.to_thread(self._client.update_file, file_id, content)

    async def _resolve_file_id(self, create: bool) -> Optional[str]:
        if self._file_id is not None:
            return self._file_id
        self._file_id = await asyncio.to_thread(self._lookup_file_id, create)
        return self._file_id

    def _lookup_file_id(self, create: bool) -> Optional[str]:
        if create:
            folder_id = self._client.find_or_create_folder(self._folder_name)
        else:
            folders = self._client.list_files(
                name=self._folder_name,
                mime_type=FOLDER_MIME_TYPE,
            )
            if not folders:
                return None
            folder_id = folders[0]["id"]

        files = self._client.list_files(name=self._file_name, folder_id=folder_id)
        if files:
            return files[0]["id"]
        if not create:
            return None
        return self._client.create_file(self._file_name, folder_id=folder_id)
