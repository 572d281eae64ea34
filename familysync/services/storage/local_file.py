"""
Local File Storage Provider

DESIGN DECISION: The sync file can be any path the user picks, typically
inside a folder that a desktop client (Dropbox, iCloud Drive, Syncthing)
already replicates. We only need whole-file read/write and the file's
modification time.

Writes go to a temp file in the same directory followed by an atomic
rename, so another device never sees a half-written file.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from familysync.services.storage.interface import (
    ConnectionError,
    PermissionDeniedError,
    ProviderType,
    StorageError,
    StorageProvider,
)
from familysync.utils.dates import to_iso


logger = structlog.get_logger(__name__)


class LocalFileProvider(StorageProvider):
    """Sync file on the local filesystem."""

    def __init__(self, file_path: str | os.PathLike):
        self._path = Path(file_path).expanduser()

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.LOCAL_FILE

    @property
    def path(self) -> Path:
        return self._path

    async def read(self) -> Optional[bytes]:
        return await asyncio.to_thread(self._read)

    async def write(self, content: bytes) -> None:
        await asyncio.to_thread(self._write, content)
        logger.debug("local_file_written", path=str(self._path), size=len(content))

    async def get_last_modified(self) -> Optional[str]:
        return await asyncio.to_thread(self._last_modified)

    def get_display_name(self) -> str:
        return self._path.name

    async def is_ready(self) -> bool:
        return await asyncio.to_thread(self._check_access)

    async def request_access(self) -> bool:
        """
        Make sure the parent directory exists and is writable.

        There is no permission prompt for a local path; this is the best
        we can do to turn "needs permission" into "ready".
        """
        try:
            await asyncio.to_thread(self._path.parent.mkdir, parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot create {self._path.parent}: {e}")
        except OSError as e:
            raise ConnectionError(f"Cannot create {self._path.parent}: {e}")
        return await self.is_ready()

    def _read(self) -> Optional[bytes]:
        try:
            content = self._path.read_bytes()
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot read {self._path}: {e}")
        except OSError as e:
            raise ConnectionError(f"Cannot read {self._path}: {e}")

        if not content.strip():
            return None
        return content

    def _write(self, content: bytes) -> None:
        directory = self._path.parent
        try:
            fd, temp_path = tempfile.mkstemp(
                dir=directory,
                prefix=f".{self._path.name}.",
                suffix=".tmp",
            )
        except FileNotFoundError as e:
            raise StorageError(f"Sync folder does not exist: {directory}") from e
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot write to {directory}: {e}")
        except OSError as e:
            raise ConnectionError(f"Cannot write to {directory}: {e}")

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, self._path)
        except PermissionError as e:
            _remove_quietly(temp_path)
            raise PermissionDeniedError(f"Cannot write {self._path}: {e}")
        except OSError as e:
            _remove_quietly(temp_path)
            raise ConnectionError(f"Cannot write {self._path}: {e}")

    def _last_modified(self) -> Optional[str]:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot stat {self._path}: {e}")
        except OSError as e:
            raise ConnectionError(f"Cannot stat {self._path}: {e}")

        if stat.st_size == 0:
            return None
        moment = datetime.fromtimestamp(stat.st_mtime_ns / 1_000_000_000, tz=timezone.utc)
        return to_iso(moment)

    def _check_access(self) -> bool:
        if self._path.exists():
            return os.access(self._path, os.R_OK | os.W_OK)
        return self._path.parent.is_dir() and os.access(self._path.parent, os.W_OK)


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
