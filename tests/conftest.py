"""
Shared fixtures for familysync tests.

No real network or cloud access: Google Drive is replaced by an
in-process fake, sync files live in memory or under tmp_path.
"""

from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

import pytest

from familysync.audit import AuditLogger
from familysync.config.settings import SyncTimingSettings
from familysync.orchestrator import SyncOrchestrator
from familysync.services.storage import (
    ConnectionError,
    InMemoryAuditStorage,
    InMemoryStorageProvider,
    NotFoundError,
    PermissionDeniedError,
)
from familysync.services.storage.google_drive import FOLDER_MIME_TYPE
from familysync.stores import StoreRegistry
from familysync.sync.session import SyncSession
from familysync.sync.wal import MemoryWALChannel, SettingsWAL
from familysync.utils.dates import parse_iso, to_iso


# Low PBKDF2 cost keeps password tests fast
TEST_ITERATIONS = 1000


def ts(offset_seconds: float = 0, base: str = "2026-01-15T12:00:00.000Z") -> str:
    """A sync-file timestamp ``offset_seconds`` after a fixed base time."""
    return to_iso(parse_iso(base) + timedelta(seconds=offset_seconds))


def ago(**kwargs) -> str:
    """A sync-file timestamp in the past, relative to now."""
    return to_iso(datetime.now(timezone.utc) - timedelta(**kwargs))


class Device(NamedTuple):
    orchestrator: SyncOrchestrator
    registry: StoreRegistry
    audit: InMemoryAuditStorage


class FakeDriveClient:
    """
    Stand-in for GoogleDriveClient.

    Same method surface, backed by dicts. ``online=False`` fails every call,
    ``writes_fail=True`` fails only uploads.
    """

    def __init__(self):
        self.folders: dict[str, str] = {}
        self.names: dict[tuple[Optional[str], str], str] = {}
        self.files: dict[str, bytes] = {}
        self.modified: dict[str, str] = {}
        self.online = True
        self.writes_fail = False
        self.granted = True
        self.upload_count = 0
        self._counter = 0

    def connect(self):
        if not self.granted:
            raise PermissionDeniedError("Google Drive denied access (403)")
        return self

    def read_file(self, file_id: str) -> bytes:
        self._check()
        if file_id not in self.files:
            raise NotFoundError(f"Google Drive file not found: {file_id}")
        return self.files[file_id]

    def update_file(self, file_id: str, content: bytes) -> dict:
        self._check()
        if self.writes_fail:
            raise ConnectionError("Google Drive unreachable: upload failed")
        if file_id not in self.files:
            raise NotFoundError(f"Google Drive file not found: {file_id}")
        self.files[file_id] = content
        self.modified[file_id] = self._next_modified(file_id)
        self.upload_count += 1
        return {"id": file_id, "modifiedTime": self.modified[file_id]}

    def get_modified_time(self, file_id: str) -> Optional[str]:
        self._check()
        if file_id not in self.files:
            raise NotFoundError(f"Google Drive file not found: {file_id}")
        if not self.files[file_id]:
            return None
        return self.modified.get(file_id)

    def list_files(self, name=None, folder_id=None, mime_type=None) -> list[dict]:
        self._check()
        if mime_type == FOLDER_MIME_TYPE:
            if name in self.folders:
                return [{"id": self.folders[name], "name": name}]
            return []
        file_id = self.names.get((folder_id, name))
        if file_id is None or file_id not in self.files:
            return []
        return [{"id": file_id, "name": name}]

    def find_or_create_folder(self, name: str) -> str:
        self._check()
        if name not in self.folders:
            self.folders[name] = self._new_id("folder")
        return self.folders[name]

    def create_file(self, name: str, folder_id: Optional[str] = None, content: bytes = b"") -> str:
        self._check()
        file_id = self._new_id("file")
        self.names[(folder_id, name)] = file_id
        self.files[file_id] = b""
        if content:
            self.update_file(file_id, content)
        return file_id

    def _check(self) -> None:
        if not self.online:
            raise ConnectionError("Google Drive unreachable: offline")

    def _new_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def _next_modified(self, file_id: str) -> str:
        now = datetime.now(timezone.utc)
        previous = parse_iso(self.modified.get(file_id))
        if previous is not None and now <= previous:
            now = previous + timedelta(milliseconds=1)
        return to_iso(now)


@pytest.fixture
def timing():
    """Sync timings shrunk to test scale."""
    return SyncTimingSettings(
        debounce_seconds=0.05,
        poll_interval_seconds=0.02,
        highlight_duration_seconds=0.05,
        wal_max_age_hours=24.0,
    )


@pytest.fixture
def make_registry():
    """Factory for a fresh set of stores with an in-memory settings WAL."""
    def _make(family_id: Optional[str] = None, channel: Optional[MemoryWALChannel] = None):
        wal = SettingsWAL(
            channel or MemoryWALChannel(),
            family_id=family_id,
            max_age=timedelta(hours=24),
        )
        return StoreRegistry.create(wal)
    return _make


@pytest.fixture
def make_device(make_registry, timing):
    """Factory for one simulated device: its stores, orchestrator and audit trail."""
    def _make(
        session: Optional[SyncSession] = None,
        channel: Optional[MemoryWALChannel] = None,
    ) -> Device:
        session = session or SyncSession()
        registry = make_registry(session.family_id, channel)
        audit = InMemoryAuditStorage()
        orchestrator = SyncOrchestrator(
            registry,
            session=session,
            audit_logger=AuditLogger(audit),
            timing=timing,
            iterations=TEST_ITERATIONS,
        )
        return Device(orchestrator, registry, audit)
    return _make


@pytest.fixture
def provider():
    return InMemoryStorageProvider()


@pytest.fixture
def drive_client():
    return FakeDriveClient()
