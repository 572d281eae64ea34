"""
In-Memory Storage Implementations

Used by tests and by hosts that keep their datastore in memory.
They follow the same interfaces as the real backends, so the sync core
can't tell the difference.
"""

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from familysync.models.audit import AuditEvent
from familysync.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    EntityRepository,
    NotFoundError,
    ProviderType,
    StorageProvider,
)
from familysync.utils.dates import now_iso, parse_iso, to_iso


class InMemoryEntityRepository(EntityRepository):
    """Dict-backed entity repository. Insertion order is preserved."""

    def __init__(self, records: Optional[list[dict[str, Any]]] = None):
        self._records: dict[str, dict[str, Any]] = {}
        for record in records or []:
            self._records[record["id"]] = dict(record)

    async def get_all(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._records.values()]

    async def get_by_id(self, record_id: str) -> Optional[dict[str, Any]]:
        record = self._records.get(record_id)
        return dict(record) if record is not None else None

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        record = dict(data)
        record_id = record.get("id") or str(uuid4())
        if record_id in self._records:
            raise DuplicateError(f"Record already exists: {record_id}")

        timestamp = now_iso()
        record["id"] = record_id
        record.setdefault("createdAt", timestamp)
        record["updatedAt"] = timestamp
        self._records[record_id] = record
        return dict(record)

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        if record_id not in self._records:
            raise NotFoundError(f"Record not found: {record_id}")

        record = dict(self._records[record_id])
        record.update(changes)
        record["id"] = record_id
        record["updatedAt"] = now_iso()
        self._records[record_id] = record
        return dict(record)

    async def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    async def replace_all(self, records: list[dict[str, Any]]) -> None:
        self._records = {r["id"]: dict(r) for r in records}


class InMemoryAuditStorage(AuditStorageInterface):
    """Bounded ring buffer of audit events."""

    def __init__(self, max_events: int = 500):
        self._events: deque[AuditEvent] = deque(maxlen=max_events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return [e for e in self._events if e.correlation_id == correlation_id]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]

    def __len__(self) -> int:
        return len(self._events)


class InMemoryStorageProvider(StorageProvider):
    """
    Sync target held in memory.

    Every write stamps a strictly increasing last-modified time, so two
    writes within the same millisecond are still told apart.
    """

    def __init__(
        self,
        content: Optional[bytes] = None,
        name: str = "memory.beanpod",
        granted: bool = True,
    ):
        self._content = content
        self._name = name
        self._granted = granted
        self._modified: Optional[str] = now_iso() if content else None
        self.write_count = 0

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.MEMORY

    @property
    def content(self) -> Optional[bytes]:
        return self._content

    async def read(self) -> Optional[bytes]:
        if not self._content or not self._content.strip():
            return None
        return self._content

    async def write(self, content: bytes) -> None:
        self._content = content
        self._modified = self._next_modified()
        self.write_count += 1

    async def get_last_modified(self) -> Optional[str]:
        return self._modified if self._content else None

    def get_display_name(self) -> str:
        return self._name

    async def is_ready(self) -> bool:
        return self._granted

    async def request_access(self) -> bool:
        self._granted = True
        return True

    def _next_modified(self) -> str:
        now = datetime.now(timezone.utc)
        previous = parse_iso(self._modified)
        if previous is not None and now <= previous:
            now = previous + timedelta(milliseconds=1)
        return to_iso(now)
