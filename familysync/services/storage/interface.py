"""
Abstract Storage Interfaces

DESIGN DECISION: We define abstract interfaces for every storage seam.
This allows us to:
1. Swap the sync target (local file, Google Drive) without touching the orchestrator
2. Use in-memory storage for testing
3. Keep the merge and codec logic decoupled from where the bytes live
4. Leave the choice of local datastore to the host application

The interfaces are intentionally small - we're not building an ORM.
Just the operations the sync core needs.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from familysync.models.audit import AuditEvent


class ProviderType(str, Enum):
    """Kinds of sync target."""
    LOCAL_FILE = "local_file"
    GOOGLE_DRIVE = "google_drive"
    MEMORY = "memory"


class StorageProvider(ABC):
    """
    Where the shared sync file lives.

    The orchestrator depends only on this interface. Implementations hold
    their own handles (file path, Drive file id) and credentials.
    """

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        pass

    @abstractmethod
    async def read(self) -> Optional[bytes]:
        """
        Read the whole sync file.

        Returns:
            The raw bytes, or None if the file doesn't exist or is empty

        Raises:
            PermissionDeniedError: If access hasn't been granted
            ConnectionError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def write(self, content: bytes) -> None:
        """
        Replace the whole sync file.

        Raises:
            PermissionDeniedError: If access hasn't been granted
            ConnectionError: If the backend is unreachable
        """
        pass

    @abstractmethod
    async def get_last_modified(self) -> Optional[str]:
        """
        Cheap check of when the file was last written.

        Returns:
            ISO-8601 timestamp, or None if the file doesn't exist
        """
        pass

    @abstractmethod
    def get_display_name(self) -> str:
        """Human-readable name of the sync target (file name)."""
        pass

    @abstractmethod
    async def is_ready(self) -> bool:
        """True if read/write would currently be permitted."""
        pass

    @abstractmethod
    async def request_access(self) -> bool:
        """
        Ask for access to the sync target.

        Returns:
            True if access is now granted
        """
        pass

    async def disconnect(self) -> None:
        """Release any handles. Default: nothing to release."""
        return None

    @property
    def has_pending_writes(self) -> bool:
        """True if a failed write is parked for retry."""
        return False

    async def flush_pending_writes(self) -> bool:
        """
        Retry a parked write, if any.

        Returns:
            True if parked content was written
        """
        return False


class EntityRepository(ABC):
    """
    Per-entity CRUD access to the local datastore.

    Records are plain dicts carrying at least ``id``, ``createdAt`` and
    ``updatedAt``. The repository stamps those fields on create and update.
    """

    @abstractmethod
    async def get_all(self) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    async def get_by_id(self, record_id: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Create a record.

        Assigns an ``id`` if the input has none, and stamps
        ``createdAt`` / ``updatedAt``.

        Raises:
            DuplicateError: If a record with the same id exists
        """
        pass

    @abstractmethod
    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """
        Apply a partial update and bump ``updatedAt``.

        Raises:
            NotFoundError: If the record doesn't exist
        """
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """
        Delete a record.

        Returns:
            True if a record was removed
        """
        pass

    @abstractmethod
    async def replace_all(self, records: list[dict[str, Any]]) -> None:
        """Bulk replace the whole collection. Field values are stored as given."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one poll tick).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not reach the storage backend. Transient; retry later."""
    pass


class PermissionDeniedError(StorageError):
    """Access to the sync target hasn't been granted (or was revoked)."""
    pass
