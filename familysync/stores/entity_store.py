"""
Local Entity Stores

One store per collection, sitting on top of the host's datastore
(an EntityRepository). Stores keep an in-memory copy of their records,
record tombstones on delete, and tell listeners whenever the collection
changes so the orchestrator can schedule a save.
"""

from enum import Enum
from typing import Any, Callable, NamedTuple, Optional

import structlog

from familysync.models.sync_file import COLLECTION_ENTITY_TYPES, EntityType
from familysync.services.storage.interface import EntityRepository
from familysync.sync.events import EventHub
from familysync.sync.tombstones import TombstoneLedger


logger = structlog.get_logger(__name__)


class ChangeKind(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    REPLACED = "replaced"


class StoreChange(NamedTuple):
    collection: str
    kind: ChangeKind
    record_id: Optional[str] = None


class EntityStore:
    """Owns one entity collection."""

    def __init__(
        self,
        collection: str,
        repository: EntityRepository,
        ledger: TombstoneLedger,
    ):
        if collection not in COLLECTION_ENTITY_TYPES:
            raise ValueError(f"Unknown collection: {collection}")
        self.collection = collection
        self.entity_type: EntityType = COLLECTION_ENTITY_TYPES[collection]
        self._repository = repository
        self._ledger = ledger
        self._items: list[dict[str, Any]] = []
        self._changes: EventHub[StoreChange] = EventHub(f"{collection}_changed")

    @property
    def items(self) -> list[dict[str, Any]]:
        """Copies of the current records."""
        return [dict(item) for item in self._items]

    def get(self, record_id: str) -> Optional[dict[str, Any]]:
        for item in self._items:
            if item.get("id") == record_id:
                return dict(item)
        return None

    def subscribe(self, listener: Callable[[StoreChange], Any]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    async def load(self) -> None:
        """Refresh the in-memory copy from the datastore. Listeners aren't notified."""
        self._items = await self._repository.get_all()
        self.reconcile()

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._repository.create(data)
        self._items.append(record)
        self.reconcile()
        self._changes.emit(StoreChange(self.collection, ChangeKind.CREATED, record["id"]))
        return dict(record)

    async def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        record = await self._repository.update(record_id, changes)
        self._items = [record if item.get("id") == record_id else item for item in self._items]
        self.reconcile()
        self._changes.emit(StoreChange(self.collection, ChangeKind.UPDATED, record_id))
        return dict(record)

    async def delete(self, record_id: str) -> bool:
        """Delete a record and leave a tombstone for it."""
        deleted = await self._repository.delete(record_id)
        if not deleted:
            return False

        self._ledger.record_deletion(self.entity_type, record_id)
        self._items = [item for item in self._items if item.get("id") != record_id]
        self.reconcile()
        self._changes.emit(StoreChange(self.collection, ChangeKind.DELETED, record_id))
        return True

    async def replace_all(self, records: list[dict[str, Any]]) -> None:
        """Bulk replace, used after a merge. Doesn't touch the tombstone ledger."""
        await self._repository.replace_all(records)
        self._items = [dict(r) for r in records]
        self._changes.emit(StoreChange(self.collection, ChangeKind.REPLACED))

    def reconcile(self) -> None:
        """Recompute derived state. Stores without derived state do nothing."""
        return None

    def updated_at_map(self) -> dict[str, str]:
        return {
            item["id"]: item.get("updatedAt", "")
            for item in self._items
            if isinstance(item.get("id"), str)
        }

    def __len__(self) -> int:
        return len(self._items)
