"""
Tombstone Ledger

Records which entities were deleted on this device so the deletion can
travel through the sync file. Without it, a merge couldn't tell "deleted
here" from "never seen here" and would bring the record back.

Invariants:
- At most one tombstone per (entity type, id); recording twice is a no-op.
- Filled only by a successful local delete, or by importing merged
  tombstones after a load.
"""

from typing import Iterable, Optional

import structlog

from familysync.models.sync_file import DeletionTombstone, EntityType
from familysync.utils.dates import now_iso


logger = structlog.get_logger(__name__)


class TombstoneLedger:
    """In-memory ledger of deletion tombstones, in insertion order."""

    def __init__(self, tombstones: Optional[Iterable[DeletionTombstone]] = None):
        self._entries: dict[tuple[EntityType, str], DeletionTombstone] = {}
        if tombstones:
            self.replace_all(tombstones)

    def record_deletion(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        deleted_at: Optional[str] = None,
    ) -> DeletionTombstone:
        """
        Record that an entity was deleted.

        Returns the existing tombstone if one is already recorded.
        """
        entity_type = EntityType(entity_type)
        key = (entity_type, entity_id)
        existing = self._entries.get(key)
        if existing is not None:
            return existing

        tombstone = DeletionTombstone(
            id=entity_id,
            entity_type=entity_type,
            deleted_at=deleted_at or now_iso(),
        )
        self._entries[key] = tombstone
        logger.debug(
            "tombstone_recorded",
            entity_type=entity_type.value,
            entity_id=entity_id,
        )
        return tombstone

    def get_all(self) -> list[DeletionTombstone]:
        return list(self._entries.values())

    def replace_all(self, tombstones: Iterable[DeletionTombstone]) -> None:
        """
        Swap the ledger for a merged tombstone list.

        If the list repeats a key, the latest deletion wins.
        """
        entries: dict[tuple[EntityType, str], DeletionTombstone] = {}
        for tombstone in tombstones:
            current = entries.get(tombstone.key)
            if current is None or tombstone.deleted_time > current.deleted_time:
                entries[tombstone.key] = tombstone
        self._entries = entries

    def reset(self) -> None:
        self._entries = {}

    def is_deleted(self, entity_type: EntityType | str, entity_id: str) -> bool:
        return (EntityType(entity_type), entity_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)
