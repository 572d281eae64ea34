"""
Settings Store

The settings singleton (id ``app_settings``). Every change is written to
the settings WAL synchronously, before the datastore write and long
before the debounced sync file save.
"""

from typing import Any, Callable, Optional

import structlog

from familysync.models.sync_file import SETTINGS_ID
from familysync.services.storage.interface import EntityRepository
from familysync.stores.entity_store import ChangeKind, StoreChange
from familysync.sync.events import EventHub
from familysync.sync.wal import SettingsWAL
from familysync.utils.dates import now_iso


logger = structlog.get_logger(__name__)

SETTINGS_COLLECTION = "settings"


class SettingsStore:
    """Owns the settings singleton."""

    def __init__(self, repository: EntityRepository, wal: SettingsWAL):
        self._repository = repository
        self._wal = wal
        self._settings: Optional[dict[str, Any]] = None
        self._changes: EventHub[StoreChange] = EventHub("settings_changed")

    @property
    def settings(self) -> Optional[dict[str, Any]]:
        return dict(self._settings) if self._settings is not None else None

    @property
    def wal(self) -> SettingsWAL:
        return self._wal

    def subscribe(self, listener: Callable[[StoreChange], Any]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    async def load(self) -> None:
        self._settings = await self._repository.get_by_id(SETTINGS_ID)

    async def update(self, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial change, logging it to the WAL first."""
        changes = {k: v for k, v in changes.items() if k not in ("id", "createdAt", "updatedAt")}
        self._wal.append(changes)
        settings = await self._write(changes, now_iso())
        self._changes.emit(StoreChange(SETTINGS_COLLECTION, ChangeKind.UPDATED, SETTINGS_ID))
        return settings

    async def apply_recovered(self, changes: dict[str, Any], updated_at: str) -> dict[str, Any]:
        """Reapply changes replayed from the WAL. The WAL itself isn't written."""
        settings = await self._write(changes, updated_at)
        self._changes.emit(StoreChange(SETTINGS_COLLECTION, ChangeKind.UPDATED, SETTINGS_ID))
        return settings

    async def replace(self, settings: Optional[dict[str, Any]]) -> None:
        """Bulk replace after a merge. None leaves the current settings in place."""
        if settings is None:
            return
        record = dict(settings)
        record["id"] = SETTINGS_ID
        await self._repository.replace_all([record])
        self._settings = record
        self._changes.emit(StoreChange(SETTINGS_COLLECTION, ChangeKind.REPLACED, SETTINGS_ID))

    async def _write(self, changes: dict[str, Any], updated_at: str) -> dict[str, Any]:
        record = dict(self._settings or {"id": SETTINGS_ID, "createdAt": updated_at})
        record.update(changes)
        record["id"] = SETTINGS_ID
        record["updatedAt"] = updated_at
        await self._repository.replace_all([record])
        self._settings = record
        return dict(record)
