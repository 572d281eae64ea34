"""
Store Registry

Knows every store and the order they must be repopulated in after a merge
(family members before accounts, accounts before transactions), so that a
store's reconcile pass sees its dependencies already in place.
"""

from typing import Any, Callable, Optional

import structlog

from familysync.models.sync_file import COLLECTIONS
from familysync.services.storage.interface import EntityRepository
from familysync.services.storage.memory import InMemoryEntityRepository
from familysync.stores.accounts import AccountsStore
from familysync.stores.entity_store import EntityStore, StoreChange
from familysync.stores.settings_store import SettingsStore
from familysync.sync.merge import MergeResult
from familysync.sync.tombstones import TombstoneLedger
from familysync.sync.wal import SettingsWAL


logger = structlog.get_logger(__name__)


class StoreRegistry:
    """All entity stores plus the settings store."""

    def __init__(
        self,
        stores: dict[str, EntityStore],
        settings: SettingsStore,
        ledger: TombstoneLedger,
    ):
        missing = [name for name in COLLECTIONS if name not in stores]
        if missing:
            raise ValueError(f"Missing stores for collections: {missing}")
        self._stores = {name: stores[name] for name in COLLECTIONS}
        self.settings = settings
        self.ledger = ledger

    @classmethod
    def create(
        cls,
        wal: SettingsWAL,
        repositories: Optional[dict[str, EntityRepository]] = None,
        settings_repository: Optional[EntityRepository] = None,
        ledger: Optional[TombstoneLedger] = None,
    ) -> "StoreRegistry":
        """
        Build the standard set of stores.

        Collections without a repository get an in-memory one.
        """
        repositories = repositories or {}
        ledger = ledger or TombstoneLedger()

        stores: dict[str, EntityStore] = {}
        for name in COLLECTIONS:
            repository = repositories.get(name) or InMemoryEntityRepository()
            if name == "accounts":
                stores[name] = AccountsStore(repository, ledger)
            else:
                stores[name] = EntityStore(name, repository, ledger)

        settings = SettingsStore(settings_repository or InMemoryEntityRepository(), wal)
        return cls(stores, settings, ledger)

    def store(self, collection: str) -> EntityStore:
        return self._stores[collection]

    @property
    def accounts(self) -> AccountsStore:
        return self._stores["accounts"]

    def stores(self) -> list[EntityStore]:
        return list(self._stores.values())

    def collections(self) -> dict[str, list[dict[str, Any]]]:
        """Snapshot of every collection, for serialising or merging."""
        return {name: store.items for name, store in self._stores.items()}

    def updated_at_map(self) -> dict[str, str]:
        """Flat id -> updatedAt across all collections."""
        result: dict[str, str] = {}
        for store in self._stores.values():
            result.update(store.updated_at_map())
        return result

    async def load_all(self) -> None:
        for store in self._stores.values():
            await store.load()
        await self.settings.load()

    async def apply_merge(self, result: MergeResult) -> None:
        """
        Repopulate every store from a merge result, in dependency order,
        then run each store's reconcile pass.

        If any store fails to take its records, the stores already replaced
        are put back to their previous contents and the error is re-raised.
        """
        previous = self.collections()
        try:
            for name, store in self._stores.items():
                await store.replace_all(result.collections.get(name, []))
            await self.settings.replace(result.settings)
        except Exception as e:
            logger.error("store_repopulation_failed", error=str(e))
            for name, store in self._stores.items():
                await store.replace_all(previous[name])
                store.reconcile()
            raise

        for store in self._stores.values():
            store.reconcile()
        logger.debug("stores_repopulated", counts=result.counts())

    def subscribe_all(self, listener: Callable[[StoreChange], Any]) -> Callable[[], None]:
        """Listen to every store. Returns one callable that unsubscribes from all."""
        unsubscribers = [store.subscribe(listener) for store in self._stores.values()]
        unsubscribers.append(self.settings.subscribe(listener))

        def unsubscribe_all() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return unsubscribe_all
