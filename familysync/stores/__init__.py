"""Local entity stores."""

from familysync.stores.accounts import AccountsStore, CurrencyTotals
from familysync.stores.entity_store import ChangeKind, EntityStore, StoreChange
from familysync.stores.registry import StoreRegistry
from familysync.stores.settings_store import SettingsStore

__all__ = [
    "AccountsStore",
    "ChangeKind",
    "CurrencyTotals",
    "EntityStore",
    "SettingsStore",
    "StoreChange",
    "StoreRegistry",
]
