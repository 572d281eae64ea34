"""
Storage Services Package

Provides abstract interfaces and concrete implementations for the sync
target, the local entity datastore and the audit log.
"""

from familysync.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    EntityRepository,
    NotFoundError,
    PermissionDeniedError,
    ProviderType,
    StorageError,
    StorageProvider,
)
from familysync.services.storage.local_file import LocalFileProvider
from familysync.services.storage.google_drive import GoogleDriveClient, GoogleDriveProvider
from familysync.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryEntityRepository,
    InMemoryStorageProvider,
)
from familysync.services.storage.offline_queue import OfflineSaveQueue

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "EntityRepository",
    "ProviderType",
    "StorageProvider",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "PermissionDeniedError",
    "StorageError",
    # Implementations
    "GoogleDriveClient",
    "GoogleDriveProvider",
    "InMemoryAuditStorage",
    "InMemoryEntityRepository",
    "InMemoryStorageProvider",
    "LocalFileProvider",
    "OfflineSaveQueue",
]
