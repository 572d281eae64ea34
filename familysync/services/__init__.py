"""Services package."""

from familysync.services.crypto import (
    CorruptCiphertextError,
    InvalidCredentialError,
    KeySecret,
    PasswordSecret,
)
from familysync.services.storage import (
    ConnectionError,
    GoogleDriveProvider,
    InMemoryEntityRepository,
    LocalFileProvider,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    StorageProvider,
)

__all__ = [
    # Encryption
    "CorruptCiphertextError",
    "InvalidCredentialError",
    "KeySecret",
    "PasswordSecret",
    # Storage services
    "ConnectionError",
    "GoogleDriveProvider",
    "InMemoryEntityRepository",
    "LocalFileProvider",
    "NotFoundError",
    "PermissionDeniedError",
    "StorageError",
    "StorageProvider",
]
