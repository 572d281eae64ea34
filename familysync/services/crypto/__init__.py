"""Sync file encryption."""

from familysync.services.crypto.encryption import (
    CorruptCiphertextError,
    EncryptionError,
    InvalidCredentialError,
    KeySecret,
    PasswordSecret,
    Secret,
    decrypt_data,
    derive_key,
    encrypt_data,
    is_encrypted_payload,
)

__all__ = [
    "CorruptCiphertextError",
    "EncryptionError",
    "InvalidCredentialError",
    "KeySecret",
    "PasswordSecret",
    "Secret",
    "decrypt_data",
    "derive_key",
    "encrypt_data",
    "is_encrypted_payload",
]
