"""
Sync File Encryption

AES-256-GCM over the JSON payload of the sync file. The key comes either
from a password (PBKDF2-HMAC-SHA256 with a per-file random salt) or from an
already-derived 32-byte key handed over by the host (passkey / device-bound
data encryption key).

Ciphertext layout, base64-encoded as one string:

    b"GP_ENCRYPTED_V1" | salt (16 bytes) | iv (12 bytes) | ciphertext + tag

The salt is always present so both kinds of secret share one layout; it is
ignored when the secret is a pre-derived key.
"""

import base64
import binascii
import os
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from familysync.config import get_settings


ENCRYPTION_HEADER = b"GP_ENCRYPTED_V1"
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16


@dataclass(frozen=True)
class PasswordSecret:
    """A user password. The key is derived per file from the embedded salt."""
    password: str = field(repr=False)

    def __post_init__(self):
        if not self.password:
            raise ValueError("Password must not be empty")


@dataclass(frozen=True)
class KeySecret:
    """A pre-derived AES-256 key."""
    key: bytes = field(repr=False)

    def __post_init__(self):
        if len(self.key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(self.key)}")


Secret = Union[PasswordSecret, KeySecret]


def derive_key(password: str, salt: bytes, iterations: Optional[int] = None) -> bytes:
    """PBKDF2-HMAC-SHA256 password to AES-256 key."""
    if iterations is None:
        iterations = get_settings().encryption.pbkdf2_iterations
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def _key_for(secret: Secret, salt: bytes, iterations: Optional[int]) -> bytes:
    if isinstance(secret, KeySecret):
        return secret.key
    if isinstance(secret, PasswordSecret):
        return derive_key(secret.password, salt, iterations)
    raise TypeError(f"Unsupported secret type: {type(secret).__name__}")


def encrypt_data(
    plaintext: str,
    secret: Secret,
    iterations: Optional[int] = None,
) -> str:
    """
    Encrypt a JSON payload.

    Returns:
        Base64 string suitable for the sync file's ``data`` field
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _key_for(secret, salt, iterations)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(ENCRYPTION_HEADER + salt + iv + ciphertext).decode("ascii")


def decrypt_data(
    encoded: str,
    secret: Secret,
    iterations: Optional[int] = None,
) -> str:
    """
    Decrypt a payload produced by ``encrypt_data``.

    Raises:
        CorruptCiphertextError: If the payload isn't in our format
        InvalidCredentialError: If the secret doesn't open it
    """
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CorruptCiphertextError(f"Encrypted payload is not valid base64: {e}")

    if not raw.startswith(ENCRYPTION_HEADER):
        raise CorruptCiphertextError("Encrypted payload has an unknown header")

    offset = len(ENCRYPTION_HEADER)
    salt = raw[offset:offset + SALT_LENGTH]
    iv = raw[offset + SALT_LENGTH:offset + SALT_LENGTH + IV_LENGTH]
    ciphertext = raw[offset + SALT_LENGTH + IV_LENGTH:]
    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH or len(ciphertext) < TAG_LENGTH:
        raise CorruptCiphertextError("Encrypted payload is truncated")

    key = _key_for(secret, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag:
        raise InvalidCredentialError("Could not decrypt: wrong password or key")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptCiphertextError(f"Decrypted payload is not UTF-8: {e}")


def is_encrypted_payload(value: object) -> bool:
    """Cheap check whether a string looks like one of our ciphertexts."""
    if not isinstance(value, str):
        return False
    try:
        raw = base64.b64decode(value[:64], validate=False)
    except (binascii.Error, ValueError):
        return False
    return raw.startswith(ENCRYPTION_HEADER)


class EncryptionError(Exception):
    """Base exception for encryption operations."""
    pass


class InvalidCredentialError(EncryptionError):
    """The secret doesn't match the one the payload was encrypted with."""
    pass


class CorruptCiphertextError(EncryptionError):
    """The payload isn't a ciphertext in our format."""
    pass
