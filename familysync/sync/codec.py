"""
Sync File Codec

Turns store snapshots into the bytes of the shared sync file and back.

DESIGN DECISION: The envelope (version, exportedAt, encrypted, family
identity) is always plaintext and is validated before ``data`` is touched.
A device can therefore tell that a file needs a password, or belongs to a
different family, without being able to read it.

Entity field values are passed through untouched. Dates stay ISO strings,
amounts stay whatever the application stored.
"""

import json
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from familysync.models.sync_file import (
    COLLECTIONS,
    SYNC_FILE_VERSION,
    DeletionTombstone,
    EncryptedSyncFile,
    SyncEnvelope,
    SyncFileData,
)
from familysync.services.crypto import (
    CorruptCiphertextError,
    InvalidCredentialError,
    Secret,
    decrypt_data,
    encrypt_data,
)
from familysync.utils.dates import now_iso


class DecodeResult(BaseModel):
    """
    Outcome of reading a sync file.

    Exactly one of ``parsed`` / ``pending`` is set.
    """

    parsed: Optional[SyncFileData] = None
    pending: Optional[EncryptedSyncFile] = None

    @property
    def needs_password(self) -> bool:
        return self.pending is not None


def build_payload(
    collections: dict[str, list[dict[str, Any]]],
    tombstones: list[DeletionTombstone],
    settings: Optional[dict[str, Any]],
) -> dict[str, Any]:
    """The ``data`` object of a sync file. Missing collections become empty arrays."""
    payload: dict[str, Any] = {
        name: list(collections.get(name) or []) for name in COLLECTIONS
    }
    payload["deletions"] = [t.to_dict() for t in tombstones]
    payload["settings"] = dict(settings) if settings is not None else None
    return payload


def serialize(
    collections: dict[str, list[dict[str, Any]]],
    tombstones: list[DeletionTombstone],
    settings: Optional[dict[str, Any]],
    secret: Optional[Secret] = None,
    family_id: Optional[str] = None,
    family_name: Optional[str] = None,
    exported_at: Optional[str] = None,
    iterations: Optional[int] = None,
) -> bytes:
    """
    Encode store snapshots as sync file bytes.

    Args:
        collections: Collection name -> records
        tombstones: Current tombstone ledger
        settings: Settings singleton (or None)
        secret: If given, ``data`` is encrypted with it
        family_id: Stamped into the plaintext envelope
        family_name: Stamped into the plaintext envelope
        exported_at: Override the as-of timestamp (defaults to now)
        iterations: PBKDF2 iteration override for password secrets

    Returns:
        UTF-8 JSON, pretty-printed
    """
    payload = build_payload(collections, tombstones, settings)

    document: dict[str, Any] = {
        "version": SYNC_FILE_VERSION,
        "exportedAt": exported_at or now_iso(),
        "encrypted": secret is not None,
    }
    if family_id:
        document["familyId"] = family_id
    if family_name:
        document["familyName"] = family_name

    if secret is not None:
        document["data"] = encrypt_data(
            json.dumps(payload, ensure_ascii=False),
            secret,
            iterations,
        )
    else:
        document["data"] = payload

    return json.dumps(document, indent=2, ensure_ascii=False).encode("utf-8")


def deserialize(
    content: bytes,
    secret: Optional[Secret] = None,
    iterations: Optional[int] = None,
) -> DecodeResult:
    """
    Decode sync file bytes.

    An encrypted file read without a secret is not an error: the result
    carries the still-encrypted document so it can be decrypted later
    without reading the file again.

    Raises:
        SyncFormatError: Not JSON, bad envelope, or bad payload structure
        CredentialError: Encrypted and ``secret`` doesn't open it
    """
    document = _load_json(content)

    try:
        envelope = SyncEnvelope.model_validate(document)
    except ValidationError as e:
        raise SyncFormatError(f"Invalid sync file envelope: {_first_error(e)}")

    if envelope.encrypted:
        try:
            encrypted = EncryptedSyncFile.model_validate(document)
        except ValidationError as e:
            raise SyncFormatError(f"Invalid encrypted sync file: {_first_error(e)}")
        if secret is None:
            return DecodeResult(pending=encrypted)
        return DecodeResult(parsed=decrypt(encrypted, secret, iterations))

    return DecodeResult(parsed=_validate_plaintext(document))


def decrypt(
    encrypted: EncryptedSyncFile,
    secret: Secret,
    iterations: Optional[int] = None,
) -> SyncFileData:
    """
    Open a held encrypted document.

    Raises:
        CredentialError: Wrong secret
        SyncFormatError: Ciphertext or decrypted payload is malformed
    """
    try:
        plaintext = decrypt_data(encrypted.data, secret, iterations)
    except InvalidCredentialError as e:
        raise CredentialError(str(e))
    except CorruptCiphertextError as e:
        raise SyncFormatError(str(e))

    try:
        payload = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise SyncFormatError(f"Decrypted payload is not JSON: {e}")

    document = encrypted.to_document()
    document["encrypted"] = False
    document["data"] = payload
    return _validate_plaintext(document)


def _load_json(content: bytes) -> dict[str, Any]:
    try:
        document = json.loads(content.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise SyncFormatError(f"Sync file is not UTF-8: {e}")
    except json.JSONDecodeError as e:
        raise SyncFormatError(f"Sync file is not JSON: {e}")

    if not isinstance(document, dict):
        raise SyncFormatError("Sync file must contain a JSON object")
    return document


def _validate_plaintext(document: dict[str, Any]) -> SyncFileData:
    data = document.get("data")
    if data is not None and not isinstance(data, dict):
        raise SyncFormatError("Sync file data must be an object")
    try:
        return SyncFileData.model_validate(document)
    except ValidationError as e:
        raise SyncFormatError(f"Invalid sync file payload: {_first_error(e)}")


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else first.get("msg", str(error))


class CodecError(Exception):
    """Base exception for sync file encoding/decoding."""
    pass


class SyncFormatError(CodecError):
    """The file isn't a valid sync file. Fatal for this load."""
    pass


class CredentialError(CodecError):
    """The file is encrypted and the secret doesn't open it. Retry with another secret."""
    pass

