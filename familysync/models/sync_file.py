"""
Sync File Models for familysync

These models define the schema of the single shared sync file and of the
records that travel inside it. They are designed to:
1. Validate the always-plaintext envelope before any decryption
2. Pass entity field values through untouched (no date reformatting)
3. Tolerate older files that lack optional collections
4. Never let one malformed record block the rest of the file

DESIGN DECISION: Entity records and settings stay plain dicts.
The sync core only ever reads ``id`` and ``updatedAt``; every other field
belongs to the application and must round-trip byte-for-byte.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

from familysync.utils.dates import parse_iso


SYNC_FILE_VERSION = "3.0"
SUPPORTED_MAJOR_VERSION = 3

SETTINGS_ID = "app_settings"

# Settings fields that describe this device's sync setup and are never
# imported from the file.
LOCAL_ONLY_SETTINGS_FIELDS = (
    "encryptionEnabled",
    "syncFilePath",
    "lastSyncTimestamp",
)


# =============================================================================
# ENUMS
# =============================================================================

class EntityType(str, Enum):
    """Entity types that can be deleted (and therefore tombstoned)."""
    FAMILY_MEMBER = "familyMember"
    ACCOUNT = "account"
    TRANSACTION = "transaction"
    ASSET = "asset"
    GOAL = "goal"
    BUDGET = "budget"
    RECURRING_ITEM = "recurringItem"
    TODO = "todo"
    ACTIVITY = "activity"


# Collection name -> entity type, in reload dependency order
# (members before accounts, accounts before transactions).
COLLECTION_ENTITY_TYPES: dict[str, EntityType] = {
    "familyMembers": EntityType.FAMILY_MEMBER,
    "accounts": EntityType.ACCOUNT,
    "transactions": EntityType.TRANSACTION,
    "assets": EntityType.ASSET,
    "goals": EntityType.GOAL,
    "budgets": EntityType.BUDGET,
    "recurringItems": EntityType.RECURRING_ITEM,
    "todos": EntityType.TODO,
    "activities": EntityType.ACTIVITY,
}

COLLECTIONS: tuple[str, ...] = tuple(COLLECTION_ENTITY_TYPES)


# =============================================================================
# TOMBSTONES
# =============================================================================

class DeletionTombstone(BaseModel):
    """
    Marker that an entity was deleted on some device.

    At most one tombstone exists per (entity_type, id).
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: StrictStr = Field(..., min_length=1)
    entity_type: EntityType = Field(..., alias="entityType")
    deleted_at: StrictStr = Field(..., alias="deletedAt")

    @field_validator('deleted_at')
    @classmethod
    def validate_deleted_at(cls, v: str) -> str:
        if parse_iso(v) is None:
            raise ValueError(f"deletedAt is not an ISO timestamp: {v!r}")
        return v

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.id)

    @property
    def deleted_time(self) -> datetime:
        return parse_iso(self.deleted_at)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entityType": self.entity_type.value,
            "deletedAt": self.deleted_at,
        }


def parse_tombstones(raw: Any) -> list[DeletionTombstone]:
    """
    Leniently parse a ``deletions`` array.

    Entries that are not valid tombstones (unknown entity type, missing id,
    unparseable date) are skipped instead of failing the whole file.
    """
    if not isinstance(raw, list):
        return []

    tombstones = []
    for entry in raw:
        if isinstance(entry, DeletionTombstone):
            tombstones.append(entry)
            continue
        try:
            tombstones.append(DeletionTombstone.model_validate(entry))
        except ValidationError:
            continue
    return tombstones


# =============================================================================
# SYNC FILE
# =============================================================================

class SyncData(BaseModel):
    """
    The ``data`` payload of a plaintext sync file.

    Collections introduced after the first file format are optional and
    stay None when a file doesn't carry them.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    family_members: Optional[list[Any]] = Field(default=None, alias="familyMembers")
    accounts: Optional[list[Any]] = None
    transactions: Optional[list[Any]] = None
    assets: Optional[list[Any]] = None
    goals: Optional[list[Any]] = None
    budgets: Optional[list[Any]] = None
    recurring_items: Optional[list[Any]] = Field(default=None, alias="recurringItems")
    todos: Optional[list[Any]] = None
    activities: Optional[list[Any]] = None

    deletions: list[Any] = Field(default_factory=list)
    settings: Optional[dict[str, Any]] = None

    def collection(self, name: str) -> Optional[list[Any]]:
        """Raw records of a collection, or None when the file lacks it."""
        return getattr(self, _COLLECTION_FIELDS[name])

    def tombstones(self) -> list[DeletionTombstone]:
        return parse_tombstones(self.deletions)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in COLLECTIONS:
            records = self.collection(name)
            payload[name] = records if records is not None else []
        payload["deletions"] = list(self.deletions)
        payload["settings"] = self.settings
        return payload


_COLLECTION_FIELDS: dict[str, str] = {
    "familyMembers": "family_members",
    "accounts": "accounts",
    "transactions": "transactions",
    "assets": "assets",
    "goals": "goals",
    "budgets": "budgets",
    "recurringItems": "recurring_items",
    "todos": "todos",
    "activities": "activities",
}


class SyncEnvelope(BaseModel):
    """
    Always-plaintext outer fields of the sync file.

    Readable before any decryption so a device can tell whether it needs
    a password and which family the file belongs to.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: StrictStr
    exported_at: StrictStr = Field(..., alias="exportedAt")
    encrypted: StrictBool
    family_id: Optional[StrictStr] = Field(default=None, alias="familyId")
    family_name: Optional[StrictStr] = Field(default=None, alias="familyName")

    @field_validator('version')
    @classmethod
    def validate_version(cls, v: str) -> str:
        major = v.split(".", 1)[0]
        if not major.isdigit() or int(major) != SUPPORTED_MAJOR_VERSION:
            raise ValueError(
                f"Unsupported sync file version {v!r} "
                f"(expected {SUPPORTED_MAJOR_VERSION}.x)"
            )
        return v

    @field_validator('exported_at')
    @classmethod
    def validate_exported_at(cls, v: str) -> str:
        if parse_iso(v) is None:
            raise ValueError(f"exportedAt is not an ISO timestamp: {v!r}")
        return v

    @property
    def exported_time(self) -> datetime:
        return parse_iso(self.exported_at)

    def _envelope_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "version": self.version,
            "exportedAt": self.exported_at,
            "encrypted": self.encrypted,
        }
        if self.family_id:
            doc["familyId"] = self.family_id
        if self.family_name:
            doc["familyName"] = self.family_name
        return doc


class SyncFileData(SyncEnvelope):
    """A decoded, plaintext sync file."""

    data: Optional[SyncData] = None

    @model_validator(mode='after')
    def validate_plaintext(self) -> 'SyncFileData':
        if self.encrypted:
            raise ValueError("SyncFileData holds decrypted content; encrypted must be false")
        return self

    @property
    def is_empty(self) -> bool:
        """A placeholder file (e.g. just created) with nothing to merge."""
        return self.data is None

    def to_document(self) -> dict[str, Any]:
        doc = self._envelope_dict()
        doc["data"] = self.data.to_payload() if self.data is not None else None
        return doc


class EncryptedSyncFile(SyncEnvelope):
    """
    A sync file whose payload is still encrypted.

    Held by the orchestrator while waiting for a credential so the file
    doesn't have to be read again.
    """

    data: StrictStr

    @model_validator(mode='after')
    def validate_encrypted(self) -> 'EncryptedSyncFile':
        if not self.encrypted:
            raise ValueError("EncryptedSyncFile requires encrypted=true")
        return self

    def to_document(self) -> dict[str, Any]:
        doc = self._envelope_dict()
        doc["data"] = self.data
        return doc


class SettingsWALEntry(BaseModel):
    """One settings write-ahead log entry (one per family)."""
    model_config = ConfigDict(populate_by_name=True)

    family_id: str = Field(..., alias="familyId")
    settings: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @field_validator('timestamp')
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("WAL timestamp must be timezone-aware")
        return v
