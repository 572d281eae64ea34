"""
Data Models Package

This package contains the Pydantic models used by the sync core.
Everything written to or read from the sync file conforms to these schemas.
"""

from familysync.models.sync_file import (
    COLLECTION_ENTITY_TYPES,
    COLLECTIONS,
    LOCAL_ONLY_SETTINGS_FIELDS,
    SETTINGS_ID,
    SYNC_FILE_VERSION,
    DeletionTombstone,
    EncryptedSyncFile,
    EntityType,
    SettingsWALEntry,
    SyncData,
    SyncEnvelope,
    SyncFileData,
    parse_tombstones,
)
from familysync.models.status import (
    ConflictCheck,
    ErrorKind,
    LoadOutcome,
    LoadResult,
    SaveOutcome,
    SaveResult,
    SyncErrorInfo,
    SyncStatus,
)
from familysync.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Sync file models
    "COLLECTION_ENTITY_TYPES",
    "COLLECTIONS",
    "LOCAL_ONLY_SETTINGS_FIELDS",
    "SETTINGS_ID",
    "SYNC_FILE_VERSION",
    "DeletionTombstone",
    "EncryptedSyncFile",
    "EntityType",
    "SettingsWALEntry",
    "SyncData",
    "SyncEnvelope",
    "SyncFileData",
    "parse_tombstones",
    # Status models
    "ConflictCheck",
    "ErrorKind",
    "LoadOutcome",
    "LoadResult",
    "SaveOutcome",
    "SaveResult",
    "SyncErrorInfo",
    "SyncStatus",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
