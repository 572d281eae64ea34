"""
Sync core: codec, tombstones, merge, settings WAL, highlights.

Everything here is independent of where the sync file is stored.
"""

from familysync.sync.codec import (
    CodecError,
    CredentialError,
    DecodeResult,
    SyncFormatError,
    decrypt,
    deserialize,
    serialize,
)
from familysync.sync.debounce import Debouncer
from familysync.sync.events import EventHub
from familysync.sync.highlight import HighlightTracker
from familysync.sync.merge import (
    MergeResult,
    detect_merge_changes,
    merge_data,
    merge_records,
    merge_settings,
    merge_tombstones,
)
from familysync.sync.session import SessionState, SyncSession
from familysync.sync.tombstones import TombstoneLedger
from familysync.sync.wal import FileWALChannel, MemoryWALChannel, SettingsWAL, WALChannel

__all__ = [
    # Codec
    "CodecError",
    "CredentialError",
    "DecodeResult",
    "SyncFormatError",
    "decrypt",
    "deserialize",
    "serialize",
    # Merge
    "MergeResult",
    "detect_merge_changes",
    "merge_data",
    "merge_records",
    "merge_settings",
    "merge_tombstones",
    # Support
    "Debouncer",
    "EventHub",
    "FileWALChannel",
    "HighlightTracker",
    "MemoryWALChannel",
    "SessionState",
    "SettingsWAL",
    "SyncSession",
    "TombstoneLedger",
    "WALChannel",
]
