"""
Record-Level Merge Engine

Merges the local stores with the sync file record by record instead of
letting the last writer replace the whole file.

Rules, applied per collection to the union of ids seen locally, remotely
and in either tombstone list:

1. Tombstoned, and no copy is newer than the deletion -> stays deleted.
2. Tombstoned, but some copy was edited after the deletion -> that copy
   survives and the tombstone is dropped (resurrection).
3. Present on one side only -> kept as-is.
4. Present on both sides -> the newer ``updatedAt`` wins; ties go to the
   sync file.

DESIGN DECISION: Every function here is pure. No I/O, no clocks (except
an injectable ``now`` for tombstone pruning), no mutation of the inputs.
A malformed record is skipped; merge never raises on bad data.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, NamedTuple, Optional

from pydantic import BaseModel, Field

from familysync.models.sync_file import (
    COLLECTION_ENTITY_TYPES,
    COLLECTIONS,
    LOCAL_ONLY_SETTINGS_FIELDS,
    DeletionTombstone,
    EntityType,
    SyncFileData,
)
from familysync.utils.dates import EPOCH, parse_iso


Record = dict[str, Any]


class RecordMerge(NamedTuple):
    records: list[Record]
    resurrected: set[str]


class MergeResult(BaseModel):
    """Everything the orchestrator writes back to the stores after a merge."""

    collections: dict[str, list[Record]]
    tombstones: list[DeletionTombstone] = Field(default_factory=list)
    settings: Optional[Record] = None
    has_local_changes: bool = Field(
        default=False,
        description="Merged state differs from the sync file (save it back)"
    )
    resurrected: list[DeletionTombstone] = Field(
        default_factory=list,
        description="Tombstones dropped because a newer copy survived"
    )

    def counts(self) -> dict[str, int]:
        return {name: len(records) for name, records in self.collections.items()}


def record_time(record: Record) -> datetime:
    """A record's ``updatedAt``; unparseable or missing counts as the epoch."""
    return parse_iso(record.get("updatedAt")) or EPOCH


def _is_mergeable(record: Any) -> bool:
    return (
        isinstance(record, dict)
        and isinstance(record.get("id"), str)
        and bool(record["id"])
    )


def _index(records: Optional[Iterable[Any]]) -> dict[str, Record]:
    indexed: dict[str, Record] = {}
    for record in records or []:
        if _is_mergeable(record):
            indexed[record["id"]] = record
    return indexed


def _newer(local: Record, remote: Record) -> Record:
    return local if record_time(local) > record_time(remote) else remote


def merge_records(
    local_records: Optional[Iterable[Any]],
    remote_records: Optional[Iterable[Any]],
    tombstones: dict[str, DeletionTombstone],
) -> RecordMerge:
    """
    Merge one collection.

    Args:
        local_records: This device's records
        remote_records: The sync file's records (None if the file lacks the collection)
        tombstones: id -> newest tombstone for this collection's entity type

    Returns:
        Merged records (local order first, then remote-only ids in remote
        order) and the ids whose tombstone was overridden
    """
    local = _index(local_records)
    remote = _index(remote_records)

    ordered_ids = list(local)
    ordered_ids.extend(record_id for record_id in remote if record_id not in local)

    merged: list[Record] = []
    resurrected: set[str] = set()

    for record_id in ordered_ids:
        local_copy = local.get(record_id)
        remote_copy = remote.get(record_id)
        tombstone = tombstones.get(record_id)

        if tombstone is not None:
            deleted_time = tombstone.deleted_time
            if local_copy is not None and record_time(local_copy) <= deleted_time:
                local_copy = None
            if remote_copy is not None and record_time(remote_copy) <= deleted_time:
                remote_copy = None
            if local_copy is None and remote_copy is None:
                continue
            resurrected.add(record_id)

        if local_copy is not None and remote_copy is not None:
            merged.append(_newer(local_copy, remote_copy))
        else:
            merged.append(local_copy if local_copy is not None else remote_copy)

    return RecordMerge(merged, resurrected)


def merge_tombstones(
    local_tombstones: Iterable[DeletionTombstone],
    remote_tombstones: Iterable[DeletionTombstone],
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[DeletionTombstone]:
    """
    Union of both tombstone lists, newest per (entity type, id).

    With ``retention_days`` set, tombstones older than the window are
    dropped from the result.
    """
    newest: dict[tuple[EntityType, str], DeletionTombstone] = {}
    for tombstone in [*local_tombstones, *remote_tombstones]:
        current = newest.get(tombstone.key)
        if current is None or tombstone.deleted_time > current.deleted_time:
            newest[tombstone.key] = tombstone

    if retention_days is None:
        return list(newest.values())

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
    return [t for t in newest.values() if t.deleted_time >= cutoff]


def merge_settings(
    local_settings: Optional[Record],
    remote_settings: Optional[Record],
) -> Optional[Record]:
    """
    Settings singleton: last writer wins, ties go to the sync file.

    Device-local fields are never taken from the file; whatever this
    device has for them is kept.
    """
    if not isinstance(remote_settings, dict):
        remote_settings = None
    if not isinstance(local_settings, dict):
        local_settings = None

    if remote_settings is None:
        return dict(local_settings) if local_settings is not None else None

    if local_settings is None:
        winner = dict(remote_settings)
    elif record_time(local_settings) > record_time(remote_settings):
        winner = dict(local_settings)
    else:
        winner = dict(remote_settings)

    for field in LOCAL_ONLY_SETTINGS_FIELDS:
        if local_settings is not None and field in local_settings:
            winner[field] = local_settings[field]
        else:
            winner.pop(field, None)
    return winner


def merge_data(
    local_collections: dict[str, list[Record]],
    local_tombstones: Iterable[DeletionTombstone],
    local_settings: Optional[Record],
    remote: SyncFileData,
    tombstone_retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
) -> MergeResult:
    """
    Merge this device's snapshot with a decoded sync file.

    A file without data (an empty placeholder) leaves local state as-is.
    A collection the file doesn't carry is merged as if it were empty.
    """
    local_tombstones = list(local_tombstones)

    if remote.is_empty:
        collections = {
            name: [r for r in (local_collections.get(name) or []) if _is_mergeable(r)]
            for name in COLLECTIONS
        }
        has_data = (
            any(collections.values())
            or bool(local_tombstones)
            or local_settings is not None
        )
        return MergeResult(
            collections=collections,
            tombstones=local_tombstones,
            settings=dict(local_settings) if local_settings is not None else None,
            has_local_changes=has_data,
        )

    remote_tombstones = remote.data.tombstones()

    # Filtering uses every tombstone; pruning only shapes what is kept.
    all_tombstones = merge_tombstones(local_tombstones, remote_tombstones)
    by_type: dict[EntityType, dict[str, DeletionTombstone]] = {}
    for tombstone in all_tombstones:
        by_type.setdefault(tombstone.entity_type, {})[tombstone.id] = tombstone

    collections: dict[str, list[Record]] = {}
    resurrected_keys: set[tuple[EntityType, str]] = set()
    for name in COLLECTIONS:
        entity_type = COLLECTION_ENTITY_TYPES[name]
        merged = merge_records(
            local_collections.get(name),
            remote.data.collection(name),
            by_type.get(entity_type, {}),
        )
        collections[name] = merged.records
        resurrected_keys.update((entity_type, record_id) for record_id in merged.resurrected)

    kept = {
        t.key for t in merge_tombstones(
            local_tombstones,
            remote_tombstones,
            retention_days=tombstone_retention_days,
            now=now,
        )
    }
    tombstones = [
        t for t in all_tombstones
        if t.key in kept and t.key not in resurrected_keys
    ]
    resurrected = [t for t in all_tombstones if t.key in resurrected_keys]

    result = MergeResult(
        collections=collections,
        tombstones=tombstones,
        settings=merge_settings(local_settings, remote.data.settings),
        resurrected=resurrected,
    )
    result.has_local_changes = detect_merge_changes(result, remote)
    return result


def detect_merge_changes(merged: MergeResult, remote: SyncFileData) -> bool:
    """
    True if the merge holds anything the sync file doesn't already have.

    Compares collection sizes, per-id ``updatedAt`` and the tombstone
    count. Settings are left out so that a settings-only difference never
    causes a save-back loop between two devices.
    """
    if remote.is_empty:
        return any(merged.collections.values()) or bool(merged.tombstones)

    for name in COLLECTIONS:
        merged_records = merged.collections.get(name) or []
        remote_records = _index(remote.data.collection(name))
        if len(merged_records) != len(remote_records):
            return True
        for record in merged_records:
            remote_copy = remote_records.get(record["id"])
            if remote_copy is None or remote_copy.get("updatedAt") != record.get("updatedAt"):
                return True

    return len(merged.tombstones) != len(remote.data.tombstones())
