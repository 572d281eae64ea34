"""
Settings Write-Ahead Log

Every settings mutation is written synchronously to a small local log
before the (debounced, async) sync file save happens. If the app dies, or
the save fails, the change survives and is replayed after the next load.

DESIGN DECISION: Entries hold the accumulated partial changes, not the
whole settings record. Replaying a partial on top of freshly loaded
settings only reapplies what this device actually changed and leaves
another device's edits to other fields alone.

The log is keyed per family, cleared after every successful save, and
ignored once older than the staleness window.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from familysync.config import get_settings
from familysync.models.sync_file import SettingsWALEntry


logger = structlog.get_logger(__name__)

WAL_KEY_PREFIX = "settings_wal_"
NO_FAMILY_KEY = "local"


class WALChannel(ABC):
    """Synchronous string key-value store backing the WAL."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass

    @abstractmethod
    def keys(self) -> list[str]:
        pass


class MemoryWALChannel(WALChannel):
    """Dict-backed channel, for tests and ephemeral sessions."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._values)


class FileWALChannel(WALChannel):
    """
    One small JSON file per key in a local directory.

    Writes are atomic (temp file + rename). I/O failures are logged and
    otherwise ignored: losing the WAL only loses crash protection, it must
    never stop a settings change.
    """

    def __init__(self, directory: Optional[str | os.PathLike] = None):
        if directory is None:
            directory = get_settings().local_file.wal_directory
        self._directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("wal_read_failed", key=key, error=str(e))
            return None

    def set(self, key: str, value: str) -> None:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(temp_path, self._path(key))
        except OSError as e:
            logger.warning("wal_write_failed", key=key, error=str(e))

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("wal_remove_failed", key=key, error=str(e))

    def keys(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return [p.stem for p in self._directory.glob("*.json")]


class SettingsWAL:
    """Per-family settings write-ahead log."""

    def __init__(
        self,
        channel: WALChannel,
        family_id: Optional[str] = None,
        max_age: Optional[timedelta] = None,
    ):
        self._channel = channel
        self.family_id = family_id
        if max_age is None:
            max_age = timedelta(hours=get_settings().timing.wal_max_age_hours)
        self._max_age = max_age

    @property
    def key(self) -> str:
        return WAL_KEY_PREFIX + (self.family_id or NO_FAMILY_KEY)

    def append(
        self,
        partial_settings: dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> SettingsWALEntry:
        """
        Record a settings change.

        Partials accumulate: a later change to the same field wins, other
        fields already in the log are kept.
        """
        existing = self.read()
        merged = dict(existing.settings) if existing is not None else {}
        merged.update(partial_settings)

        entry = SettingsWALEntry(
            family_id=self.family_id or NO_FAMILY_KEY,
            settings=merged,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        self._channel.set(self.key, entry.model_dump_json(by_alias=True))
        return entry

    def read(self) -> Optional[SettingsWALEntry]:
        """The current entry, or None if missing, corrupt, or for another family."""
        raw = self._channel.get(self.key)
        if not raw:
            return None

        try:
            entry = SettingsWALEntry.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("wal_entry_corrupt", key=self.key, error=str(e))
            return None

        if entry.family_id != (self.family_id or NO_FAMILY_KEY):
            return None
        return entry

    def clear(self) -> None:
        self._channel.remove(self.key)

    def rebind(self, family_id: Optional[str]) -> None:
        """Switch families, carrying over an entry logged before a family was known."""
        if family_id == self.family_id:
            return
        carried = self.read() if self.family_id is None else None
        if carried is not None:
            self.clear()
        self.family_id = family_id
        if carried is not None:
            self.append(carried.settings, carried.timestamp)

    def clear_all(self) -> None:
        """Remove entries for every family (sign-out)."""
        for key in self._channel.keys():
            if key.startswith(WAL_KEY_PREFIX):
                self._channel.remove(key)

    def is_stale(self, entry: SettingsWALEntry, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - entry.timestamp > self._max_age
