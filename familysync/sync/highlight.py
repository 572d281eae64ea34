"""
Sync Highlights

After a cross-device reload, records that arrived or changed are flagged
for a few seconds so the UI can draw attention to them. Purely
observational: nothing here affects what is stored or synced.
"""

import asyncio
from typing import Callable, Optional

import structlog

from familysync.config import get_settings


logger = structlog.get_logger(__name__)


class HighlightTracker:
    """
    Snapshot-diff change detector.

    ``source`` returns the current ``id -> updatedAt`` map across all
    entity stores.
    """

    def __init__(
        self,
        source: Callable[[], dict[str, str]],
        duration_seconds: Optional[float] = None,
    ):
        self._source = source
        if duration_seconds is None:
            duration_seconds = get_settings().timing.highlight_duration_seconds
        self._duration = duration_seconds
        self._snapshot: Optional[dict[str, str]] = None
        self._new_ids: set[str] = set()
        self._modified_ids: set[str] = set()
        self._expiry: Optional[asyncio.TimerHandle] = None

    @property
    def new_ids(self) -> frozenset[str]:
        return frozenset(self._new_ids)

    @property
    def modified_ids(self) -> frozenset[str]:
        return frozenset(self._modified_ids)

    def snapshot_before_reload(self) -> None:
        self._snapshot = dict(self._source())

    def detect_changes(self) -> tuple[set[str], set[str]]:
        """
        Compare current state with the snapshot.

        Ids missing from the snapshot are new; ids whose ``updatedAt``
        changed are modified. Results are added to any highlights still
        active from an earlier sync, and the expiry timer restarts.

        Returns:
            The (new, modified) ids found by this call
        """
        if self._snapshot is None:
            return set(), set()

        found_new: set[str] = set()
        found_modified: set[str] = set()
        for record_id, updated_at in self._source().items():
            previous = self._snapshot.get(record_id)
            if previous is None:
                found_new.add(record_id)
            elif previous != updated_at:
                found_modified.add(record_id)

        self._snapshot = None
        self._new_ids |= found_new
        self._modified_ids |= found_modified

        if found_new or found_modified:
            logger.debug(
                "sync_highlights_detected",
                new=len(found_new),
                modified=len(found_modified),
            )
        self._schedule_expiry()
        return found_new, found_modified

    def is_new(self, record_id: str) -> bool:
        return record_id in self._new_ids

    def is_modified(self, record_id: str) -> bool:
        return record_id in self._modified_ids

    def expire(self) -> None:
        """Drop active highlights (the snapshot, if any, is kept)."""
        self._cancel_expiry()
        self._new_ids = set()
        self._modified_ids = set()

    def clear(self) -> None:
        self.expire()
        self._snapshot = None

    def _schedule_expiry(self) -> None:
        self._cancel_expiry()
        if not self._new_ids and not self._modified_ids:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: highlights stay until expire() or clear().
            return
        self._expiry = loop.call_later(self._duration, self.expire)

    def _cancel_expiry(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
