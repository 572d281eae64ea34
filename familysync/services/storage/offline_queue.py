"""
Offline Save Queue

When a cloud write fails because the network is down, the content is
parked here and retried later. Only the latest content matters: the sync
file is always written whole, so an older pending save is superseded by a
newer one.
"""

from typing import Awaitable, Callable, Optional

import structlog


logger = structlog.get_logger(__name__)


class OfflineSaveQueue:
    """Holds at most one pending sync file write."""

    def __init__(self):
        self._pending: Optional[bytes] = None
        self._generation = 0

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def enqueue(self, content: bytes) -> None:
        """Park content for a later retry, replacing anything already queued."""
        self._pending = content
        self._generation += 1
        logger.info("offline_save_queued", size=len(content))

    def clear(self) -> None:
        self._pending = None

    async def flush(self, writer: Callable[[bytes], Awaitable[None]]) -> bool:
        """
        Retry the pending write.

        The queue is cleared only if nothing newer was enqueued while the
        write was in flight. Exceptions from ``writer`` propagate and the
        content stays queued.

        Returns:
            True if queued content was written
        """
        if self._pending is None:
            return False

        content = self._pending
        generation = self._generation
        await writer(content)

        if self._generation == generation:
            self._pending = None
        logger.info("offline_save_flushed", size=len(content))
        return True
