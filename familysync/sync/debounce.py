"""
Debounced async action.

A burst of triggers within the quiet period runs the action once, after
the last trigger.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog


logger = structlog.get_logger(__name__)


class Debouncer:
    """Coalesces triggers into one delayed call of an async action."""

    def __init__(self, action: Callable[[], Awaitable[object]], delay_seconds: float):
        self._action = action
        self._delay = delay_seconds
        self._timer: Optional[asyncio.TimerHandle] = None
        self._running: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """True if a call is scheduled but hasn't started."""
        return self._timer is not None

    def trigger(self) -> None:
        """(Re)start the quiet period. Must be called from the event loop."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        """Drop a scheduled call. A call already running is left alone."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> bool:
        """
        Run a scheduled call now instead of waiting.

        Returns:
            True if a call was pending and has run
        """
        if self._timer is None:
            return False
        self.cancel()
        await self._run()
        return True

    async def wait(self) -> None:
        """Wait for a call that is already running, if any."""
        if self._running is not None:
            await asyncio.shield(self._running)

    def _fire(self) -> None:
        self._timer = None
        self._running = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self._action()
        except Exception as e:
            logger.error("debounced_action_failed", error=str(e), exc_info=True)
