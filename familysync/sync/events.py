"""Minimal synchronous publish/subscribe hub."""

from typing import Any, Callable, Generic, TypeVar

import structlog


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class EventHub(Generic[T]):
    """
    Listeners for one kind of event.

    ``subscribe`` returns a callable that removes the listener again.
    A listener that raises is logged and does not stop the others.
    """

    def __init__(self, name: str = "event"):
        self._name = name
        self._listeners: list[Callable[[T], Any]] = []

    def subscribe(self, listener: Callable[[T], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    event=self._name,
                    error=str(e),
                    exc_info=True,
                )

    def clear(self) -> None:
        self._listeners = []

    def __len__(self) -> int:
        return len(self._listeners)
