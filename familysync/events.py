"""Typed callback channels used in place of a global notification bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

from .snapshot import AppDataSnapshot

logger = logging.getLogger("familysync.events")

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Synchronous fan-out of values to registered listeners.

    A listener that raises is logged and does not stop delivery to the rest.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a function that unregisters it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Listener on channel '%s' failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)


@dataclass
class RollbackEvent:
    """Emitted when an operation carrying an optimistic update is abandoned."""

    operation_id: str
    kind: str
    previous_state: AppDataSnapshot
    error: Optional[str] = None


__all__ = ["EventChannel", "RollbackEvent"]
