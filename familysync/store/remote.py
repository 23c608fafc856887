"""Cloud persistence interface for a family's snapshot."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..snapshot import AppDataSnapshot, Family

logger = logging.getLogger("familysync.store.remote")

RemoteChangeHandler = Callable[[AppDataSnapshot], Union[None, Awaitable[None]]]


@dataclass
class RemoteSettings:
    """Settings for remote store operations."""

    operation_timeout: float = 3.0
    initial_load_timeout: float = 5.0
    invite_valid_days: int = 7

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "RemoteSettings":
        raw = config.get("remote", {}) if config else {}
        return cls(
            operation_timeout=float(raw.get("operation_timeout", 3.0)),
            initial_load_timeout=float(raw.get("initial_load_timeout", 5.0)),
            invite_valid_days=int(raw.get("invite_valid_days", 7)),
        )


class Subscription(ABC):
    """Handle returned by :meth:`RemoteStore.start_realtime_sync`."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivering change callbacks. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        pass


class RemoteStore(ABC):
    """Family-scoped cloud replica of the snapshot.

    Every operation works against the family id given at construction or set
    later with :meth:`set_family_id`. Implementations bound their awaits with
    timeouts and raise :class:`~familysync.errors.RemoteTimeoutError` when the
    budget is exceeded.
    """

    def __init__(self, user_id: str, family_id: Optional[str] = None):
        self.user_id = user_id
        self.family_id = family_id

    def set_family_id(self, family_id: Optional[str]) -> None:
        logger.debug("Remote store family id set to %s", family_id)
        self.family_id = family_id

    @abstractmethod
    async def load_snapshot(self) -> Optional[AppDataSnapshot]:
        """Aggregate the family's documents, or ``None`` if there are none."""
        pass

    @abstractmethod
    async def save_snapshot(self, snapshot: AppDataSnapshot) -> None:
        """Write the whole snapshot as one atomic batch."""
        pass

    @abstractmethod
    async def clear_all(self) -> None:
        """Delete every sub-collection document; the family root stays."""
        pass

    @abstractmethod
    def start_realtime_sync(self, on_change: RemoteChangeHandler) -> Optional[Subscription]:
        """Reload and report the snapshot each time the family root changes."""
        pass

    @abstractmethod
    async def create_family(self, family: Family) -> str:
        pass

    @abstractmethod
    async def lookup_family_id(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def join_family(self, invite_code: str) -> str:
        pass

    @abstractmethod
    async def generate_invite_code(self, valid_for_days: Optional[int] = None) -> str:
        pass

    @abstractmethod
    async def merge_local_data(
        self,
        local: AppDataSnapshot,
        parent_id: str,
        parent_name: str,
    ) -> None:
        """Fold ``local`` into the existing cloud snapshot and save the result."""
        pass


RemoteStoreFactory = Callable[[str, Optional[str]], RemoteStore]


__all__ = [
    "RemoteChangeHandler",
    "RemoteSettings",
    "RemoteStore",
    "RemoteStoreFactory",
    "Subscription",
]
