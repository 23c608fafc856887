"""Sync coordination: retry queue, coordinator and event channels."""

from __future__ import annotations

from ..events import EventChannel, RollbackEvent
from .coordinator import SyncCoordinator, SyncState, SyncStatus
from .queue import (
    OperationKind,
    Priority,
    QueueSettings,
    RetryQueue,
    SyncHealth,
    SyncOperation,
    backoff_delay,
)

__all__ = [
    # Coordinator
    "SyncCoordinator",
    "SyncState",
    "SyncStatus",
    # Events
    "EventChannel",
    "RollbackEvent",
    # Queue
    "OperationKind",
    "Priority",
    "QueueSettings",
    "RetryQueue",
    "SyncHealth",
    "SyncOperation",
    "backoff_delay",
]
