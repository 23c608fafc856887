"""Priority retry queue for sync operations.

Operations are deduplicated by kind, run one at a time highest priority
first, raced against a timeout and retried with exponential backoff. When an
operation that carried an optimistic update is finally abandoned, the
pre-mutation snapshot is published on :attr:`RetryQueue.rollbacks`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import OperationTimeoutError, is_retryable
from ..events import EventChannel, RollbackEvent
from ..snapshot import AppDataSnapshot, new_id, utcnow

logger = logging.getLogger("familysync.sync.queue")


class OperationKind(str, Enum):
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    PUSH_ONLY = "push_only"


class Priority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    IMMEDIATE = 3


class SyncHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    DEGRADED = "degraded"

    @classmethod
    def from_failures(cls, consecutive_failures: int) -> "SyncHealth":
        if consecutive_failures >= 3:
            return cls.DEGRADED
        if consecutive_failures >= 1:
            return cls.WARNING
        return cls.HEALTHY


@dataclass
class SyncOperation:
    """A queued unit of sync work."""

    kind: OperationKind
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    attempt_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "priority": self.priority.name.lower(),
            "created_at": self.created_at.isoformat(),
            "attempt_count": self.attempt_count,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
        }


@dataclass
class QueueSettings:
    """Settings for the retry queue."""

    operation_timeout: float = 3.0
    max_retries: int = 3
    debounce_interval: float = 0.5
    min_sync_interval: float = 2.0
    base_delay: float = 1.0
    max_delay: float = 30.0
    enable_optimistic_updates: bool = True

    @classmethod
    def preset(cls, name: str) -> "QueueSettings":
        try:
            return replace(QUEUE_PRESETS[name])
        except KeyError:
            raise ValueError(f"Unknown queue profile: {name}") from None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "QueueSettings":
        raw = config.get("queue", {}) if config else {}
        base = cls.preset(str(raw.get("profile", "default")))
        overrides: Dict[str, Any] = {}
        for key, caster in (
            ("operation_timeout", float),
            ("max_retries", int),
            ("debounce_interval", float),
            ("min_sync_interval", float),
            ("base_delay", float),
            ("max_delay", float),
            ("enable_optimistic_updates", bool),
        ):
            if raw.get(key) is not None:
                overrides[key] = caster(raw[key])
        return replace(base, **overrides)


QUEUE_PRESETS: Dict[str, QueueSettings] = {
    "default": QueueSettings(),
    "aggressive": QueueSettings(
        operation_timeout=5.0,
        max_retries=5,
        debounce_interval=0.3,
        min_sync_interval=1.0,
    ),
    "conservative": QueueSettings(
        operation_timeout=10.0,
        max_retries=2,
        debounce_interval=1.0,
        min_sync_interval=5.0,
    ),
}


def backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def _log_context(operation: SyncOperation) -> Dict[str, Any]:
    return {
        "operation_id": operation.id,
        "kind": operation.kind.value,
        "attempt": operation.attempt_count,
    }


OperationExecutor = Callable[[SyncOperation], Awaitable[None]]


class RetryQueue:
    """Single-processor queue of :class:`SyncOperation` objects.

    All methods must be called from the event loop thread. When no loop is
    running, operations are queued but processing is not scheduled.
    """

    def __init__(
        self,
        executor: Optional[OperationExecutor] = None,
        settings: Optional[QueueSettings] = None,
    ):
        self.settings = settings or QueueSettings()
        self._executor = executor
        self._pending: List[SyncOperation] = []
        self._optimistic: Dict[str, AppDataSnapshot] = {}
        self._connected = True
        self._processor: Optional[asyncio.Task] = None
        self._debounce: Optional[asyncio.Task] = None
        self._debounced_priority: Optional[Priority] = None
        self._debounced_previous: Optional[AppDataSnapshot] = None
        self._executing = False
        self._expedite = False

        self.consecutive_failures = 0
        self.last_successful_sync: Optional[datetime] = None
        self.rollbacks: EventChannel[RollbackEvent] = EventChannel("rollbacks")
        self.abandoned: EventChannel[SyncOperation] = EventChannel("abandoned")
        self.health_changes: EventChannel[SyncHealth] = EventChannel("health")

    def set_executor(self, executor: OperationExecutor) -> None:
        self._executor = executor

    # ------------------------------------------------------------------
    # Introspection

    @property
    def pending_operations(self) -> List[SyncOperation]:
        return list(self._pending)

    @property
    def health(self) -> SyncHealth:
        return SyncHealth.from_failures(self.consecutive_failures)

    @property
    def is_processing(self) -> bool:
        return self._executing

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def has_debounced_operation(self) -> bool:
        return self._debounce is not None and not self._debounce.done()

    def optimistic_record(self, operation_id: str) -> Optional[AppDataSnapshot]:
        return self._optimistic.get(operation_id)

    # ------------------------------------------------------------------
    # Enqueue

    def enqueue(
        self,
        operation: SyncOperation,
        previous_state: Optional[AppDataSnapshot] = None,
    ) -> SyncOperation:
        """Add ``operation`` unless one of the same kind is already pending.

        Returns the operation that ends up queued for that kind.
        """
        existing = self._find_pending(operation.kind)
        if existing is not None:
            if operation.priority > existing.priority:
                index = self._pending.index(existing)
                self._pending[index] = operation
                self._transfer_optimistic(existing.id, operation.id)
                self._record_optimistic(operation.id, previous_state)
                self._sort()
                logger.debug("Replaced pending %s with higher priority %s", operation.kind.value, operation.priority.name)
                return operation
            self._record_optimistic(existing.id, previous_state)
            logger.debug("Dropped duplicate %s operation", operation.kind.value)
            return existing

        self._pending.append(operation)
        self._record_optimistic(operation.id, previous_state)
        self._sort()
        logger.debug("Enqueued %s, queue size: %d", operation.kind.value, len(self._pending))
        self._schedule_processing()
        return operation

    def enqueue_debounced(
        self,
        priority: Priority = Priority.NORMAL,
        previous_state: Optional[AppDataSnapshot] = None,
    ) -> None:
        """Collapse bursts of change notifications into one push operation."""
        if self._debounced_previous is None and previous_state is not None:
            self._debounced_previous = previous_state
        if self._debounced_priority is None or priority > self._debounced_priority:
            self._debounced_priority = priority

        self._cancel_debounce()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush_debounced()
            return
        self._debounce = loop.create_task(self._debounce_then_enqueue())

    async def _debounce_then_enqueue(self) -> None:
        await asyncio.sleep(self.settings.debounce_interval)
        self._debounce = None
        self._flush_debounced()

    def _flush_debounced(self) -> Optional[SyncOperation]:
        if self._debounced_priority is None:
            return None
        priority = self._debounced_priority
        previous = self._debounced_previous
        self._debounced_priority = None
        self._debounced_previous = None
        return self.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=priority), previous)

    def _cancel_debounce(self) -> None:
        if self._debounce is not None and not self._debounce.done():
            self._debounce.cancel()
        self._debounce = None

    # ------------------------------------------------------------------
    # Control

    def process_now(self) -> None:
        """Skip the debounce and the scheduling delay and process immediately."""
        self._cancel_debounce()
        self._flush_debounced()
        if self._executing:
            self._expedite = True
            return
        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
        self._processor = None
        self._schedule_processing(delay=0.0)

    def set_connection_status(self, connected: bool) -> None:
        was_offline = not self._connected
        self._connected = connected
        if not connected:
            logger.info("Offline - deferring %d operations", len(self._pending))
        elif was_offline and self._pending:
            logger.info("Back online with %d pending operations", len(self._pending))
            self.process_now()

    def clear(self) -> None:
        self._pending.clear()
        self._optimistic.clear()
        self._debounced_priority = None
        self._debounced_previous = None
        self._cancel_debounce()
        if self._processor is not None and not self._processor.done():
            self._processor.cancel()
        self._processor = None
        self._executing = False

    async def wait_idle(self) -> None:
        """Wait until the debounce and the processor have both finished."""
        while True:
            tasks = [task for task in (self._debounce, self._processor) if task is not None and not task.done()]
            if not tasks:
                return
            await asyncio.wait(tasks)

    # ------------------------------------------------------------------
    # Processing

    def _schedule_processing(self, delay: Optional[float] = None) -> None:
        if self._processor is not None and not self._processor.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        wait = self.settings.min_sync_interval if delay is None else delay
        self._processor = loop.create_task(self._run(wait))

    async def _run(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        while self._pending and self._connected:
            self._expedite = False
            await self._process_one()
            if not (self._pending and self._connected):
                break
            if not self._expedite and self.settings.min_sync_interval > 0:
                await asyncio.sleep(self.settings.min_sync_interval)

    async def _process_one(self) -> None:
        operation = self._pending.pop(0)
        operation.attempt_count += 1
        operation.last_attempt_at = utcnow()
        logger.info("Processing %s, attempt %d", operation.kind.value, operation.attempt_count)

        self._executing = True
        try:
            await self._execute_with_timeout(operation)
        except Exception as exc:
            self._executing = False
            self._handle_failure(operation, exc)
            if operation in self._pending and self._connected:
                delay = backoff_delay(
                    operation.attempt_count,
                    self.settings.base_delay,
                    self.settings.max_delay,
                )
                logger.info("Will retry %s in %.1fs", operation.kind.value, delay)
                await asyncio.sleep(delay)
            return
        finally:
            self._executing = False

        previous_health = self.health
        self.last_successful_sync = utcnow()
        self.consecutive_failures = 0
        self._optimistic.pop(operation.id, None)
        logger.info("Operation %s succeeded", operation.kind.value)
        self._publish_health(previous_health)

    async def _execute_with_timeout(self, operation: SyncOperation) -> None:
        if self._executor is None:
            raise RuntimeError("RetryQueue has no executor")
        sync_task = asyncio.ensure_future(self._executor(operation))
        timer_task = asyncio.ensure_future(asyncio.sleep(self.settings.operation_timeout))
        try:
            done, _ = await asyncio.wait({sync_task, timer_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sync_task, timer_task):
                if not task.done():
                    task.cancel()
        if sync_task in done:
            sync_task.result()
            return
        await asyncio.gather(sync_task, return_exceptions=True)
        raise OperationTimeoutError(
            f"Sync operation timed out after {self.settings.operation_timeout:g}s",
            context={"operation_id": operation.id},
        )

    def _handle_failure(self, operation: SyncOperation, error: Exception) -> None:
        previous_health = self.health
        operation.last_error = str(error)
        self.consecutive_failures += 1
        logger.warning(
            "Operation %s failed: %s", operation.kind.value, error, extra={"sync": _log_context(operation)}
        )

        retryable = is_retryable(error)
        if retryable and operation.attempt_count < self.settings.max_retries:
            self._requeue(operation)
        else:
            self._abandon(operation, retryable)
        self._publish_health(previous_health)

    def _requeue(self, operation: SyncOperation) -> None:
        existing = self._find_pending(operation.kind)
        if existing is None:
            self._pending.append(operation)
            self._sort()
            return
        # a newer request for the same kind arrived while this one was running
        self._transfer_optimistic(operation.id, existing.id)
        if operation.priority > existing.priority:
            existing.priority = operation.priority
            self._sort()

    def _abandon(self, operation: SyncOperation, retryable: bool) -> None:
        reason = "after %d attempts" % operation.attempt_count if retryable else "with a permanent error"
        logger.error(
            "Operation %s abandoned %s: %s",
            operation.kind.value,
            reason,
            operation.last_error,
            extra={"sync": _log_context(operation)},
        )
        previous_state = self._optimistic.pop(operation.id, None)
        if previous_state is not None:
            self.rollbacks.publish(
                RollbackEvent(
                    operation_id=operation.id,
                    kind=operation.kind.value,
                    previous_state=previous_state,
                    error=operation.last_error,
                )
            )
        self.abandoned.publish(operation)

    # ------------------------------------------------------------------
    # Helpers

    def _find_pending(self, kind: OperationKind) -> Optional[SyncOperation]:
        for operation in self._pending:
            if operation.kind == kind:
                return operation
        return None

    def _sort(self) -> None:
        # list.sort is stable, so equal priorities keep arrival order
        self._pending.sort(key=lambda op: op.priority, reverse=True)

    def _record_optimistic(self, operation_id: str, previous_state: Optional[AppDataSnapshot]) -> None:
        if previous_state is None or not self.settings.enable_optimistic_updates:
            return
        self._optimistic.setdefault(operation_id, previous_state)

    def _transfer_optimistic(self, from_id: str, to_id: str) -> None:
        previous_state = self._optimistic.pop(from_id, None)
        if previous_state is not None:
            # the older snapshot is the one to restore
            self._optimistic[to_id] = previous_state

    def _publish_health(self, previous: SyncHealth) -> None:
        current = self.health
        if current != previous:
            self.health_changes.publish(current)


__all__ = [
    "OperationExecutor",
    "OperationKind",
    "Priority",
    "QUEUE_PRESETS",
    "QueueSettings",
    "RetryQueue",
    "SyncHealth",
    "SyncOperation",
    "backoff_delay",
]
