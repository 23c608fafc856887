"""Tests for the priority retry queue."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from familysync.errors import ConfigurationError, RemoteStoreError
from familysync.snapshot import AppDataSnapshot
from familysync.sync.queue import (
    OperationKind,
    Priority,
    QueueSettings,
    RetryQueue,
    SyncHealth,
    SyncOperation,
    backoff_delay,
)


def _fast_settings(**overrides) -> QueueSettings:
    values = dict(
        operation_timeout=1.0,
        max_retries=3,
        debounce_interval=0.05,
        min_sync_interval=0.0,
        base_delay=0.01,
        max_delay=0.05,
    )
    values.update(overrides)
    return QueueSettings(**values)


class RecordingExecutor:
    """Executor that fails a configurable number of times before succeeding."""

    def __init__(self, failures: int = 0, error: Optional[Exception] = None, delay: float = 0.0):
        self.failures = failures
        self.error = error or RemoteStoreError("remote unavailable")
        self.delay = delay
        self.calls: List[SyncOperation] = []

    async def __call__(self, operation: SyncOperation) -> None:
        self.calls.append(operation)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise self.error


def test_backoff_doubles_up_to_cap():
    delays = [backoff_delay(attempt) for attempt in range(1, 8)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert delays == sorted(delays)
    assert backoff_delay(0) == 0.0


def test_presets_and_config_overrides():
    aggressive = QueueSettings.preset("aggressive")
    assert aggressive.operation_timeout == 5.0
    assert aggressive.max_retries == 5
    assert aggressive.debounce_interval == 0.3
    assert aggressive.min_sync_interval == 1.0

    conservative = QueueSettings.preset("conservative")
    assert (conservative.operation_timeout, conservative.max_retries) == (10.0, 2)

    configured = QueueSettings.from_config({"queue": {"profile": "aggressive", "max_retries": 7}})
    assert configured.max_retries == 7
    assert configured.operation_timeout == 5.0

    assert QueueSettings.from_config({}) == QueueSettings()
    with pytest.raises(ValueError):
        QueueSettings.preset("reckless")


def test_health_thresholds():
    assert SyncHealth.from_failures(0) == SyncHealth.HEALTHY
    assert SyncHealth.from_failures(2) == SyncHealth.WARNING
    assert SyncHealth.from_failures(3) == SyncHealth.DEGRADED


def test_same_kind_dedup_keeps_higher_priority():
    queue = RetryQueue(settings=_fast_settings())
    low = SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.LOW)
    high = SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.HIGH)
    normal = SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.NORMAL)

    assert queue.enqueue(low) is low
    assert queue.enqueue(high) is high
    assert queue.enqueue(normal) is high

    assert [op.id for op in queue.pending_operations] == [high.id]


def test_replacement_carries_oldest_optimistic_state():
    queue = RetryQueue(settings=_fast_settings())
    first_state = AppDataSnapshot.empty()
    second_state = AppDataSnapshot.empty()
    low = queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.LOW), first_state)
    high = queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.HIGH), second_state)

    assert queue.optimistic_record(low.id) is None
    assert queue.optimistic_record(high.id) is first_state


def test_debounced_enqueue_without_loop_is_immediate():
    queue = RetryQueue(settings=_fast_settings())
    queue.enqueue_debounced(Priority.HIGH)

    [operation] = queue.pending_operations
    assert operation.kind == OperationKind.PUSH_ONLY
    assert operation.priority == Priority.HIGH


@pytest.mark.asyncio
async def test_dequeues_in_priority_order():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings())
    queue.set_connection_status(False)

    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.LOW))
    queue.enqueue(SyncOperation(kind=OperationKind.FULL_SYNC, priority=Priority.NORMAL))
    queue.enqueue(SyncOperation(kind=OperationKind.INCREMENTAL_SYNC, priority=Priority.HIGH))
    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.LOW))

    queue.set_connection_status(True)
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    executed = [(op.kind, op.priority) for op in executor.calls]
    assert executed == [
        (OperationKind.INCREMENTAL_SYNC, Priority.HIGH),
        (OperationKind.FULL_SYNC, Priority.NORMAL),
        (OperationKind.PUSH_ONLY, Priority.LOW),
    ]
    assert queue.pending_operations == []


@pytest.mark.asyncio
async def test_operation_failing_every_time_is_abandoned_with_one_rollback():
    executor = RecordingExecutor(failures=100)
    queue = RetryQueue(executor, _fast_settings())
    rollbacks = []
    abandoned = []
    queue.rollbacks.subscribe(rollbacks.append)
    queue.abandoned.subscribe(abandoned.append)
    previous = AppDataSnapshot.empty()

    operation = queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY), previous)
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    assert len(executor.calls) == 3
    assert operation.attempt_count == 3
    assert len(rollbacks) == 1
    assert rollbacks[0].previous_state is previous
    assert rollbacks[0].operation_id == operation.id
    assert abandoned == [operation]
    assert queue.health == SyncHealth.DEGRADED
    assert queue.optimistic_record(operation.id) is None


@pytest.mark.asyncio
async def test_recovery_after_two_failures_restores_health():
    executor = RecordingExecutor(failures=2)
    queue = RetryQueue(executor, _fast_settings())
    rollbacks = []
    health = []
    queue.rollbacks.subscribe(rollbacks.append)
    queue.health_changes.subscribe(health.append)

    operation = queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY), AppDataSnapshot.empty())
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    assert len(executor.calls) == 3
    assert queue.health == SyncHealth.HEALTHY
    assert queue.consecutive_failures == 0
    assert queue.last_successful_sync is not None
    assert queue.optimistic_record(operation.id) is None
    assert rollbacks == []
    assert health == [SyncHealth.WARNING, SyncHealth.HEALTHY]


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    executor = RecordingExecutor(failures=5, error=ConfigurationError("No family ID set"))
    queue = RetryQueue(executor, _fast_settings())
    abandoned = []
    queue.abandoned.subscribe(abandoned.append)

    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY))
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    assert len(executor.calls) == 1
    assert len(abandoned) == 1
    assert "No family ID set" in abandoned[0].last_error


@pytest.mark.asyncio
async def test_slow_operation_loses_race_against_timer():
    executor = RecordingExecutor(delay=1.0)
    queue = RetryQueue(executor, _fast_settings(operation_timeout=0.05, max_retries=1))
    abandoned = []
    queue.abandoned.subscribe(abandoned.append)

    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY))
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    assert len(abandoned) == 1
    assert "timed out" in abandoned[0].last_error


@pytest.mark.asyncio
async def test_burst_of_changes_enqueues_one_operation():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings(debounce_interval=0.5))

    for _ in range(3):
        queue.enqueue_debounced()
        await asyncio.sleep(0.05)

    assert queue.has_debounced_operation
    assert queue.pending_operations == []

    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)

    assert len(executor.calls) == 1
    assert executor.calls[0].kind == OperationKind.PUSH_ONLY


@pytest.mark.asyncio
async def test_debounce_keeps_first_previous_state_and_highest_priority():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings())
    queue.set_connection_status(False)
    first = AppDataSnapshot.empty()

    queue.enqueue_debounced(Priority.LOW, first)
    queue.enqueue_debounced(Priority.HIGH, AppDataSnapshot.empty())
    await asyncio.sleep(0.1)

    [operation] = queue.pending_operations
    assert operation.priority == Priority.HIGH
    assert queue.optimistic_record(operation.id) is first


@pytest.mark.asyncio
async def test_offline_queue_holds_operations_until_reconnect():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings())
    queue.set_connection_status(False)

    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY))
    await asyncio.sleep(0.05)
    assert executor.calls == []
    assert len(queue.pending_operations) == 1

    queue.set_connection_status(True)
    await asyncio.wait_for(queue.wait_idle(), timeout=2.0)
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_process_now_skips_scheduling_delay():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings(min_sync_interval=10.0))

    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY))
    await asyncio.sleep(0)
    queue.process_now()
    await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_clear_drops_pending_work():
    executor = RecordingExecutor()
    queue = RetryQueue(executor, _fast_settings(min_sync_interval=10.0))
    queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY), AppDataSnapshot.empty())
    queue.enqueue_debounced()

    queue.clear()
    await asyncio.wait_for(queue.wait_idle(), timeout=1.0)

    assert queue.pending_operations == []
    assert not queue.has_debounced_operation
    assert executor.calls == []
