"""Tests for the sync coordinator against the in-memory document database."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from familysync.auth import AuthUser, StaticAuthProvider
from familysync.connectivity import ConnectivityMonitor
from familysync.errors import RemoteStoreError, RemoteTimeoutError
from familysync.repository import Repository
from familysync.snapshot import AppDataSnapshot, BehaviorEvent, Child
from familysync.store.document import DocumentRemoteStore, InMemoryDocumentDatabase
from familysync.store.local import FamilyIdStore, LocalStore
from familysync.store.remote import RemoteSettings
from familysync.sync.coordinator import SyncCoordinator, SyncStatus
from familysync.sync.queue import OperationKind, Priority, QueueSettings, RetryQueue

BASE_TIME = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
PARENT = AuthUser(uid="parent-1", display_name="Sam", email="sam@example.com")
PARTNER = AuthUser(uid="parent-2", display_name="Alex")


def _queue_settings(**overrides) -> QueueSettings:
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


async def _repository(base: Path, *child_names: str) -> Repository:
    repository = Repository(LocalStore(base / "app_data.json"), save_debounce=0.01)
    for name in child_names:
        repository.add_child(Child(name=name))
    await repository.flush()
    return repository


def _coordinator(
    base: Path,
    database: InMemoryDocumentDatabase,
    repository: Repository,
    queue_settings: Optional[QueueSettings] = None,
    connectivity: Optional[ConnectivityMonitor] = None,
) -> SyncCoordinator:
    coordinator = SyncCoordinator(
        repository,
        lambda user_id, family_id: DocumentRemoteStore(database, user_id, family_id),
        queue=RetryQueue(settings=queue_settings or _queue_settings()),
        family_id_store=FamilyIdStore(base / "family.json"),
        connectivity=connectivity or ConnectivityMonitor(),
        auth=StaticAuthProvider(),
    )
    coordinator.start()
    return coordinator


async def _sign_in(coordinator: SyncCoordinator, user: AuthUser = PARENT) -> None:
    task = coordinator.handle_auth_state_change(user)
    assert task is not None
    await task


async def _shutdown(*coordinators: SyncCoordinator) -> None:
    for coordinator in coordinators:
        coordinator.stop()
        await coordinator.repository.flush()


async def _cloud(database: InMemoryDocumentDatabase, family_id: str) -> AppDataSnapshot:
    snapshot = await DocumentRemoteStore(database, "reader", family_id).load_snapshot()
    assert snapshot is not None
    return snapshot


@pytest.mark.asyncio
async def test_first_sign_in_uploads_and_attributes_local_events(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    repository = await _repository(tmp_path, "Ava")
    child = repository.snapshot.children[0]
    behavior = repository.snapshot.behavior_types[0]
    for minute in range(10):
        repository.add_behavior_event(
            BehaviorEvent(
                child_id=child.id,
                behavior_type_id=behavior.id,
                points_applied=1,
                timestamp=BASE_TIME + timedelta(minutes=minute),
            )
        )
    await repository.flush()
    coordinator = _coordinator(tmp_path, database, repository)

    await _sign_in(coordinator)

    family_id = coordinator.family_id_store.get()
    assert family_id == repository.snapshot.family.id
    cloud = await _cloud(database, family_id)
    assert cloud.family.member_ids == ["parent-1"]
    assert len(cloud.behavior_events) == 10
    assert all(event.logged_by_parent_id == "parent-1" for event in cloud.behavior_events)
    assert all(event.logged_by_parent_id == "parent-1" for event in repository.snapshot.behavior_events)
    assert sorted(e.id for e in cloud.behavior_events) == sorted(e.id for e in repository.snapshot.behavior_events)
    assert repository.snapshot.current_parent_id == "parent-1"
    assert cloud.parent_by_id("parent-1").display_name == "Sam"
    assert coordinator.state.status == SyncStatus.SYNCED
    assert coordinator.has_pending_changes is False
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_second_device_merges_into_existing_cloud_data(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    first = _coordinator(tmp_path / "a", database, await _repository(tmp_path / "a", "Ava", "Leo", "Mia"))
    await _sign_in(first)
    second = _coordinator(tmp_path / "b", database, await _repository(tmp_path / "b", "Noah", "Zoe"))

    await _sign_in(second)

    names = sorted(child.name for child in second.repository.snapshot.children)
    assert names == ["Ava", "Leo", "Mia", "Noah", "Zoe"]
    family_id = first.family_id_store.get()
    assert second.family_id_store.get() == family_id
    cloud = await _cloud(database, family_id)
    assert len(cloud.children) == 5
    assert len(cloud.behavior_types) == 8

    await asyncio.sleep(0.1)
    assert len(first.repository.snapshot.children) == 5
    await _shutdown(first, second)


@pytest.mark.asyncio
async def test_second_device_does_not_duplicate_same_named_children(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    first = _coordinator(tmp_path / "a", database, await _repository(tmp_path / "a", "Ava", "Leo", "Mia"))
    await _sign_in(first)
    second = _coordinator(tmp_path / "b", database, await _repository(tmp_path / "b", "Ava", "Noah"))

    await _sign_in(second)

    names = sorted(child.name for child in second.repository.snapshot.children)
    assert names == ["Ava", "Leo", "Mia", "Noah"]
    await _shutdown(first, second)


@pytest.mark.asyncio
async def test_remote_update_without_children_is_refused(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    repository = await _repository(tmp_path, "A", "B", "C", "D")
    coordinator = _coordinator(tmp_path, database, repository, _queue_settings(min_sync_interval=10.0))
    before = repository.snapshot.to_dict()
    remote = repository.snapshot.copy()
    remote.children = []

    accepted = coordinator.handle_remote_update(remote)

    assert accepted is False
    assert repository.snapshot.to_dict() == before
    assert coordinator.has_pending_changes is True
    [operation] = coordinator.queue.pending_operations
    assert operation.kind == OperationKind.PUSH_ONLY
    assert operation.priority == Priority.HIGH
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_accepted_remote_update_keeps_local_events_and_schedules_push(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    repository = await _repository(tmp_path, "Ava")
    coordinator = _coordinator(tmp_path, database, repository, _queue_settings(min_sync_interval=10.0))
    remote = repository.snapshot.copy()
    remote.children.append(Child(name="Leo"))
    child = repository.snapshot.children[0]
    local_event = BehaviorEvent(
        child_id=child.id,
        behavior_type_id=repository.snapshot.behavior_types[0].id,
        points_applied=3,
    )
    repository.snapshot.behavior_events.append(local_event)

    accepted = coordinator.handle_remote_update(remote)

    assert accepted is True
    assert [c.name for c in repository.snapshot.children] == ["Ava", "Leo"]
    assert [e.id for e in repository.snapshot.behavior_events] == [local_event.id]
    assert coordinator.has_pending_changes is True
    [operation] = coordinator.queue.pending_operations
    assert operation.priority == Priority.NORMAL
    assert coordinator.state.status == SyncStatus.SYNCED
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_timeout_keeps_syncing_state_and_other_errors_publish_error(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"))
    await _sign_in(coordinator)
    coordinator.queue.clear()
    coordinator.has_pending_changes = True

    database.latency = 0.2
    coordinator.remote.settings = RemoteSettings(operation_timeout=0.05)
    with pytest.raises(RemoteTimeoutError):
        await coordinator.sync_if_needed()
    assert coordinator.state.status == SyncStatus.SYNCING
    assert coordinator.has_pending_changes is True

    database.latency = 0.0
    database.inject_failure(RemoteStoreError("permission check failed"))
    with pytest.raises(RemoteStoreError):
        await coordinator.sync_if_needed()
    assert coordinator.state.status == SyncStatus.ERROR
    assert "permission check failed" in coordinator.state.message

    assert await coordinator.sync_if_needed() is True
    assert coordinator.state.status == SyncStatus.SYNCED
    assert coordinator.has_pending_changes is False
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_offline_changes_are_pushed_after_reconnect(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    monitor = ConnectivityMonitor()
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"), connectivity=monitor)
    await _sign_in(coordinator)
    family_id = coordinator.family_id_store.get()
    states: List[SyncStatus] = []
    coordinator.state_changes.subscribe(lambda state: states.append(state.status))

    monitor.set_connected(False)
    assert coordinator.state.status == SyncStatus.OFFLINE
    assert not coordinator.is_cloud_sync_available

    coordinator.repository.add_child(Child(name="Leo"))
    await coordinator.repository.flush()
    await asyncio.sleep(0.1)
    assert coordinator.has_pending_changes is True
    assert len((await _cloud(database, family_id)).children) == 1

    monitor.set_connected(True)
    await asyncio.wait_for(coordinator.queue.wait_idle(), timeout=2.0)

    assert len((await _cloud(database, family_id)).children) == 2
    assert coordinator.has_pending_changes is False
    assert coordinator.state.status == SyncStatus.SYNCED
    assert states[:2] == [SyncStatus.OFFLINE, SyncStatus.IDLE]
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_abandoned_push_sets_error_and_republishes_rollback(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"))
    await _sign_in(coordinator)
    rollbacks = []
    coordinator.rollbacks.subscribe(rollbacks.append)
    database.inject_failure(RemoteStoreError("backend unavailable"), times=10)

    coordinator.repository.add_child(Child(name="Leo"))
    await coordinator.repository.flush()
    await asyncio.wait_for(coordinator.queue.wait_idle(), timeout=2.0)
    database.clear_failures()

    assert len(rollbacks) == 1
    assert [c.name for c in rollbacks[0].previous_state.children] == ["Ava"]
    assert coordinator.state.status == SyncStatus.ERROR
    assert coordinator.health.value == "degraded"
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_duplicate_sign_in_during_migration_is_ignored(tmp_path: Path):
    database = InMemoryDocumentDatabase(latency=0.01)
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"))

    first = coordinator.handle_auth_state_change(PARENT)
    assert coordinator.is_migrating
    second = coordinator.handle_auth_state_change(PARENT)
    await first

    assert second is None
    assert not coordinator.is_migrating
    assert database.peek(f"families/{coordinator.family_id_store.get()}") is not None
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_sign_out_tears_down_remote(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"))
    await _sign_in(coordinator)
    assert coordinator.is_cloud_sync_available

    coordinator.auth.sign_out()

    assert coordinator.remote is None
    assert coordinator.family_id_store.get() is None
    assert coordinator.state.status == SyncStatus.IDLE
    assert [c.name for c in coordinator.repository.snapshot.children] == ["Ava"]
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_partner_joins_with_invite_code(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    owner = _coordinator(tmp_path / "a", database, await _repository(tmp_path / "a", "Ava"))
    await _sign_in(owner, PARENT)
    code = await owner.generate_invite_code()
    partner = _coordinator(tmp_path / "b", database, await _repository(tmp_path / "b", "Noah"))
    await _sign_in(partner, PARTNER)

    family_id = await partner.join_family(code)

    assert family_id == owner.family_id_store.get()
    assert partner.family_id_store.get() == family_id
    cloud = await _cloud(database, family_id)
    assert sorted(child.name for child in cloud.children) == ["Ava", "Noah"]
    assert cloud.parent_by_id("parent-2").role == "parent2"
    assert "parent-2" in cloud.family.member_ids
    assert partner.repository.snapshot.current_parent_id == "parent-2"
    await _shutdown(owner, partner)


@pytest.mark.asyncio
async def test_full_sync_pulls_then_pushes(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    coordinator = _coordinator(tmp_path, database, await _repository(tmp_path, "Ava"))
    await _sign_in(coordinator)

    coordinator.request_full_sync()
    await asyncio.wait_for(coordinator.queue.wait_idle(), timeout=2.0)

    assert coordinator.state.status == SyncStatus.SYNCED
    assert coordinator.has_pending_changes is False
    assert coordinator.describe()["family_id"] == coordinator.family_id_store.get()
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_sync_now_pushes_pending_changes_immediately(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    coordinator = _coordinator(
        tmp_path, database, await _repository(tmp_path, "Ava"), _queue_settings(min_sync_interval=10.0)
    )
    await _sign_in(coordinator)
    coordinator.repository.snapshot.children.append(Child(name="Leo"))
    coordinator.has_pending_changes = True

    coordinator.sync_now()
    await asyncio.wait_for(coordinator.queue.wait_idle(), timeout=1.0)

    cloud = await _cloud(database, coordinator.family_id_store.get())
    assert len(cloud.children) == 2
    assert coordinator.has_pending_changes is False
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_edits_made_during_first_sign_in_reach_both_replicas(tmp_path: Path):
    database = InMemoryDocumentDatabase(latency=0.05)
    repository = await _repository(tmp_path, "Ava")
    coordinator = _coordinator(tmp_path, database, repository)
    ava = repository.snapshot.children[0]

    task = coordinator.handle_auth_state_change(PARENT)
    await asyncio.sleep(0.07)
    event = repository.add_behavior_event(
        BehaviorEvent(child_id=ava.id, behavior_type_id=repository.snapshot.behavior_types[0].id, points_applied=2)
    )
    repository.add_child(Child(name="Ben"))
    await task
    await asyncio.wait_for(coordinator.queue.wait_idle(), timeout=5.0)

    assert sorted(child.name for child in repository.snapshot.children) == ["Ava", "Ben"]
    assert event.id in [e.id for e in repository.snapshot.behavior_events]
    cloud = await _cloud(database, coordinator.family_id_store.get())
    assert sorted(child.name for child in cloud.children) == ["Ava", "Ben"]
    [cloud_event] = [e for e in cloud.behavior_events if e.id == event.id]
    assert cloud_event.logged_by_parent_id == "parent-1"
    await _shutdown(coordinator)


@pytest.mark.asyncio
async def test_edits_made_while_joining_existing_family_are_remapped_and_pushed(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    first = _coordinator(tmp_path / "a", database, await _repository(tmp_path / "a", "Ava"))
    await _sign_in(first)
    family_id = first.family_id_store.get()
    cloud_ava = (await _cloud(database, family_id)).children[0]

    database.latency = 0.05
    repository = await _repository(tmp_path / "b", "Ava")
    second = _coordinator(tmp_path / "b", database, repository)
    local_ava = repository.snapshot.children[0]
    task = second.handle_auth_state_change(PARENT)
    await asyncio.sleep(0.07)
    event = repository.add_behavior_event(
        BehaviorEvent(
            child_id=local_ava.id,
            behavior_type_id=repository.snapshot.behavior_types[0].id,
            points_applied=1,
        )
    )
    await task
    await asyncio.wait_for(second.queue.wait_idle(), timeout=5.0)

    assert [child.id for child in repository.snapshot.children] == [cloud_ava.id]
    [local_event] = [e for e in repository.snapshot.behavior_events if e.id == event.id]
    assert local_event.child_id == cloud_ava.id
    cloud = await _cloud(database, family_id)
    [pushed] = [e for e in cloud.behavior_events if e.id == event.id]
    assert pushed.child_id == cloud_ava.id
    assert len(cloud.children) == 1
    await _shutdown(first, second)
