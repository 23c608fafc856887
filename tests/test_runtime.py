"""Tests for wiring a device runtime."""

from __future__ import annotations

import asyncio
from pathlib import Path

from familysync.auth import AuthUser, StaticAuthProvider
from familysync.connectivity import ConnectivityMonitor
from familysync.runtime import SyncRuntime
from familysync.snapshot import Child
from familysync.store.document import DocumentRemoteStore, InMemoryDocumentDatabase


def test_start_without_event_loop_defers_sign_in(tmp_path: Path):
    database = InMemoryDocumentDatabase()
    runtime = SyncRuntime.create(
        tmp_path,
        database,
        auth=StaticAuthProvider(AuthUser(uid="p1", display_name="Sam")),
        connectivity=ConnectivityMonitor(),
    )
    runtime.repository.add_child(Child(name="Ava"))

    runtime.start()

    assert runtime.coordinator.has_deferred_sign_in
    assert runtime.coordinator.remote is None
    assert not runtime.coordinator.is_migrating

    async def _resume_and_read():
        await runtime.resume()
        family_id = runtime.family_id_store.get()
        cloud = await DocumentRemoteStore(database, "reader", family_id).load_snapshot()
        await runtime.shutdown()
        return cloud

    cloud = asyncio.run(_resume_and_read())

    assert not runtime.coordinator.has_deferred_sign_in
    assert [child.name for child in cloud.children] == ["Ava"]
    assert "p1" in cloud.family.member_ids


def test_resume_without_deferred_sign_in_is_a_no_op(tmp_path: Path):
    runtime = SyncRuntime.create(tmp_path, InMemoryDocumentDatabase(), connectivity=ConnectivityMonitor())
    runtime.start()

    asyncio.run(runtime.resume())

    assert runtime.coordinator.remote is None
    assert not runtime.coordinator.has_deferred_sign_in
