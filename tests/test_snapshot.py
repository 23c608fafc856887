"""Tests for the snapshot aggregate and its entities."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from familysync.errors import (
    ConfigurationError,
    LocalStoreError,
    RemoteTimeoutError,
    is_retryable,
)
from familysync.snapshot import (
    AppDataSnapshot,
    BehaviorEvent,
    Child,
    Family,
    Parent,
    default_behavior_types,
)
from familysync.snapshot.entities import INVITE_CODE_ALPHABET, from_iso


def test_empty_snapshot_seeds_default_behavior_types():
    snapshot = AppDataSnapshot.empty()

    names = [item.name for item in snapshot.behavior_types]
    assert len(names) == 8
    assert "Morning routine completed" in names
    hitting = next(item for item in snapshot.behavior_types if item.name == "Hitting")
    assert hitting.category == "negative"
    assert hitting.default_points == -3
    assert snapshot.children == []
    assert snapshot.has_completed_onboarding is False


def test_default_behavior_types_get_fresh_ids():
    first = {item.id for item in default_behavior_types()}
    second = {item.id for item in default_behavior_types()}
    assert first.isdisjoint(second)


def test_snapshot_dict_keeps_tombstones_and_current_parent():
    snapshot = AppDataSnapshot.empty()
    child = Child(name="Ava", age=6)
    snapshot.children.append(child)
    snapshot.add_parent(Parent(id="parent-1", display_name="Sam"))
    snapshot.current_parent_id = "parent-1"
    snapshot.record_deleted_event("event-gone")

    data = snapshot.to_dict()
    restored = AppDataSnapshot.from_dict(data)

    assert data["version"] == 1
    assert restored.deleted_event_ids == ["event-gone"]
    assert restored.current_parent is not None
    assert restored.current_parent.display_name == "Sam"
    assert restored.child_by_id(child.id).name == "Ava"
    assert "parent-1" in restored.family.member_ids


def test_add_parent_replaces_existing_record():
    snapshot = AppDataSnapshot()
    snapshot.add_parent(Parent(id="p1", display_name="Old"))
    snapshot.add_parent(Parent(id="p1", display_name="New"))

    assert len(snapshot.parents) == 1
    assert snapshot.parent_by_id("p1").display_name == "New"
    assert snapshot.family.member_ids == ["p1"]


def test_record_deleted_event_is_idempotent():
    snapshot = AppDataSnapshot()
    snapshot.record_deleted_event("e1")
    snapshot.record_deleted_event("e1")

    assert snapshot.deleted_event_ids == ["e1"]
    assert snapshot.is_event_deleted("e1")


def test_copy_is_independent():
    snapshot = AppDataSnapshot.empty()
    snapshot.children.append(Child(name="Leo"))

    clone = snapshot.copy()
    clone.children[0].total_points = 10

    assert snapshot.children[0].total_points == 0


def test_invite_code_uses_unambiguous_alphabet_and_expires():
    family = Family()
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    code = family.generate_invite_code(valid_for_days=7, now=now)

    assert len(code) == 6
    assert all(char in INVITE_CODE_ALPHABET for char in code)
    assert family.is_invite_code_valid(now + timedelta(days=6))
    assert not family.is_invite_code_valid(now + timedelta(days=8))


def test_event_attribution_returns_new_event():
    event = BehaviorEvent(child_id="c1", behavior_type_id="b1", points_applied=5)

    attributed = event.with_parent_attribution("p1", "Sam")

    assert not event.has_parent_attribution
    assert attributed.logged_by_parent_id == "p1"
    assert attributed.logged_by_parent_name == "Sam"
    assert attributed.id == event.id
    assert attributed.dedup_key() == event.dedup_key()


def test_from_iso_treats_naive_values_as_utc():
    parsed = from_iso("2024-03-01T10:00:00")
    assert parsed.tzinfo == timezone.utc
    assert from_iso(None) is None


def test_error_retryability():
    assert is_retryable(RemoteTimeoutError("Load", 3.0))
    assert not is_retryable(ConfigurationError("No family ID set"))
    assert is_retryable(RuntimeError("boom"))

    error = LocalStoreError("load", "bad json", context={"path": "x"})
    assert str(error) == "Failed to load local data: bad json (path=x)"
    assert error.to_dict()["code"] == "LOCAL_STORE_ERROR"
