"""Merge rules used when two replicas of a family snapshot meet."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Hashable, Iterable, List, Set

from ..snapshot import AppDataSnapshot, BehaviorEvent

logger = logging.getLogger("familysync.store.merge")


@dataclass
class RemoteMergeOutcome:
    """Result of applying a realtime remote update to the local replica."""

    snapshot: AppDataSnapshot
    preserved_events: List[BehaviorEvent] = field(default_factory=list)
    new_tombstones: List[str] = field(default_factory=list)

    @property
    def needs_push(self) -> bool:
        """Local knowledge the remote lacks must be pushed back."""
        return bool(self.preserved_events or self.new_tombstones)


def is_destructive_update(local: AppDataSnapshot, remote: AppDataSnapshot) -> bool:
    """True when accepting ``remote`` would drop children held locally."""
    local_count = len(local.children)
    remote_count = len(remote.children)
    if remote_count == 0 and local_count > 0:
        return True
    return remote_count < local_count


def _union_tombstones(*snapshots: AppDataSnapshot) -> List[str]:
    merged: List[str] = []
    seen: Set[str] = set()
    for snapshot in snapshots:
        for event_id in snapshot.deleted_event_ids:
            if event_id not in seen:
                seen.add(event_id)
                merged.append(event_id)
    return merged


def _live_events(events: Iterable[BehaviorEvent], tombstones: Set[str]) -> List[BehaviorEvent]:
    return [event for event in events if event.id not in tombstones]


def merge_remote_update(local: AppDataSnapshot, remote: AppDataSnapshot) -> RemoteMergeOutcome:
    """Accept ``remote`` as truth while keeping what only this device knows.

    The local ``current_parent_id`` is kept, and local events that the remote
    has never seen are appended. Events tombstoned on either side are dropped.
    Callers must check :func:`is_destructive_update` first.
    """
    merged = remote.copy()
    merged.current_parent_id = local.current_parent_id
    merged.deleted_event_ids = _union_tombstones(remote, local)
    tombstones = set(merged.deleted_event_ids)

    merged.behavior_events = _live_events(merged.behavior_events, tombstones)
    remote_ids = {event.id for event in merged.behavior_events}
    preserved = [
        replace(event)
        for event in local.behavior_events
        if event.id not in remote_ids and event.id not in tombstones
    ]
    if preserved:
        merged.behavior_events.extend(preserved)
        logger.info("Preserved %d local events not yet in remote", len(preserved))

    remote_tombstones = set(remote.deleted_event_ids)
    new_tombstones = [event_id for event_id in local.deleted_event_ids if event_id not in remote_tombstones]
    return RemoteMergeOutcome(
        snapshot=merged,
        preserved_events=preserved,
        new_tombstones=new_tombstones,
    )


def _by_name(item) -> Hashable:
    return item.name


def _by_child_and_name(item) -> Hashable:
    return (item.child_id, item.name)


def _merge_by_name(
    cloud_items: List,
    local_items: List,
    id_map: Dict[str, str],
    key: Callable[[Any], Hashable] = _by_name,
) -> List:
    """Append local items whose key is new; map duplicate ids onto the cloud id."""
    merged = list(cloud_items)
    by_key = {key(item): item for item in cloud_items}
    for item in local_items:
        existing = by_key.get(key(item))
        if existing is None:
            merged.append(replace(item))
            by_key[key(item)] = item
        elif existing.id != item.id:
            id_map[item.id] = existing.id
    return merged


def _append_new(cloud_items: List, local_items: List) -> List:
    known = {item.id for item in cloud_items}
    return list(cloud_items) + [item for item in local_items if item.id not in known]


def merge_local_into_cloud(
    cloud: AppDataSnapshot,
    local: AppDataSnapshot,
    parent_id: str,
    parent_name: str,
) -> AppDataSnapshot:
    """Fold a device's local snapshot into existing cloud data.

    Children and behavior types are deduplicated by name, rewards by (child,
    name) and events by (timestamp, child, behavior type). Local events that
    reference an entity dropped as a duplicate are re-pointed at the cloud
    entity. Notes and reward history are additive logs; entries the cloud
    already holds by id are skipped. Family,
    settings, streaks, agreements, parents and the current parent come from
    the cloud.
    """
    child_ids: Dict[str, str] = {}
    type_ids: Dict[str, str] = {}
    reward_ids: Dict[str, str] = {}

    children = _merge_by_name(cloud.children, local.children, child_ids)
    behavior_types = _merge_by_name(cloud.behavior_types, local.behavior_types, type_ids)

    local_rewards = [
        replace(reward, child_id=child_ids.get(reward.child_id, reward.child_id))
        for reward in local.rewards
    ]
    # rewards are per child, so two children may each own one with the same name
    rewards = _merge_by_name(cloud.rewards, local_rewards, reward_ids, key=_by_child_and_name)

    tombstone_list = _union_tombstones(cloud, local)
    tombstones = set(tombstone_list)
    events = _live_events(cloud.behavior_events, tombstones)
    seen_keys = {event.dedup_key() for event in events}
    added = 0
    for event in _live_events(local.behavior_events, tombstones):
        candidate = replace(
            event,
            child_id=child_ids.get(event.child_id, event.child_id),
            behavior_type_id=type_ids.get(event.behavior_type_id, event.behavior_type_id),
            reward_id=reward_ids.get(event.reward_id, event.reward_id) if event.reward_id else None,
        )
        key = candidate.dedup_key()
        if key in seen_keys:
            continue
        if not candidate.has_parent_attribution:
            candidate = candidate.with_parent_attribution(parent_id, parent_name)
        events.append(candidate)
        seen_keys.add(key)
        added += 1

    local_notes = [
        replace(note, child_id=child_ids.get(note.child_id, note.child_id) if note.child_id else None)
        for note in local.parent_notes
    ]
    local_history = [
        replace(
            item,
            child_id=child_ids.get(item.child_id, item.child_id),
            reward_id=reward_ids.get(item.reward_id, item.reward_id),
        )
        for item in local.reward_history_events
    ]

    merged = AppDataSnapshot(
        family=cloud.family,
        children=children,
        behavior_types=behavior_types,
        behavior_events=events,
        rewards=rewards,
        allowance_settings=cloud.allowance_settings,
        parent_notes=_append_new(cloud.parent_notes, local_notes),
        behavior_streaks=list(cloud.behavior_streaks),
        agreement_versions=list(cloud.agreement_versions),
        reward_history_events=_append_new(cloud.reward_history_events, local_history),
        parents=list(cloud.parents),
        current_parent_id=cloud.current_parent_id,
        has_completed_onboarding=cloud.has_completed_onboarding or local.has_completed_onboarding,
        deleted_event_ids=tombstone_list,
    ).copy()

    logger.info(
        "Merged local data: %d children, %d behavior types, %d rewards, %d new events",
        len(children) - len(cloud.children),
        len(behavior_types) - len(cloud.behavior_types),
        len(rewards) - len(cloud.rewards),
        added,
    )
    return merged


__all__ = [
    "RemoteMergeOutcome",
    "is_destructive_update",
    "merge_local_into_cloud",
    "merge_remote_update",
]
