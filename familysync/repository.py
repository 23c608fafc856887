"""In-memory owner of the family snapshot with debounced local persistence."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from .errors import LocalStoreError
from .snapshot import (
    AgreementVersion,
    AllowanceSettings,
    AppDataSnapshot,
    BehaviorEvent,
    BehaviorType,
    Child,
    Family,
    ParentNote,
    Reward,
    RewardHistoryEvent,
)
from .store.local import LocalStore

logger = logging.getLogger("familysync.repository")

DataChangedHandler = Callable[[Optional[AppDataSnapshot]], None]


class Repository:
    """Single writer of the snapshot.

    Every mutation updates memory immediately and schedules a save after
    ``save_debounce`` seconds; a newer mutation restarts the timer. Once the
    save lands, ``on_data_changed`` is called with the snapshot as it was
    before the first mutation of the burst.
    """

    def __init__(
        self,
        local_store: LocalStore,
        save_debounce: float = 0.1,
        on_data_changed: Optional[DataChangedHandler] = None,
    ):
        self.local_store = local_store
        self.save_debounce = save_debounce
        self.on_data_changed = on_data_changed
        self._snapshot = self._load_or_empty()
        self._baseline: Optional[AppDataSnapshot] = None
        self._save_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self._pending_save = False
        self._pending_notify = False

    def _load_or_empty(self) -> AppDataSnapshot:
        try:
            snapshot = self.local_store.load()
        except LocalStoreError as exc:
            logger.error("%s; starting from an empty snapshot", exc)
            return AppDataSnapshot.empty()
        if snapshot is None:
            logger.info("No saved data found; starting from an empty snapshot")
            return AppDataSnapshot.empty()
        return snapshot

    @property
    def snapshot(self) -> AppDataSnapshot:
        """Live snapshot; mutate only through repository methods."""
        return self._snapshot

    @property
    def has_pending_save(self) -> bool:
        return self._pending_save

    # ------------------------------------------------------------------
    # Persistence

    def _begin_change(self) -> None:
        if self._baseline is None:
            self._baseline = self._snapshot.copy()

    def save(self, notify: bool = True) -> None:
        """Schedule a debounced save of the current snapshot."""
        self._pending_save = True
        self._pending_notify = self._pending_notify or notify
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save_sync()
            return
        self._save_task = loop.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.save_debounce)
        self._save_task = None
        await self._perform_save()

    async def _perform_save(self) -> None:
        if not self._pending_save:
            return
        self._pending_save = False
        notify = self._pending_notify
        self._pending_notify = False
        data = self._snapshot.copy()
        async with self._save_lock:
            try:
                await asyncio.to_thread(self.local_store.save, data)
            except LocalStoreError as exc:
                logger.error("Save failed: %s", exc)
        self._after_save(notify)

    def _save_sync(self) -> None:
        self._pending_save = False
        notify = self._pending_notify
        self._pending_notify = False
        try:
            self.local_store.save(self._snapshot.copy())
        except LocalStoreError as exc:
            logger.error("Save failed: %s", exc)
        self._after_save(notify)

    def _after_save(self, notify: bool) -> None:
        baseline = self._baseline
        self._baseline = None
        if notify and self.on_data_changed is not None:
            self.on_data_changed(baseline)

    async def flush(self) -> None:
        """Write the snapshot now, skipping any pending debounce."""
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        self._pending_save = True
        await self._perform_save()

    def replace(self, snapshot: AppDataSnapshot, notify: bool = True) -> None:
        """Swap in a whole snapshot, e.g. a merged remote state."""
        if notify:
            self._begin_change()
        self._snapshot = snapshot
        self.save(notify=notify)

    def reload(self) -> AppDataSnapshot:
        self._snapshot = self._load_or_empty()
        return self._snapshot

    def clear_all(self) -> None:
        """Drop all local data and start over; nothing is sent to the cloud."""
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = None
        self._pending_save = False
        self._pending_notify = False
        self._baseline = None
        self.local_store.clear()
        self._snapshot = AppDataSnapshot.empty()
        logger.info("Cleared all local data")

    # ------------------------------------------------------------------
    # Family and settings

    def update_family(self, family: Family) -> None:
        self._begin_change()
        self._snapshot.family = family
        self.save()

    def update_allowance_settings(self, settings: AllowanceSettings) -> None:
        self._begin_change()
        self._snapshot.allowance_settings = settings
        self.save()

    def complete_onboarding(self) -> None:
        self._begin_change()
        self._snapshot.has_completed_onboarding = True
        self.save()

    def set_current_parent(self, parent_id: Optional[str]) -> None:
        self._begin_change()
        self._snapshot.current_parent_id = parent_id
        self.save()

    # ------------------------------------------------------------------
    # Children

    def active_children(self) -> List[Child]:
        return [child for child in self._snapshot.children if not child.is_archived]

    def add_child(self, child: Child) -> Child:
        self._begin_change()
        self._snapshot.children.append(child)
        self.save()
        return child

    def update_child(self, child: Child) -> None:
        for index, existing in enumerate(self._snapshot.children):
            if existing.id == child.id:
                self._begin_change()
                self._snapshot.children[index] = child
                self.save()
                return

    def delete_child(self, child_id: str) -> None:
        self._begin_change()
        data = self._snapshot
        data.children = [child for child in data.children if child.id != child_id]
        for event in data.behavior_events:
            if event.child_id == child_id:
                data.record_deleted_event(event.id)
        data.behavior_events = [event for event in data.behavior_events if event.child_id != child_id]
        data.rewards = [reward for reward in data.rewards if reward.child_id != child_id]
        self.save()

    # ------------------------------------------------------------------
    # Behavior types

    def active_behavior_types(self) -> List[BehaviorType]:
        return [item for item in self._snapshot.behavior_types if item.is_active]

    def behavior_type_by_id(self, behavior_type_id: str) -> Optional[BehaviorType]:
        for item in self._snapshot.behavior_types:
            if item.id == behavior_type_id:
                return item
        return None

    def add_behavior_type(self, behavior_type: BehaviorType) -> BehaviorType:
        self._begin_change()
        self._snapshot.behavior_types.append(behavior_type)
        self.save()
        return behavior_type

    def update_behavior_type(self, behavior_type: BehaviorType) -> None:
        for index, existing in enumerate(self._snapshot.behavior_types):
            if existing.id == behavior_type.id:
                self._begin_change()
                self._snapshot.behavior_types[index] = behavior_type
                self.save()
                return

    def delete_behavior_type(self, behavior_type_id: str) -> None:
        self._begin_change()
        data = self._snapshot
        data.behavior_types = [item for item in data.behavior_types if item.id != behavior_type_id]
        for event in data.behavior_events:
            if event.behavior_type_id == behavior_type_id:
                data.record_deleted_event(event.id)
        data.behavior_events = [
            event for event in data.behavior_events if event.behavior_type_id != behavior_type_id
        ]
        self.save()

    # ------------------------------------------------------------------
    # Behavior events

    def events_for_child(self, child_id: str) -> List[BehaviorEvent]:
        return [event for event in self._snapshot.behavior_events if event.child_id == child_id]

    def add_behavior_event(self, event: BehaviorEvent) -> BehaviorEvent:
        self._begin_change()
        data = self._snapshot
        current = data.current_parent
        if current is not None and not event.has_parent_attribution:
            event = event.with_parent_attribution(current.id, current.display_name)
        data.behavior_events.append(event)
        child = data.child_by_id(event.child_id)
        if child is not None:
            child.total_points += event.points_applied
        self.save()
        return event

    def update_behavior_event(self, event: BehaviorEvent) -> None:
        for index, existing in enumerate(self._snapshot.behavior_events):
            if existing.id == event.id:
                self._begin_change()
                self._snapshot.behavior_events[index] = event
                self.save()
                return

    def delete_behavior_event(self, event_id: str) -> None:
        data = self._snapshot
        event = next((item for item in data.behavior_events if item.id == event_id), None)
        if event is None:
            return
        self._begin_change()
        child = data.child_by_id(event.child_id)
        if child is not None:
            child.total_points -= event.points_applied
        data.behavior_events = [item for item in data.behavior_events if item.id != event_id]
        data.record_deleted_event(event_id)
        self.save()

    # ------------------------------------------------------------------
    # Rewards

    def rewards_for_child(self, child_id: str) -> List[Reward]:
        return [reward for reward in self._snapshot.rewards if reward.child_id == child_id]

    def add_reward(self, reward: Reward) -> Reward:
        self._begin_change()
        self._snapshot.rewards.append(reward)
        self.save()
        return reward

    def update_reward(self, reward: Reward) -> None:
        for index, existing in enumerate(self._snapshot.rewards):
            if existing.id == reward.id:
                self._begin_change()
                self._snapshot.rewards[index] = reward
                self.save()
                return

    def delete_reward(self, reward_id: str) -> None:
        self._begin_change()
        self._snapshot.rewards = [reward for reward in self._snapshot.rewards if reward.id != reward_id]
        self.save()

    def add_reward_history_event(self, event: RewardHistoryEvent) -> None:
        self._begin_change()
        self._snapshot.reward_history_events.append(event)
        self.save()

    # ------------------------------------------------------------------
    # Notes and agreements

    def add_parent_note(self, note: ParentNote) -> ParentNote:
        self._begin_change()
        current = self._snapshot.current_parent
        if current is not None and note.logged_by_parent_id is None:
            note.logged_by_parent_id = current.id
            note.logged_by_parent_name = current.display_name
        self._snapshot.parent_notes.append(note)
        self.save()
        return note

    def add_agreement_version(self, agreement: AgreementVersion) -> None:
        self._begin_change()
        if agreement.is_current:
            for existing in self._snapshot.agreement_versions:
                if existing.child_id == agreement.child_id:
                    existing.is_current = False
        self._snapshot.agreement_versions.append(agreement)
        self.save()

    def current_agreement(self, child_id: str) -> Optional[AgreementVersion]:
        for agreement in self._snapshot.agreement_versions:
            if agreement.child_id == child_id and agreement.is_current:
                return agreement
        return None


__all__ = ["DataChangedHandler", "Repository"]
