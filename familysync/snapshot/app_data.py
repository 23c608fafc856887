"""The aggregate snapshot synchronized between the local and remote replicas."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .entities import (
    AgreementVersion,
    AllowanceSettings,
    BehaviorEvent,
    BehaviorStreak,
    BehaviorType,
    Child,
    Family,
    Parent,
    ParentNote,
    Reward,
    RewardHistoryEvent,
    default_behavior_types,
)

SNAPSHOT_FORMAT_VERSION = 1


@dataclass
class AppDataSnapshot:
    """Whole application state; the only unit that is ever persisted."""

    family: Family = field(default_factory=Family)
    children: List[Child] = field(default_factory=list)
    behavior_types: List[BehaviorType] = field(default_factory=list)
    behavior_events: List[BehaviorEvent] = field(default_factory=list)
    rewards: List[Reward] = field(default_factory=list)
    allowance_settings: AllowanceSettings = field(default_factory=AllowanceSettings)
    parent_notes: List[ParentNote] = field(default_factory=list)
    behavior_streaks: List[BehaviorStreak] = field(default_factory=list)
    agreement_versions: List[AgreementVersion] = field(default_factory=list)
    reward_history_events: List[RewardHistoryEvent] = field(default_factory=list)
    parents: List[Parent] = field(default_factory=list)
    current_parent_id: Optional[str] = None
    has_completed_onboarding: bool = False
    deleted_event_ids: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "AppDataSnapshot":
        """Fresh first-launch state with the default behavior catalogue."""
        return cls(behavior_types=default_behavior_types())

    def copy(self) -> "AppDataSnapshot":
        return deepcopy(self)

    @property
    def current_parent(self) -> Optional[Parent]:
        if self.current_parent_id is None:
            return None
        return self.parent_by_id(self.current_parent_id)

    def parent_by_id(self, parent_id: str) -> Optional[Parent]:
        for parent in self.parents:
            if parent.id == parent_id:
                return parent
        return None

    def child_by_id(self, child_id: str) -> Optional[Child]:
        for child in self.children:
            if child.id == child_id:
                return child
        return None

    def add_parent(self, parent: Parent) -> None:
        """Insert or replace a parent record and keep family membership in step."""
        self.parents = [existing for existing in self.parents if existing.id != parent.id]
        self.parents.append(parent)
        self.family.add_member(parent.id)

    def is_event_deleted(self, event_id: str) -> bool:
        return event_id in self.deleted_event_ids

    def record_deleted_event(self, event_id: str) -> None:
        if event_id not in self.deleted_event_ids:
            self.deleted_event_ids.append(event_id)

    def counts(self) -> Dict[str, int]:
        return {
            "children": len(self.children),
            "behavior_types": len(self.behavior_types),
            "behavior_events": len(self.behavior_events),
            "rewards": len(self.rewards),
            "parent_notes": len(self.parent_notes),
            "behavior_streaks": len(self.behavior_streaks),
            "agreement_versions": len(self.agreement_versions),
            "reward_history_events": len(self.reward_history_events),
            "parents": len(self.parents),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SNAPSHOT_FORMAT_VERSION,
            "family": self.family.to_dict(),
            "children": [child.to_dict() for child in self.children],
            "behavior_types": [item.to_dict() for item in self.behavior_types],
            "behavior_events": [event.to_dict() for event in self.behavior_events],
            "rewards": [reward.to_dict() for reward in self.rewards],
            "allowance_settings": self.allowance_settings.to_dict(),
            "parent_notes": [note.to_dict() for note in self.parent_notes],
            "behavior_streaks": [streak.to_dict() for streak in self.behavior_streaks],
            "agreement_versions": [item.to_dict() for item in self.agreement_versions],
            "reward_history_events": [item.to_dict() for item in self.reward_history_events],
            "parents": [parent.to_dict() for parent in self.parents],
            "current_parent_id": self.current_parent_id,
            "has_completed_onboarding": self.has_completed_onboarding,
            "deleted_event_ids": list(self.deleted_event_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppDataSnapshot":
        family_data = data.get("family")
        return cls(
            family=Family.from_dict(family_data) if family_data else Family(),
            children=[Child.from_dict(item) for item in data.get("children", [])],
            behavior_types=[BehaviorType.from_dict(item) for item in data.get("behavior_types", [])],
            behavior_events=[BehaviorEvent.from_dict(item) for item in data.get("behavior_events", [])],
            rewards=[Reward.from_dict(item) for item in data.get("rewards", [])],
            allowance_settings=AllowanceSettings.from_dict(data.get("allowance_settings") or {}),
            parent_notes=[ParentNote.from_dict(item) for item in data.get("parent_notes", [])],
            behavior_streaks=[BehaviorStreak.from_dict(item) for item in data.get("behavior_streaks", [])],
            agreement_versions=[
                AgreementVersion.from_dict(item) for item in data.get("agreement_versions", [])
            ],
            reward_history_events=[
                RewardHistoryEvent.from_dict(item) for item in data.get("reward_history_events", [])
            ],
            parents=[Parent.from_dict(item) for item in data.get("parents", [])],
            current_parent_id=data.get("current_parent_id"),
            has_completed_onboarding=bool(data.get("has_completed_onboarding", False)),
            deleted_event_ids=list(data.get("deleted_event_ids", [])),
        )


__all__ = ["AppDataSnapshot", "SNAPSHOT_FORMAT_VERSION"]
