"""Aggregate snapshot model shared by every replica."""

from __future__ import annotations

from .app_data import AppDataSnapshot, SNAPSHOT_FORMAT_VERSION
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
    new_id,
    random_invite_code,
    utcnow,
)

__all__ = [
    # Aggregate
    "AppDataSnapshot",
    "SNAPSHOT_FORMAT_VERSION",
    # Entities
    "AgreementVersion",
    "AllowanceSettings",
    "BehaviorEvent",
    "BehaviorStreak",
    "BehaviorType",
    "Child",
    "Family",
    "Parent",
    "ParentNote",
    "Reward",
    "RewardHistoryEvent",
    # Helpers
    "default_behavior_types",
    "new_id",
    "random_invite_code",
    "utcnow",
]
