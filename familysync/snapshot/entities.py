"""Entity records carried inside the aggregate snapshot."""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

INVITE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O or 1/I
INVITE_CODE_LENGTH = 6
DEFAULT_INVITE_VALID_DAYS = 7


def new_id() -> str:
    """Generate a globally unique entity identifier."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def random_invite_code() -> str:
    """Generate a 6-character code without visually confusable characters."""
    return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(INVITE_CODE_LENGTH))


@dataclass
class Family:
    """Sharing boundary for a snapshot; members are parent user ids."""

    id: str = field(default_factory=new_id)
    name: str = "My Family"
    member_ids: List[str] = field(default_factory=list)
    invite_code: Optional[str] = None
    invite_code_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    created_by_parent_id: Optional[str] = None

    def add_member(self, parent_id: str) -> None:
        if parent_id not in self.member_ids:
            self.member_ids.append(parent_id)

    def remove_member(self, parent_id: str) -> None:
        self.member_ids = [member for member in self.member_ids if member != parent_id]

    def generate_invite_code(
        self,
        valid_for_days: int = DEFAULT_INVITE_VALID_DAYS,
        now: Optional[datetime] = None,
    ) -> str:
        self.invite_code = random_invite_code()
        self.invite_code_expires_at = (now or utcnow()) + timedelta(days=valid_for_days)
        return self.invite_code

    def is_invite_code_valid(self, now: Optional[datetime] = None) -> bool:
        if not self.invite_code:
            return False
        if self.invite_code_expires_at is None:
            return True
        return self.invite_code_expires_at > (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "member_ids": list(self.member_ids),
            "invite_code": self.invite_code,
            "invite_code_expires_at": to_iso(self.invite_code_expires_at),
            "created_at": to_iso(self.created_at),
            "created_by_parent_id": self.created_by_parent_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Family":
        return cls(
            id=data["id"],
            name=data.get("name", "My Family"),
            member_ids=list(data.get("member_ids", [])),
            invite_code=data.get("invite_code"),
            invite_code_expires_at=from_iso(data.get("invite_code_expires_at")),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            created_by_parent_id=data.get("created_by_parent_id"),
        )


@dataclass
class Parent:
    """A caregiver who can log events; ``id`` is the auth user id."""

    id: str
    display_name: str = "Parent"
    email: Optional[str] = None
    role: str = "parent1"
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "email": self.email,
            "role": self.role,
            "created_at": to_iso(self.created_at),
            "last_active_at": to_iso(self.last_active_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Parent":
        return cls(
            id=data["id"],
            display_name=data.get("display_name", "Parent"),
            email=data.get("email"),
            role=data.get("role", "parent1"),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            last_active_at=from_iso(data.get("last_active_at")) or utcnow(),
        )


@dataclass
class Child:
    name: str
    id: str = field(default_factory=new_id)
    age: Optional[int] = None
    color_tag: str = "blue"
    total_points: int = 0
    is_archived: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "age": self.age,
            "color_tag": self.color_tag,
            "total_points": self.total_points,
            "is_archived": self.is_archived,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Child":
        return cls(
            id=data["id"],
            name=data["name"],
            age=data.get("age"),
            color_tag=data.get("color_tag", "blue"),
            total_points=int(data.get("total_points", 0)),
            is_archived=bool(data.get("is_archived", False)),
        )


@dataclass
class BehaviorType:
    name: str
    id: str = field(default_factory=new_id)
    category: str = "positive"  # routine_positive, positive, negative
    default_points: int = 1
    is_active: bool = True
    is_custom: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "default_points": self.default_points,
            "is_active": self.is_active,
            "is_custom": self.is_custom,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorType":
        return cls(
            id=data["id"],
            name=data["name"],
            category=data.get("category", "positive"),
            default_points=int(data.get("default_points", 1)),
            is_active=bool(data.get("is_active", True)),
            is_custom=bool(data.get("is_custom", False)),
        )


@dataclass
class BehaviorEvent:
    """A logged behavior, attributed to the parent who logged it when known."""

    child_id: str
    behavior_type_id: str
    points_applied: int
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    note: Optional[str] = None
    reward_id: Optional[str] = None
    earned_allowance: Optional[float] = None
    logged_by_parent_id: Optional[str] = None
    logged_by_parent_name: Optional[str] = None

    @property
    def has_parent_attribution(self) -> bool:
        return self.logged_by_parent_id is not None

    def with_parent_attribution(self, parent_id: str, parent_name: str) -> "BehaviorEvent":
        return replace(
            self,
            logged_by_parent_id=parent_id,
            logged_by_parent_name=parent_name,
        )

    def dedup_key(self) -> tuple:
        return (self.timestamp, self.child_id, self.behavior_type_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "behavior_type_id": self.behavior_type_id,
            "timestamp": to_iso(self.timestamp),
            "points_applied": self.points_applied,
            "note": self.note,
            "reward_id": self.reward_id,
            "earned_allowance": self.earned_allowance,
            "logged_by_parent_id": self.logged_by_parent_id,
            "logged_by_parent_name": self.logged_by_parent_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorEvent":
        return cls(
            id=data["id"],
            child_id=data["child_id"],
            behavior_type_id=data["behavior_type_id"],
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
            points_applied=int(data.get("points_applied", 0)),
            note=data.get("note"),
            reward_id=data.get("reward_id"),
            earned_allowance=data.get("earned_allowance"),
            logged_by_parent_id=data.get("logged_by_parent_id"),
            logged_by_parent_name=data.get("logged_by_parent_name"),
        )


@dataclass
class Reward:
    child_id: str
    name: str
    target_points: int
    id: str = field(default_factory=new_id)
    is_redeemed: bool = False
    redeemed_date: Optional[datetime] = None
    created_date: datetime = field(default_factory=utcnow)
    priority: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "name": self.name,
            "target_points": self.target_points,
            "is_redeemed": self.is_redeemed,
            "redeemed_date": to_iso(self.redeemed_date),
            "created_date": to_iso(self.created_date),
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reward":
        return cls(
            id=data["id"],
            child_id=data["child_id"],
            name=data["name"],
            target_points=int(data.get("target_points", 0)),
            is_redeemed=bool(data.get("is_redeemed", False)),
            redeemed_date=from_iso(data.get("redeemed_date")),
            created_date=from_iso(data.get("created_date")) or utcnow(),
            priority=int(data.get("priority", 0)),
        )


@dataclass
class AllowanceSettings:
    is_enabled: bool = False
    currency_code: str = "USD"
    points_per_unit_currency: float = 10.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_enabled": self.is_enabled,
            "currency_code": self.currency_code,
            "points_per_unit_currency": self.points_per_unit_currency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AllowanceSettings":
        return cls(
            is_enabled=bool(data.get("is_enabled", False)),
            currency_code=data.get("currency_code", "USD"),
            points_per_unit_currency=float(data.get("points_per_unit_currency", 10.0)),
        )


@dataclass
class ParentNote:
    content: str
    id: str = field(default_factory=new_id)
    date: datetime = field(default_factory=utcnow)
    child_id: Optional[str] = None
    note_type: str = "good_moment"  # parent_win, good_moment, reflection
    is_shared_with_partner: bool = True
    logged_by_parent_id: Optional[str] = None
    logged_by_parent_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": to_iso(self.date),
            "child_id": self.child_id,
            "content": self.content,
            "note_type": self.note_type,
            "is_shared_with_partner": self.is_shared_with_partner,
            "logged_by_parent_id": self.logged_by_parent_id,
            "logged_by_parent_name": self.logged_by_parent_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParentNote":
        return cls(
            id=data["id"],
            date=from_iso(data.get("date")) or utcnow(),
            child_id=data.get("child_id"),
            content=data.get("content", ""),
            note_type=data.get("note_type", "good_moment"),
            is_shared_with_partner=bool(data.get("is_shared_with_partner", True)),
            logged_by_parent_id=data.get("logged_by_parent_id"),
            logged_by_parent_name=data.get("logged_by_parent_name"),
        )


@dataclass
class BehaviorStreak:
    child_id: str
    behavior_type_id: str
    id: str = field(default_factory=new_id)
    current_streak: int = 0
    longest_streak: int = 0
    last_completed_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "behavior_type_id": self.behavior_type_id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_completed_date": to_iso(self.last_completed_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BehaviorStreak":
        return cls(
            id=data["id"],
            child_id=data["child_id"],
            behavior_type_id=data["behavior_type_id"],
            current_streak=int(data.get("current_streak", 0)),
            longest_streak=int(data.get("longest_streak", 0)),
            last_completed_date=from_iso(data.get("last_completed_date")),
        )


@dataclass
class AgreementVersion:
    child_id: str
    id: str = field(default_factory=new_id)
    covered_reward_ids: List[str] = field(default_factory=list)
    covered_behavior_ids: List[str] = field(default_factory=list)
    parent_signed_at: Optional[datetime] = None
    child_signed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    is_current: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "covered_reward_ids": list(self.covered_reward_ids),
            "covered_behavior_ids": list(self.covered_behavior_ids),
            "parent_signed_at": to_iso(self.parent_signed_at),
            "child_signed_at": to_iso(self.child_signed_at),
            "created_at": to_iso(self.created_at),
            "is_current": self.is_current,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgreementVersion":
        return cls(
            id=data["id"],
            child_id=data["child_id"],
            covered_reward_ids=list(data.get("covered_reward_ids", [])),
            covered_behavior_ids=list(data.get("covered_behavior_ids", [])),
            parent_signed_at=from_iso(data.get("parent_signed_at")),
            child_signed_at=from_iso(data.get("child_signed_at")),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            is_current=bool(data.get("is_current", True)),
        )


@dataclass
class RewardHistoryEvent:
    """Milestone in a reward's life: earned, given or expired."""

    child_id: str
    reward_id: str
    reward_name: str
    event_type: str  # earned, given, expired
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    stars_required: int = 0
    stars_earned_at_event: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child_id": self.child_id,
            "reward_id": self.reward_id,
            "reward_name": self.reward_name,
            "event_type": self.event_type,
            "timestamp": to_iso(self.timestamp),
            "stars_required": self.stars_required,
            "stars_earned_at_event": self.stars_earned_at_event,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardHistoryEvent":
        return cls(
            id=data["id"],
            child_id=data["child_id"],
            reward_id=data["reward_id"],
            reward_name=data.get("reward_name", ""),
            event_type=data.get("event_type", "earned"),
            timestamp=from_iso(data.get("timestamp")) or utcnow(),
            stars_required=int(data.get("stars_required", 0)),
            stars_earned_at_event=int(data.get("stars_earned_at_event", 0)),
        )


def default_behavior_types() -> List[BehaviorType]:
    """Seed catalogue for a fresh snapshot; ids are new on every call."""
    return [
        BehaviorType(name="Morning routine completed", category="routine_positive", default_points=5),
        BehaviorType(name="Bedtime routine completed", category="routine_positive", default_points=5),
        BehaviorType(name="Homework completed", category="routine_positive", default_points=5),
        BehaviorType(name="Brushed teeth", category="routine_positive", default_points=2),
        BehaviorType(name="Made bed", category="routine_positive", default_points=2),
        BehaviorType(name="Shared with sibling", category="positive", default_points=3),
        BehaviorType(name="Kind words", category="positive", default_points=2),
        BehaviorType(name="Hitting", category="negative", default_points=-3),
    ]


__all__ = [
    "AgreementVersion",
    "AllowanceSettings",
    "BehaviorEvent",
    "BehaviorStreak",
    "BehaviorType",
    "Child",
    "DEFAULT_INVITE_VALID_DAYS",
    "Family",
    "INVITE_CODE_ALPHABET",
    "INVITE_CODE_LENGTH",
    "Parent",
    "ParentNote",
    "Reward",
    "RewardHistoryEvent",
    "default_behavior_types",
    "from_iso",
    "new_id",
    "random_invite_code",
    "to_iso",
    "utcnow",
]
