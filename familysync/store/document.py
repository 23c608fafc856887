"""Remote store backed by a hierarchical document database.

Layout per family::

    families/{family_id}                      root: family, settings, flags
    families/{family_id}/{collection}/{id}    one document per entity

The :class:`DocumentDatabase` interface is the seam to a real cloud SDK. The
:class:`InMemoryDocumentDatabase` implementation is shared by several
simulated devices in one process, with optional latency and injected faults.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..errors import (
    ConfigurationError,
    ExpiredInviteCodeError,
    InvalidInviteCodeError,
    RemoteStoreError,
    RemoteTimeoutError,
)
from ..snapshot import (
    AgreementVersion,
    AllowanceSettings,
    AppDataSnapshot,
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
    utcnow,
)
from ..snapshot.entities import from_iso
from .merge import merge_local_into_cloud
from .remote import RemoteChangeHandler, RemoteSettings, RemoteStore, Subscription

logger = logging.getLogger("familysync.store.document")

FAMILIES = "families"

# attribute name on the snapshot -> (sub-collection, entity class)
SUBCOLLECTIONS: Dict[str, Tuple[str, Any]] = {
    "children": ("children", Child),
    "behavior_types": ("behavior_types", BehaviorType),
    "behavior_events": ("behavior_events", BehaviorEvent),
    "rewards": ("rewards", Reward),
    "parent_notes": ("parent_notes", ParentNote),
    "behavior_streaks": ("behavior_streaks", BehaviorStreak),
    "agreement_versions": ("agreement_versions", AgreementVersion),
    "reward_history_events": ("reward_history_events", RewardHistoryEvent),
    "parents": ("parents", Parent),
}

ROOT_ONLY_FIELDS = (
    "allowance_settings",
    "has_completed_onboarding",
    "current_parent_id",
    "deleted_event_ids",
    "updated_at",
    "updated_by",
)


def family_path(family_id: str) -> str:
    return f"{FAMILIES}/{family_id}"


def _parent_path(path: str) -> str:
    return path.rsplit("/", 1)[0]


@dataclass(frozen=True)
class ArrayUnion:
    """Field transform that appends values missing from an array field."""

    values: Tuple[Any, ...]


@dataclass
class WriteBatch:
    """Ordered set/delete operations committed all-or-nothing."""

    operations: List[Tuple[str, str, Optional[Dict[str, Any]], bool]] = field(default_factory=list)

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self.operations.append(("set", path, deepcopy(data), merge))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.operations.append(("delete", path, None, False))
        return self

    def __len__(self) -> int:
        return len(self.operations)


DocumentListener = Callable[[Optional[Dict[str, Any]]], None]


class ListenerRegistration:
    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self.removed = False

    def remove(self) -> None:
        if not self.removed:
            self.removed = True
            self._remove()


class DocumentDatabase(ABC):
    """Minimal async document database used by :class:`DocumentRemoteStore`."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Return every document directly under ``collection`` keyed by id."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        field_name: str,
        op: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        """Filter a collection with ``==`` or ``array_contains``."""
        pass

    @abstractmethod
    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        pass

    @abstractmethod
    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        """Patch fields of an existing document; missing documents raise."""
        pass

    @abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        pass

    @abstractmethod
    def listen(self, path: str, callback: DocumentListener) -> ListenerRegistration:
        """Call ``callback`` after every committed change to ``path``."""
        pass

    def batch(self) -> WriteBatch:
        return WriteBatch()


class InMemoryDocumentDatabase(DocumentDatabase):
    """Process-local document database.

    ``latency`` delays every call. ``inject_failure`` queues exceptions raised
    by the next calls, in order. Listeners fire on the event loop after the
    write that changed their document, never on registration.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._listeners: Dict[str, List[DocumentListener]] = {}
        self._failures: List[BaseException] = []
        self._lock = asyncio.Lock()
        self.commit_count = 0

    def inject_failure(self, error: BaseException, times: int = 1) -> None:
        self._failures.extend([error] * times)

    def clear_failures(self) -> None:
        self._failures.clear()

    @property
    def document_count(self) -> int:
        return len(self._documents)

    def peek(self, path: str) -> Optional[Dict[str, Any]]:
        """Synchronous read used by tests and the status display."""
        data = self._documents.get(path)
        return deepcopy(data) if data is not None else None

    async def _enter(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failures:
            raise self._failures.pop(0)

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        await self._enter()
        return self.peek(path)

    async def list(self, collection: str) -> Dict[str, Dict[str, Any]]:
        await self._enter()
        return {
            path.rsplit("/", 1)[1]: deepcopy(data)
            for path, data in self._documents.items()
            if _parent_path(path) == collection
        }

    async def query(
        self,
        collection: str,
        field_name: str,
        op: str,
        value: Any,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Dict[str, Any]]]:
        await self._enter()
        matches: List[Tuple[str, Dict[str, Any]]] = []
        for path, data in self._documents.items():
            if _parent_path(path) != collection:
                continue
            current = data.get(field_name)
            if op == "==":
                matched = current == value
            elif op == "array_contains":
                matched = isinstance(current, list) and value in current
            else:
                raise ValueError(f"Unsupported query operator: {op}")
            if matched:
                matches.append((path.rsplit("/", 1)[1], deepcopy(data)))
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self.commit(WriteBatch().set(path, data, merge=merge))

    async def update(self, path: str, changes: Dict[str, Any]) -> None:
        await self._enter()
        async with self._lock:
            current = self._documents.get(path)
            if current is None:
                raise RemoteStoreError("Document not found", context={"path": path})
            updated = deepcopy(current)
            for key, value in changes.items():
                if isinstance(value, ArrayUnion):
                    existing = list(updated.get(key) or [])
                    for item in value.values:
                        if item not in existing:
                            existing.append(item)
                    updated[key] = existing
                else:
                    updated[key] = deepcopy(value)
            self._documents[path] = updated
        self._notify({path})

    async def commit(self, batch: WriteBatch) -> None:
        await self._enter()
        changed: Set[str] = set()
        async with self._lock:
            staged = dict(self._documents)
            for action, path, data, merge in batch.operations:
                if action == "delete":
                    if staged.pop(path, None) is not None:
                        changed.add(path)
                    continue
                if merge and path in staged:
                    combined = deepcopy(staged[path])
                    combined.update(deepcopy(data))
                    staged[path] = combined
                else:
                    staged[path] = deepcopy(data)
                changed.add(path)
            self._documents = staged
            self.commit_count += 1
        self._notify(changed)

    def listen(self, path: str, callback: DocumentListener) -> ListenerRegistration:
        self._listeners.setdefault(path, []).append(callback)

        def _remove() -> None:
            callbacks = self._listeners.get(path, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return ListenerRegistration(_remove)

    def _notify(self, paths: Set[str]) -> None:
        if not paths:
            return
        loop = asyncio.get_running_loop()
        for path in paths:
            for callback in list(self._listeners.get(path, [])):
                loop.call_soon(callback, self.peek(path))


class DocumentSubscription(Subscription):
    """Realtime handle; cancelling also stops any reload still in flight."""

    def __init__(self) -> None:
        self._registration: Optional[ListenerRegistration] = None
        self._tasks: Set[asyncio.Task] = set()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._registration is not None:
            self._registration.remove()
        for task in list(self._tasks):
            task.cancel()
        logger.debug("Realtime subscription cancelled")


class DocumentRemoteStore(RemoteStore):
    """:class:`RemoteStore` implementation over a :class:`DocumentDatabase`."""

    def __init__(
        self,
        database: DocumentDatabase,
        user_id: str,
        family_id: Optional[str] = None,
        settings: Optional[RemoteSettings] = None,
    ):
        super().__init__(user_id, family_id)
        self.database = database
        self.settings = settings or RemoteSettings()

    async def _bounded(self, awaitable: Awaitable[Any], action: str, timeout: Optional[float] = None) -> Any:
        limit = self.settings.operation_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("Remote %s timed out after %.1fs", action, limit)
            raise RemoteTimeoutError(action, limit) from exc

    def _require_family_id(self) -> str:
        if not self.family_id:
            raise ConfigurationError("No family ID set", context={"user_id": self.user_id})
        return self.family_id

    # ------------------------------------------------------------------
    # Snapshot load/save

    async def load_snapshot(self) -> Optional[AppDataSnapshot]:
        if not self.family_id:
            return None
        return await self._bounded(self._load(self.family_id), "Load")

    async def _load(self, family_id: str) -> Optional[AppDataSnapshot]:
        root_path = family_path(family_id)
        names = list(SUBCOLLECTIONS)
        results = await asyncio.gather(
            self.database.get(root_path),
            *(self.database.list(f"{root_path}/{SUBCOLLECTIONS[name][0]}") for name in names),
        )
        root = results[0]
        if root is None:
            logger.info("No remote data for family %s", family_id)
            return None

        collections: Dict[str, List[Any]] = {}
        for name, documents in zip(names, results[1:]):
            entity_cls = SUBCOLLECTIONS[name][1]
            try:
                items = [entity_cls.from_dict(doc) for doc in documents.values()]
            except (KeyError, TypeError, ValueError) as exc:
                raise RemoteStoreError(
                    f"Failed to decode {name}: {exc}",
                    context={"family_id": family_id},
                ) from exc
            collections[name] = items
        return self._assemble(family_id, root, collections)

    def _assemble(
        self,
        family_id: str,
        root: Dict[str, Any],
        collections: Dict[str, List[Any]],
    ) -> AppDataSnapshot:
        family_data = {key: value for key, value in root.items() if key not in ROOT_ONLY_FIELDS}
        family_data.setdefault("id", family_id)
        events: List[BehaviorEvent] = collections["behavior_events"]
        events.sort(key=lambda event: event.timestamp)
        notes: List[ParentNote] = collections["parent_notes"]
        notes.sort(key=lambda note: note.date)
        history: List[RewardHistoryEvent] = collections["reward_history_events"]
        history.sort(key=lambda item: item.timestamp)
        return AppDataSnapshot(
            family=Family.from_dict(family_data),
            children=collections["children"],
            behavior_types=collections["behavior_types"] or default_behavior_types(),
            behavior_events=events,
            rewards=collections["rewards"],
            allowance_settings=AllowanceSettings.from_dict(root.get("allowance_settings") or {}),
            parent_notes=notes,
            behavior_streaks=collections["behavior_streaks"],
            agreement_versions=collections["agreement_versions"],
            reward_history_events=history,
            parents=collections["parents"],
            current_parent_id=root.get("current_parent_id"),
            has_completed_onboarding=bool(root.get("has_completed_onboarding", False)),
            deleted_event_ids=list(root.get("deleted_event_ids") or []),
        )

    async def save_snapshot(self, snapshot: AppDataSnapshot) -> None:
        family_id = self._require_family_id()
        batch = self._build_save_batch(family_id, snapshot)
        await self._bounded(self.database.commit(batch), "Save")
        logger.info(
            "Saved family %s (%d children, %d events, %d writes)",
            family_id,
            len(snapshot.children),
            len(snapshot.behavior_events),
            len(batch),
        )

    def _build_save_batch(self, family_id: str, snapshot: AppDataSnapshot) -> WriteBatch:
        root_path = family_path(family_id)
        batch = self.database.batch()

        root = snapshot.family.to_dict()
        root["id"] = family_id
        member_ids = list(snapshot.family.member_ids)
        if self.user_id not in member_ids:
            member_ids.append(self.user_id)
        root["member_ids"] = member_ids
        root["allowance_settings"] = snapshot.allowance_settings.to_dict()
        root["has_completed_onboarding"] = snapshot.has_completed_onboarding
        root["current_parent_id"] = snapshot.current_parent_id
        root["deleted_event_ids"] = list(snapshot.deleted_event_ids)
        root["updated_at"] = utcnow().isoformat()
        root["updated_by"] = self.user_id
        batch.set(root_path, root, merge=True)

        tombstones = set(snapshot.deleted_event_ids)
        for name, (collection, _) in SUBCOLLECTIONS.items():
            for item in getattr(snapshot, name):
                if name == "behavior_events" and item.id in tombstones:
                    continue
                batch.set(f"{root_path}/{collection}/{item.id}", item.to_dict())
        for event_id in snapshot.deleted_event_ids:
            batch.delete(f"{root_path}/behavior_events/{event_id}")
        return batch

    async def clear_all(self) -> None:
        family_id = self._require_family_id()
        await self._bounded(self._clear(family_id), "Clear", timeout=self.settings.initial_load_timeout)

    async def _clear(self, family_id: str) -> None:
        root_path = family_path(family_id)
        batch = self.database.batch()
        for collection, _ in SUBCOLLECTIONS.values():
            documents = await self.database.list(f"{root_path}/{collection}")
            for doc_id in documents:
                batch.delete(f"{root_path}/{collection}/{doc_id}")
        if len(batch):
            await self.database.commit(batch)
        logger.info("Cleared %d remote documents for family %s", len(batch), family_id)

    # ------------------------------------------------------------------
    # Realtime

    def start_realtime_sync(self, on_change: RemoteChangeHandler) -> Optional[Subscription]:
        if not self.family_id:
            logger.warning("Cannot start realtime sync without a family id")
            return None
        family_id = self.family_id
        subscription = DocumentSubscription()

        async def _reload() -> None:
            try:
                snapshot = await self._bounded(self._load(family_id), "Load")
            except Exception as exc:
                logger.warning("Failed to load data on remote change: %s", exc)
                return
            if snapshot is None or subscription.cancelled:
                return
            result = on_change(snapshot)
            if inspect.isawaitable(result):
                await result

        def _on_root_changed(_data: Optional[Dict[str, Any]]) -> None:
            if subscription.cancelled:
                return
            subscription.track(asyncio.ensure_future(_reload()))

        subscription._registration = self.database.listen(family_path(family_id), _on_root_changed)
        logger.info("Realtime sync started for family %s", family_id)
        return subscription

    # ------------------------------------------------------------------
    # Family lifecycle

    async def create_family(self, family: Family) -> str:
        family_id = family.id
        data = family.to_dict()
        data["member_ids"] = [self.user_id]
        data["created_by_parent_id"] = family.created_by_parent_id or self.user_id
        data["created_at"] = utcnow().isoformat()
        await self._bounded(self.database.set(family_path(family_id), data), "Create family")
        self.family_id = family_id
        logger.info("Created family %s for user %s", family_id, self.user_id)
        return family_id

    async def lookup_family_id(self, user_id: str) -> Optional[str]:
        matches = await self._bounded(
            self.database.query(FAMILIES, "member_ids", "array_contains", user_id, limit=1),
            "Lookup family",
        )
        if not matches:
            logger.info("No family found for user %s", user_id)
            return None
        family_id = matches[0][0]
        self.family_id = family_id
        logger.info("Found family %s for user %s", family_id, user_id)
        return family_id

    async def join_family(self, invite_code: str) -> str:
        code = invite_code.strip().upper()
        matches = await self._bounded(
            self.database.query(FAMILIES, "invite_code", "==", code, limit=1),
            "Join family",
        )
        if not matches:
            raise InvalidInviteCodeError("Invalid invite code", context={"invite_code": code})
        family_id, data = matches[0]
        expires_at = from_iso(data.get("invite_code_expires_at"))
        if expires_at is not None and expires_at < utcnow():
            raise ExpiredInviteCodeError("Invite code has expired", context={"invite_code": code})

        await self._bounded(
            self.database.update(family_path(family_id), {"member_ids": ArrayUnion((self.user_id,))}),
            "Join family",
        )
        self.family_id = family_id
        logger.info("User %s joined family %s", self.user_id, family_id)
        return family_id

    async def generate_invite_code(self, valid_for_days: Optional[int] = None) -> str:
        family_id = self._require_family_id()
        days = self.settings.invite_valid_days if valid_for_days is None else valid_for_days
        holder = Family(id=family_id)
        code = holder.generate_invite_code(valid_for_days=days)
        await self._bounded(
            self.database.update(
                family_path(family_id),
                {
                    "invite_code": code,
                    "invite_code_expires_at": holder.invite_code_expires_at.isoformat(),
                },
            ),
            "Generate invite code",
        )
        logger.info("Generated invite code for family %s (valid %d days)", family_id, days)
        return code

    async def merge_local_data(
        self,
        local: AppDataSnapshot,
        parent_id: str,
        parent_name: str,
    ) -> None:
        family_id = self._require_family_id()
        cloud = await self.load_snapshot()
        if cloud is None:
            cloud = AppDataSnapshot(family=Family(id=family_id, member_ids=[self.user_id]))
        merged = merge_local_into_cloud(cloud, local, parent_id, parent_name)
        if merged.parent_by_id(parent_id) is None:
            role = "parent2" if merged.parents else "parent1"
            merged.add_parent(Parent(id=parent_id, display_name=parent_name, role=role))
        await self.save_snapshot(merged)
        logger.info("Merged local data into family %s", family_id)


__all__ = [
    "ArrayUnion",
    "DocumentDatabase",
    "DocumentRemoteStore",
    "DocumentSubscription",
    "InMemoryDocumentDatabase",
    "ListenerRegistration",
    "SUBCOLLECTIONS",
    "WriteBatch",
    "family_path",
]
