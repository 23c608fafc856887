"""Sync coordinator: decides when to push, pull or merge.

The coordinator is the only component that talks to the remote store. It
listens to connectivity and auth changes, runs the one-time migration of
local data into the cloud on sign-in, guards realtime merges against data
loss and serves as the executor of the retry queue.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..auth import AuthProvider, AuthUser
from ..connectivity import ConnectivityMonitor
from ..errors import OperationTimeoutError, RemoteTimeoutError
from ..events import EventChannel, RollbackEvent
from ..repository import Repository
from ..snapshot import AppDataSnapshot, Parent, utcnow
from ..store.local import FamilyIdStore
from ..store.merge import is_destructive_update, merge_local_into_cloud, merge_remote_update
from ..store.remote import RemoteStore, RemoteStoreFactory, Subscription
from .queue import OperationKind, Priority, RetryQueue, SyncHealth, SyncOperation

logger = logging.getLogger("familysync.sync.coordinator")

TIMEOUT_ERRORS = (RemoteTimeoutError, OperationTimeoutError, asyncio.TimeoutError)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    """Published, advisory sync state."""

    status: SyncStatus
    synced_at: Optional[datetime] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "SyncState":
        return cls(SyncStatus.IDLE)

    @classmethod
    def syncing(cls) -> "SyncState":
        return cls(SyncStatus.SYNCING)

    @classmethod
    def synced(cls, at: datetime) -> "SyncState":
        return cls(SyncStatus.SYNCED, synced_at=at)

    @classmethod
    def offline(cls) -> "SyncState":
        return cls(SyncStatus.OFFLINE)

    @classmethod
    def error(cls, message: str) -> "SyncState":
        return cls(SyncStatus.ERROR, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "message": self.message,
        }


class SyncCoordinator:
    """Keeps the repository's snapshot and the remote store converged."""

    def __init__(
        self,
        repository: Repository,
        remote_factory: RemoteStoreFactory,
        queue: Optional[RetryQueue] = None,
        family_id_store: Optional[FamilyIdStore] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        auth: Optional[AuthProvider] = None,
    ):
        self.repository = repository
        self.remote_factory = remote_factory
        self.queue = queue or RetryQueue()
        self.family_id_store = family_id_store
        self.connectivity = connectivity
        self.auth = auth

        self.remote: Optional[RemoteStore] = None
        self.user: Optional[AuthUser] = None
        self.has_pending_changes = False
        self.last_sync_at: Optional[datetime] = None
        self.state_changes: EventChannel[SyncState] = EventChannel("sync_state")
        self.rollbacks: EventChannel[RollbackEvent] = EventChannel("sync_rollbacks")

        self._state = SyncState.idle()
        self._is_connected = connectivity.is_connected if connectivity else True
        self._subscription: Optional[Subscription] = None
        self._last_handled_user_id: Optional[str] = None
        self._migrating = False
        self._auth_task: Optional[asyncio.Task] = None
        self._deferred_user: Optional[AuthUser] = None
        self._change_seq = 0
        self._unsubscribers: List[Callable[[], None]] = []

        self.queue.set_executor(self.perform_queued_sync)
        self._unsubscribers.append(self.queue.rollbacks.subscribe(self._on_rollback))
        self._unsubscribers.append(self.queue.abandoned.subscribe(self._on_operation_abandoned))

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> None:
        """Wire collaborators and react to the current auth state."""
        self.repository.on_data_changed = self.on_data_changed
        self.queue.set_connection_status(self._is_connected)
        if not self._is_connected:
            self._set_state(SyncState.offline())
        if self.connectivity is not None:
            self._unsubscribers.append(self.connectivity.subscribe(self.handle_connectivity_change))
        if self.auth is not None:
            self._unsubscribers.append(self.auth.subscribe(self.handle_auth_state_change))
            if self.auth.current_user is not None:
                self.handle_auth_state_change(self.auth.current_user)
        logger.info("Sync coordinator started")

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._cancel_realtime()
        if self._auth_task is not None and not self._auth_task.done():
            self._auth_task.cancel()
        self.queue.clear()
        if self.repository.on_data_changed == self.on_data_changed:
            self.repository.on_data_changed = None
        logger.info("Sync coordinator stopped")

    # ------------------------------------------------------------------
    # State

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def health(self) -> SyncHealth:
        return self.queue.health

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def is_cloud_sync_available(self) -> bool:
        return self.remote is not None and self._is_connected

    @property
    def is_migrating(self) -> bool:
        return self._migrating

    def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.debug("Sync state -> %s", state.status.value)
        self.state_changes.publish(state)

    def _mark_synced(self) -> None:
        now = utcnow()
        self.last_sync_at = now
        self._set_state(SyncState.synced(now))

    def describe(self) -> Dict[str, Any]:
        return {
            "state": self._state.to_dict(),
            "health": self.health.value,
            "connected": self._is_connected,
            "pending_changes": self.has_pending_changes,
            "pending_operations": [op.to_dict() for op in self.queue.pending_operations],
            "family_id": self.remote.family_id if self.remote else None,
            "user_id": self.user.uid if self.user else None,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }

    # ------------------------------------------------------------------
    # Connectivity

    def handle_connectivity_change(self, connected: bool) -> None:
        was_connected = self._is_connected
        self._is_connected = connected
        self.queue.set_connection_status(connected)

        if not connected:
            self._set_state(SyncState.offline())
            return
        if self._state.status == SyncStatus.OFFLINE:
            self._set_state(SyncState.idle())
        if not was_connected and self.has_pending_changes:
            logger.info("Back online with pending changes; syncing")
            self.queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.IMMEDIATE))
            self.queue.process_now()

    # ------------------------------------------------------------------
    # Auth

    def handle_auth_state_change(self, user: Optional[AuthUser]) -> Optional[asyncio.Task]:
        """React to sign-in or sign-out; sign-in returns the migration task."""
        if user is None:
            logger.info("User signed out")
            self._deferred_user = None
            self._last_handled_user_id = None
            if self._auth_task is not None and not self._auth_task.done():
                self._auth_task.cancel()
            self._tear_down_remote()
            return None

        if self._last_handled_user_id == user.uid and self._migrating:
            logger.info("Skipping duplicate auth handling for %s", user.uid)
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # the migration needs a loop; resume() picks the user up later
            logger.info("No running event loop; deferring sign-in for %s", user.uid)
            self._deferred_user = user
            return None
        self._deferred_user = None
        self._last_handled_user_id = user.uid
        logger.info("User signed in: %s", user.uid)

        self._setup_remote(user)
        self._migrating = True
        self._auth_task = loop.create_task(self._run_migration(user))
        return self._auth_task

    @property
    def has_deferred_sign_in(self) -> bool:
        return self._deferred_user is not None

    def resume(self) -> Optional[asyncio.Task]:
        """Handle a sign-in that arrived before an event loop was running."""
        user = self._deferred_user
        if user is None:
            return None
        return self.handle_auth_state_change(user)

    def _setup_remote(self, user: AuthUser) -> None:
        self._cancel_realtime()
        family_id = self.family_id_store.get() if self.family_id_store else None
        self.user = user
        self.remote = self.remote_factory(user.uid, family_id)
        logger.info("Remote store set up for user %s, family %s", user.uid, family_id)

    def _tear_down_remote(self) -> None:
        self._cancel_realtime()
        self.remote = None
        self.user = None
        if self.family_id_store is not None:
            self.family_id_store.clear()
        self._set_state(SyncState.idle())
        logger.info("Remote store torn down, family id cleared")

    async def _run_migration(self, user: AuthUser) -> None:
        try:
            await self.migrate_local_data(user)
        finally:
            self._migrating = False

    def _remember_family_id(self, family_id: str) -> None:
        if self.family_id_store is not None:
            self.family_id_store.set(family_id)
        if self.remote is not None:
            self.remote.set_family_id(family_id)

    async def migrate_local_data(self, user: AuthUser) -> None:
        """Reconcile this device's data with the user's cloud data, once per sign-in."""
        remote = self.remote
        if remote is None:
            return
        self._set_state(SyncState.syncing())
        parent_name = user.display_name or "Parent"
        seq = self._change_seq
        try:
            local = self.repository.snapshot.copy()
            stored_id = self.family_id_store.get() if self.family_id_store else None
            if stored_id is None:
                found = await remote.lookup_family_id(user.uid)
                if found is not None:
                    self._remember_family_id(found)
            else:
                remote.set_family_id(stored_id)

            cloud = await remote.load_snapshot()
            if cloud is not None:
                logger.info("Merging local data into existing cloud data")
                self._remember_family_id(cloud.family.id)
                await remote.merge_local_data(local, user.uid, parent_name)
                result = await remote.load_snapshot()
            else:
                logger.info("Uploading local data to cloud for a new family")
                family_id = await remote.create_family(local.family)
                self._remember_family_id(family_id)
                result = self._claim_local_data(local, user, parent_name)
                await remote.save_snapshot(result)

            edited = self._edited_since(local)
            if result is not None:
                if edited:
                    logger.info("Local data changed during migration; folding edits in")
                    result = merge_local_into_cloud(result, self.repository.snapshot, user.uid, parent_name)
                result.current_parent_id = user.uid
                self.repository.replace(result, notify=False)
            await self.repository.flush()
        except Exception as exc:
            logger.error("Migration failed: %s", exc)
            self._set_state(SyncState.error(str(exc)))
            return

        if edited:
            self._mark_pending()
            self.queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.HIGH))
        elif seq == self._change_seq:
            self.has_pending_changes = False
        self._mark_synced()
        self._start_realtime()
        logger.info("Migration complete for user %s", user.uid)

    def _edited_since(self, captured: AppDataSnapshot) -> bool:
        """True when the repository moved on from ``captured`` while we awaited."""
        return self.repository.snapshot.to_dict() != captured.to_dict()

    def _claim_local_data(self, local: AppDataSnapshot, user: AuthUser, parent_name: str) -> AppDataSnapshot:
        claimed = local.copy()
        if claimed.parent_by_id(user.uid) is None:
            claimed.add_parent(Parent(id=user.uid, display_name=parent_name, email=user.email, role="parent1"))
        claimed.family.add_member(user.uid)
        if claimed.family.created_by_parent_id is None:
            claimed.family.created_by_parent_id = user.uid
        claimed.current_parent_id = user.uid
        claimed.behavior_events = [
            event if event.has_parent_attribution else event.with_parent_attribution(user.uid, parent_name)
            for event in claimed.behavior_events
        ]
        return claimed

    async def join_family(self, invite_code: str) -> str:
        """Join another parent's family and fold this device's data into it."""
        if self.remote is None or self.user is None:
            raise RuntimeError("Sign in before joining a family")
        family_id = await self.remote.join_family(invite_code)
        self._remember_family_id(family_id)
        self._cancel_realtime()
        self._migrating = True
        try:
            await self.migrate_local_data(self.user)
        finally:
            self._migrating = False
        return family_id

    async def generate_invite_code(self, valid_for_days: Optional[int] = None) -> str:
        if self.remote is None:
            raise RuntimeError("Sign in before inviting a partner")
        return await self.remote.generate_invite_code(valid_for_days)

    # ------------------------------------------------------------------
    # Realtime

    def _start_realtime(self) -> None:
        self._cancel_realtime()
        if self.remote is None or not self.remote.family_id:
            return
        self._subscription = self.remote.start_realtime_sync(self.handle_remote_update)

    def _cancel_realtime(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def handle_remote_update(self, remote_snapshot: AppDataSnapshot) -> bool:
        """Apply a pushed remote snapshot; False when the data-loss guard refused it."""
        if not self._apply_remote(remote_snapshot):
            self.queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.HIGH))
            return False
        if self.has_pending_changes:
            self.queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.NORMAL))
        return True

    def _apply_remote(self, remote_snapshot: AppDataSnapshot) -> bool:
        local = self.repository.snapshot
        if is_destructive_update(local, remote_snapshot):
            logger.warning(
                "Blocked remote update with %d children; local has %d. Keeping local data.",
                len(remote_snapshot.children),
                len(local.children),
            )
            self._mark_pending()
            return False

        outcome = merge_remote_update(local, remote_snapshot)
        self.repository.replace(outcome.snapshot, notify=False)
        if outcome.needs_push:
            self._mark_pending()
        self._mark_synced()
        return True

    # ------------------------------------------------------------------
    # Outbound

    def _mark_pending(self) -> None:
        self.has_pending_changes = True
        self._change_seq += 1

    def on_data_changed(self, previous_state: Optional[AppDataSnapshot] = None) -> None:
        """Repository hook: remember the change and ask for a debounced push."""
        self._mark_pending()
        self.queue.enqueue_debounced(previous_state=previous_state)

    def sync_now(self) -> None:
        if (
            self.has_pending_changes
            and not self.queue.pending_operations
            and not self.queue.has_debounced_operation
        ):
            self.queue.enqueue(SyncOperation(kind=OperationKind.PUSH_ONLY, priority=Priority.IMMEDIATE))
        self.queue.process_now()

    def request_full_sync(self) -> None:
        self.queue.enqueue(SyncOperation(kind=OperationKind.FULL_SYNC, priority=Priority.HIGH))

    async def sync_if_needed(self) -> bool:
        """Push the current snapshot if there is anything to push.

        Timeouts leave the state at ``syncing`` and re-raise so the queue can
        retry; other failures publish ``error`` and re-raise.
        """
        remote = self.remote
        if remote is None or not self._is_connected or not self.has_pending_changes:
            return False
        if self._migrating:
            # the migration uploads the whole snapshot itself
            return False

        self._set_state(SyncState.syncing())
        seq = self._change_seq
        try:
            await remote.save_snapshot(self.repository.snapshot.copy())
            await self.repository.flush()
        except TIMEOUT_ERRORS:
            self._set_state(SyncState.syncing())
            raise
        except Exception as exc:
            logger.error("Sync error: %s", exc)
            self._set_state(SyncState.error(str(exc)))
            raise

        if seq == self._change_seq:
            self.has_pending_changes = False
        self._mark_synced()
        logger.info("Sync completed successfully")
        return True

    async def perform_queued_sync(self, operation: SyncOperation) -> None:
        """Retry queue entrypoint."""
        if operation.kind == OperationKind.FULL_SYNC and self.remote is not None and self._is_connected:
            remote_snapshot = await self.remote.load_snapshot()
            if remote_snapshot is not None:
                self._apply_remote(remote_snapshot)
            self._mark_pending()
        await self.sync_if_needed()

    # ------------------------------------------------------------------
    # Queue callbacks

    def _on_operation_abandoned(self, operation: SyncOperation) -> None:
        self._set_state(SyncState.error(operation.last_error or "Sync failed"))

    def _on_rollback(self, event: RollbackEvent) -> None:
        logger.warning("Rolling back operation %s", event.operation_id)
        self.rollbacks.publish(event)


__all__ = ["SyncCoordinator", "SyncState", "SyncStatus"]
