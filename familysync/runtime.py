"""Wiring of the sync components for one device."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .auth import AuthProvider, StaticAuthProvider
from .connectivity import ConnectivityMonitor, ConnectivitySettings
from .repository import Repository
from .store.document import DocumentDatabase, DocumentRemoteStore
from .store.local import FamilyIdStore, LocalStore, StorageSettings
from .store.remote import RemoteSettings, RemoteStore
from .sync.coordinator import SyncCoordinator
from .sync.queue import QueueSettings, RetryQueue

logger = logging.getLogger("familysync.runtime")


@dataclass
class SyncRuntime:
    """Everything a device needs to keep its snapshot in sync."""

    data_dir: Path
    repository: Repository
    queue: RetryQueue
    coordinator: SyncCoordinator
    connectivity: ConnectivityMonitor
    auth: AuthProvider
    family_id_store: FamilyIdStore

    @classmethod
    def create(
        cls,
        data_dir: Path,
        database: DocumentDatabase,
        config: Optional[Dict[str, Any]] = None,
        auth: Optional[AuthProvider] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
    ) -> "SyncRuntime":
        config = config or {}
        storage = StorageSettings.from_config(config)
        remote_settings = RemoteSettings.from_config(config)

        def _remote_factory(user_id: str, family_id: Optional[str]) -> RemoteStore:
            return DocumentRemoteStore(database, user_id, family_id, settings=remote_settings)

        repository = Repository(
            LocalStore.from_settings(data_dir, storage),
            save_debounce=storage.save_debounce,
        )
        queue = RetryQueue(settings=QueueSettings.from_config(config))
        family_id_store = FamilyIdStore.from_settings(data_dir, storage)
        monitor = connectivity or ConnectivityMonitor(ConnectivitySettings.from_config(config))
        provider = auth or StaticAuthProvider()
        coordinator = SyncCoordinator(
            repository,
            _remote_factory,
            queue=queue,
            family_id_store=family_id_store,
            connectivity=monitor,
            auth=provider,
        )
        logger.debug("Runtime created for %s", data_dir)
        return cls(
            data_dir=Path(data_dir),
            repository=repository,
            queue=queue,
            coordinator=coordinator,
            connectivity=monitor,
            auth=provider,
            family_id_store=family_id_store,
        )

    def start(self, poll_connectivity: bool = False) -> None:
        """Start syncing; without a running loop, sign-in waits for :meth:`resume`."""
        self.coordinator.start()
        if poll_connectivity:
            self.connectivity.start()

    async def resume(self) -> None:
        task = self.coordinator.resume()
        if task is not None:
            await task

    async def shutdown(self) -> None:
        self.connectivity.stop()
        self.coordinator.stop()
        await self.repository.flush()


__all__ = ["SyncRuntime"]
