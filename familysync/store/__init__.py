"""Local and remote replicas of the family snapshot."""

from __future__ import annotations

from .document import DocumentDatabase, DocumentRemoteStore, InMemoryDocumentDatabase, WriteBatch
from .local import FamilyIdStore, LocalStore, StorageSettings
from .merge import RemoteMergeOutcome, is_destructive_update, merge_local_into_cloud, merge_remote_update
from .remote import RemoteSettings, RemoteStore, RemoteStoreFactory, Subscription

__all__ = [
    # Local
    "FamilyIdStore",
    "LocalStore",
    "StorageSettings",
    # Remote
    "RemoteSettings",
    "RemoteStore",
    "RemoteStoreFactory",
    "Subscription",
    "DocumentDatabase",
    "DocumentRemoteStore",
    "InMemoryDocumentDatabase",
    "WriteBatch",
    # Merge
    "RemoteMergeOutcome",
    "is_destructive_update",
    "merge_local_into_cloud",
    "merge_remote_update",
]
