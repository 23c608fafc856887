"""Exception hierarchy for the familysync runtime.

Every error carries a machine-readable ``code`` and a ``retryable`` flag. The
retry queue consults ``retryable`` to decide whether another attempt is worth
making; the coordinator consults the concrete class to decide which sync state
to publish.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for all familysync errors."""

    code: str = "SYNC_ERROR"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class LocalStoreError(SyncError):
    """Reading, writing or clearing the on-device snapshot failed."""

    code: str = "LOCAL_STORE_ERROR"

    def __init__(
        self,
        action: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"Failed to {action} local data: {message}", context=context)
        self.action = action


class RemoteStoreError(SyncError):
    """A remote load, save or clear failed."""

    code: str = "REMOTE_STORE_ERROR"


class RemoteTimeoutError(RemoteStoreError):
    """A remote operation exceeded its time budget; safe to retry."""

    code: str = "REMOTE_TIMEOUT"
    retryable = True

    def __init__(self, action: str, timeout: float):
        super().__init__(
            f"{action} operation timed out after {timeout:g}s - will retry",
            context={"action": action, "timeout": timeout},
        )
        self.action = action
        self.timeout = timeout


class ConfigurationError(SyncError):
    """The remote store is not usable yet (no family id, no backend)."""

    code: str = "CONFIGURATION_ERROR"
    retryable = False


class PermissionDeniedError(RemoteStoreError):
    """The remote rejected the write for the current user."""

    code: str = "PERMISSION_DENIED"
    retryable = False


class InviteCodeError(RemoteStoreError):
    """Base class for invite code failures."""

    code: str = "INVITE_CODE_ERROR"
    retryable = False


class InvalidInviteCodeError(InviteCodeError):
    """No family carries the given invite code."""

    code: str = "INVITE_CODE_INVALID"


class ExpiredInviteCodeError(InviteCodeError):
    """The invite code exists but its expiry has passed."""

    code: str = "INVITE_CODE_EXPIRED"


class OperationTimeoutError(SyncError):
    """The retry queue's timer won the race against a sync operation."""

    code: str = "OPERATION_TIMEOUT"
    retryable = True


def is_retryable(error: BaseException) -> bool:
    """Return False only for errors that are known to be permanent."""

    if isinstance(error, SyncError):
        return error.retryable
    return True


__all__ = [
    "ConfigurationError",
    "ExpiredInviteCodeError",
    "InvalidInviteCodeError",
    "InviteCodeError",
    "LocalStoreError",
    "OperationTimeoutError",
    "PermissionDeniedError",
    "RemoteStoreError",
    "RemoteTimeoutError",
    "SyncError",
    "is_retryable",
]
