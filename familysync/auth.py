"""Auth-state seam between the identity provider and the sync coordinator."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

from .events import EventChannel

logger = logging.getLogger("familysync.auth")

AuthListener = Callable[[Optional["AuthUser"]], None]


@dataclass(frozen=True)
class AuthUser:
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None


class AuthProvider(ABC):
    """Source of the signed-in user; ``None`` means signed out."""

    @property
    @abstractmethod
    def current_user(self) -> Optional[AuthUser]:
        pass

    @abstractmethod
    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Call ``listener`` on every sign-in or sign-out."""
        pass


class StaticAuthProvider(AuthProvider):
    """Provider driven by explicit ``sign_in`` / ``sign_out`` calls."""

    def __init__(self, user: Optional[AuthUser] = None):
        self._user = user
        self._changes: EventChannel[Optional[AuthUser]] = EventChannel("auth")

    @property
    def current_user(self) -> Optional[AuthUser]:
        return self._user

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def sign_in(self, user: AuthUser) -> None:
        self._user = user
        logger.info("User signed in: %s", user.uid)
        self._changes.publish(user)

    def sign_out(self) -> None:
        self._user = None
        logger.info("User signed out")
        self._changes.publish(None)


__all__ = ["AuthListener", "AuthProvider", "AuthUser", "StaticAuthProvider"]
