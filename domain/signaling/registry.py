"""Broker-side registry of claimed identities."""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional

from shared.codes import REASON_USERNAME_TAKEN


@dataclass(frozen=True, slots=True)
class RegistrationResult:
    success: bool
    reason: Optional[str] = None


class IdentityRegistry:
    """Maps each claimed identity to the connection that owns it.

    Check-and-insert runs under a lock so that two concurrent registrations of
    the same identity produce exactly one success, even when the registry is
    shared between threads.
    """

    def __init__(self) -> None:
        self._owners: Dict[str, str] = {}
        self._lock = Lock()

    def register(self, identity: str, connection_id: str) -> RegistrationResult:
        with self._lock:
            if identity in self._owners:
                return RegistrationResult(success=False, reason=REASON_USERNAME_TAKEN)
            self._owners[identity] = connection_id
            return RegistrationResult(success=True)

    def unregister(self, identity: str) -> None:
        with self._lock:
            self._owners.pop(identity, None)

    def unregister_connection(self, connection_id: str) -> List[str]:
        """Drop every identity owned by ``connection_id``; returns the removed ones."""
        with self._lock:
            owned = [ident for ident, owner in self._owners.items() if owner == connection_id]
            for ident in owned:
                del self._owners[ident]
            return owned

    def is_registered(self, identity: str) -> bool:
        with self._lock:
            return identity in self._owners

    def owner(self, identity: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(identity)

    def identities(self) -> List[str]:
        with self._lock:
            return list(self._owners.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._owners)
