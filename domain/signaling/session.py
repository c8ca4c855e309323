"""Peer session entity: per-remote negotiation state and owned transport handles."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class SessionRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class SessionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING_LOCAL_OFFER = "negotiating-local-offer"
    NEGOTIATING_REMOTE_OFFER = "negotiating-remote-offer"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SessionStatus(str, Enum):
    """Coarse status exposed to the application layer."""

    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


_STATUS_BY_STATE = {
    SessionState.IDLE: SessionStatus.NEGOTIATING,
    SessionState.NEGOTIATING_LOCAL_OFFER: SessionStatus.NEGOTIATING,
    SessionState.NEGOTIATING_REMOTE_OFFER: SessionStatus.NEGOTIATING,
    SessionState.CONNECTED: SessionStatus.CONNECTED,
    SessionState.FAILED: SessionStatus.FAILED,
    SessionState.CLOSED: SessionStatus.CLOSED,
}

# Transport connection states that end a session
TERMINAL_TRANSPORT_STATES = frozenset({"failed", "disconnected", "closed"})


@dataclass(slots=True)
class ReleasedHandles:
    """Handles handed back by a torn-down session; the caller closes them."""

    transport: Any
    channel: Any = None


@dataclass(slots=True)
class PeerSession:
    local_identity: str
    remote_identity: str
    role: SessionRole
    transport: Any = None
    channel: Any = None
    state: SessionState = SessionState.IDLE
    remote_description_set: bool = False
    closed_reason: Optional[str] = field(default=None)

    @property
    def status(self) -> SessionStatus:
        return _STATUS_BY_STATE[self.state]

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def is_negotiating(self) -> bool:
        return self.status is SessionStatus.NEGOTIATING

    def release(self, reason: str) -> Optional[ReleasedHandles]:
        """Mark the session closed and give up ownership of its handles.

        Returns ``None`` when the session was already closed, so handles are
        only ever released once.
        """
        if self.is_closed:
            return None
        self.state = SessionState.CLOSED
        self.closed_reason = reason
        handles = ReleasedHandles(transport=self.transport, channel=self.channel)
        self.transport = None
        self.channel = None
        return handles
