"""
Real-time transport engine port.

The negotiator drives an external engine (ICE, DTLS, SCTP) through this
contract and reacts to its events; it never implements the engine itself.
Event registration follows the ``on(event, handler)`` style of aiortc.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol

from domain.signaling.envelope import IceCandidate, SessionDescription


# TransportSessionPort events
EVENT_ICE_CANDIDATE = "icecandidate"  # handler(IceCandidate | None); None ends gathering
EVENT_CONNECTION_STATE = "connectionstatechange"  # handler(state: str)
EVENT_DATA_CHANNEL = "datachannel"  # handler(DataChannelPort)

# DataChannelPort events
EVENT_OPEN = "open"  # handler()
EVENT_MESSAGE = "message"  # handler(payload)
EVENT_CLOSE = "close"  # handler()
EVENT_ERROR = "error"  # handler(error)


@dataclass(slots=True)
class IceServer:
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None


@dataclass(slots=True)
class TransportConfig:
    ice_servers: List[IceServer] = field(default_factory=list)


class DataChannelPort(Protocol):
    @property
    def label(self) -> str: ...

    @property
    def ready_state(self) -> str: ...

    def send(self, payload: Any) -> None: ...

    def close(self) -> None: ...

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...


class TransportSessionPort(Protocol):
    @property
    def local_description(self) -> Optional[SessionDescription]: ...

    @property
    def remote_description(self) -> Optional[SessionDescription]: ...

    def create_data_channel(self, label: str, *, ordered: bool = True) -> DataChannelPort: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def set_local_description(self, description: SessionDescription) -> None: ...

    async def set_remote_description(self, description: SessionDescription) -> None: ...

    async def add_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...

    def on(self, event: str, handler: Callable[..., Any]) -> None: ...


class TransportEnginePort(Protocol):
    def create_session(self, config: TransportConfig) -> TransportSessionPort: ...


__all__ = [
    "EVENT_ICE_CANDIDATE",
    "EVENT_CONNECTION_STATE",
    "EVENT_DATA_CHANNEL",
    "EVENT_OPEN",
    "EVENT_MESSAGE",
    "EVENT_CLOSE",
    "EVENT_ERROR",
    "IceServer",
    "TransportConfig",
    "DataChannelPort",
    "TransportSessionPort",
    "TransportEnginePort",
]
