"""
Broker ports (contracts-first).

The signaling core only publishes and subscribes on named topics. These
protocols keep the router and the client link decoupled from the concrete
pub/sub transport (in-memory, Redis), which lives in infrastructure.
"""
from __future__ import annotations

from typing import Awaitable, Callable, Protocol


# (connection_id, topic, payload) for every payload a client publishes
PublishHandler = Callable[[str, str, bytes], Awaitable[None]]
# connection_id of a connection that went away
DisconnectHandler = Callable[[str], Awaitable[None]]
# (topic, payload) delivered to a subscriber
MessageHandler = Callable[[str, bytes], Awaitable[None]]


class BrokerHubPort(Protocol):
    """Broker-side view of the pub/sub transport.

    Every client publish is handed to ``on_publish`` instead of being
    delivered directly; the router decides what reaches subscribers through
    ``deliver``. Implementations must invoke the handlers from a single
    dispatch stream, one payload at a time.
    """

    async def start(self, on_publish: PublishHandler, on_disconnect: DisconnectHandler) -> None: ...

    async def deliver(self, topic: str, payload: bytes) -> None: ...

    async def aclose(self) -> None: ...


class BrokerConnectionPort(Protocol):
    """One client connection to the broker."""

    @property
    def connection_id(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    async def subscribe(self, topic: str, handler: MessageHandler) -> None: ...

    async def publish(self, topic: str, payload: bytes) -> None: ...

    async def aclose(self) -> None: ...


class BrokerConnectorPort(Protocol):
    """Opens client connections for a broker address."""

    async def open_connection(self, address: str, client_id: str) -> BrokerConnectionPort: ...


__all__ = [
    "PublishHandler",
    "DisconnectHandler",
    "MessageHandler",
    "BrokerHubPort",
    "BrokerConnectionPort",
    "BrokerConnectorPort",
]
