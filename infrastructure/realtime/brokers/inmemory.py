"""In-memory implementation of the broker ports.

Single-process only. Useful for local dev, embedding and tests. All client
publishes and disconnects flow through one ingress queue drained by a single
dispatcher task; each connection has its own delivery queue and reader task,
so deliveries to one subscriber keep their order.
"""
from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set, Tuple

from application.ports.broker import DisconnectHandler, MessageHandler, PublishHandler
from core.logging_config import get_logger
from domain.common.exceptions import BrokerConnectionError


logger = get_logger(__name__)


ADDRESS_SCHEME = "memory://"

_PUBLISH = "publish"
_DISCONNECT = "disconnect"


class InMemoryConnection:
    def __init__(self, broker: "InMemoryBroker", connection_id: str, queue_max: int) -> None:
        self._broker = broker
        self._connection_id = connection_id
        self._handlers: Dict[str, MessageHandler] = {}
        self._queue: asyncio.Queue[Tuple[str, bytes]] = asyncio.Queue(maxsize=max(1, queue_max))
        self._open = True
        self._reader = asyncio.create_task(
            self._reader_loop(), name=f"inmemory-conn-{connection_id}"
        )

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_open(self) -> bool:
        return self._open

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        self._ensure_open()
        self._handlers[topic] = handler
        self._broker._subscribe(topic, self)

    async def publish(self, topic: str, payload: bytes) -> None:
        self._ensure_open()
        await self._broker._ingest((_PUBLISH, self._connection_id, topic, payload))

    async def aclose(self) -> None:
        if not self._open:
            return
        self._open = False
        self._broker._detach(self)
        # Queued behind this connection's earlier publishes
        await self._broker._ingest((_DISCONNECT, self._connection_id, "", b""))
        if self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        self._broker._settle(dropped)

    def _ensure_open(self) -> None:
        if not self._open:
            raise BrokerConnectionError(ADDRESS_SCHEME, f"connection {self._connection_id} is closed")

    def _enqueue(self, topic: str, payload: bytes) -> None:
        try:
            self._queue.put_nowait((topic, payload))
        except asyncio.QueueFull:
            logger.warning("inmemory_delivery_dropped", connection_id=self._connection_id, topic=topic)
            return
        self._broker._track()

    async def _reader_loop(self) -> None:
        while True:
            topic, payload = await self._queue.get()
            try:
                handler = self._handlers.get(topic)
                if handler is not None:
                    await handler(topic, payload)
            except Exception:
                logger.exception("inmemory_handler_failed", connection_id=self._connection_id, topic=topic)
            finally:
                self._queue.task_done()
                self._broker._settle(1)
            if not self._open:
                return


class InMemoryBroker:
    """Hub and connector in one object; addresses use the ``memory://`` scheme."""

    def __init__(self, queue_max: int = 1000) -> None:
        self._queue_max = queue_max
        self._subscriptions: Dict[str, Set[InMemoryConnection]] = {}
        self._connections: Dict[str, InMemoryConnection] = {}
        self._ingress: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_max))
        self._dispatcher: Optional[asyncio.Task] = None
        self._on_publish: Optional[PublishHandler] = None
        self._on_disconnect: Optional[DisconnectHandler] = None
        self._closed = False
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # BrokerHubPort
    async def start(self, on_publish: PublishHandler, on_disconnect: DisconnectHandler) -> None:
        if self._dispatcher is not None:
            return
        self._on_publish = on_publish
        self._on_disconnect = on_disconnect
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="inmemory-broker-dispatch")
        logger.info("inmemory_broker_started")

    async def deliver(self, topic: str, payload: bytes) -> None:
        for conn in list(self._subscriptions.get(topic, ())):
            conn._enqueue(topic, payload)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for conn in list(self._connections.values()):
            await conn.aclose()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        self._subscriptions.clear()
        self._inflight = 0
        self._idle.set()
        logger.info("inmemory_broker_closed")

    # BrokerConnectorPort
    async def open_connection(self, address: str, client_id: str) -> InMemoryConnection:
        if not address.startswith(ADDRESS_SCHEME):
            raise BrokerConnectionError(address, f"expected a {ADDRESS_SCHEME} address")
        if self._closed:
            raise BrokerConnectionError(address, "broker is closed")
        existing = self._connections.get(client_id)
        if existing is not None:
            # Same client id takes over the previous connection
            logger.info("inmemory_connection_takeover", connection_id=client_id)
            await existing.aclose()
        conn = InMemoryConnection(self, client_id, self._queue_max)
        self._connections[client_id] = conn
        return conn

    async def wait_idle(self) -> None:
        """Wait until every queued publish and delivery has been handled."""
        await self._idle.wait()

    @property
    def connection_ids(self) -> Set[str]:
        return set(self._connections)

    def _subscribe(self, topic: str, conn: InMemoryConnection) -> None:
        self._subscriptions.setdefault(topic, set()).add(conn)

    def _detach(self, conn: InMemoryConnection) -> None:
        for members in self._subscriptions.values():
            members.discard(conn)
        if self._connections.get(conn.connection_id) is conn:
            del self._connections[conn.connection_id]

    async def _ingest(self, item: Tuple[str, str, str, bytes]) -> None:
        if self._closed:
            return
        self._track()
        await self._ingress.put(item)

    def _track(self) -> None:
        self._inflight += 1
        self._idle.clear()

    def _settle(self, count: int) -> None:
        if not count:
            return
        self._inflight = max(0, self._inflight - count)
        if self._inflight == 0:
            self._idle.set()

    async def _dispatch_loop(self) -> None:
        on_publish, on_disconnect = self._on_publish, self._on_disconnect
        if on_publish is None or on_disconnect is None:
            raise RuntimeError("in-memory broker dispatcher started without handlers")
        while True:
            kind, connection_id, topic, payload = await self._ingress.get()
            try:
                if kind == _PUBLISH:
                    await on_publish(connection_id, topic, payload)
                else:
                    await on_disconnect(connection_id)
            except Exception:
                logger.exception("inmemory_dispatch_failed", connection_id=connection_id, topic=topic)
            finally:
                self._ingress.task_done()
                self._settle(1)
