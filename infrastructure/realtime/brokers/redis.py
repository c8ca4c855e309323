"""Redis Pub/Sub based broker ports.

Clients never publish straight to a topic channel. Each publish is wrapped in
a frame ``{"connection_id", "event", "topic", "payload"}`` on the single
``<ns>:ingress`` channel; the hub consumes that channel in order, hands frames
to the router and delivers the outcome to ``<ns>:topic:<topic>``.

Redis has no disconnect hook, so every connection also subscribes a liveness
channel ``<ns>:conn:<connection_id>``. Clean shutdowns send a ``disconnect``
frame; the hub's presence sweep treats a liveness channel with zero
subscribers as a disconnect for connections that vanished without one.
"""
from __future__ import annotations

import asyncio
import json
from typing import Dict, Optional, Set, Tuple

from application.ports.broker import DisconnectHandler, MessageHandler, PublishHandler
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import BrokerConnectionError
from infrastructure.external.pubsub import RedisClient, create_redis_client


logger = get_logger(__name__)


INGRESS_CHANNEL = "ingress"

EVENT_PUBLISH = "publish"
EVENT_DISCONNECT = "disconnect"


def topic_channel(topic: str) -> str:
    return f"topic:{topic}"


def liveness_channel(connection_id: str) -> str:
    return f"conn:{connection_id}"


def build_frame(connection_id: str, event: str, topic: str = "", payload: bytes = b"") -> dict:
    return {
        "connection_id": connection_id,
        "event": event,
        "topic": topic,
        "payload": payload.decode("utf-8", errors="replace"),
    }


def parse_frame(raw: str) -> Optional[Tuple[str, str, str, bytes]]:
    """Return ``(event, connection_id, topic, payload)`` or ``None`` if unusable."""
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None
    connection_id = frame.get("connection_id")
    event = frame.get("event", EVENT_PUBLISH)
    if not isinstance(connection_id, str) or not connection_id:
        return None
    if event == EVENT_DISCONNECT:
        return EVENT_DISCONNECT, connection_id, "", b""
    topic = frame.get("topic")
    payload = frame.get("payload")
    if event != EVENT_PUBLISH or not isinstance(topic, str) or not topic or not isinstance(payload, str):
        return None
    return EVENT_PUBLISH, connection_id, topic, payload.encode("utf-8")


class RedisBrokerHub:
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        namespace: Optional[str] = None,
        sweep_interval: Optional[float] = None,
        client: Optional[RedisClient] = None,
    ) -> None:
        self._url = url
        self._namespace = namespace
        self._sweep_interval = (
            settings.broker.presence_sweep_interval_s if sweep_interval is None else sweep_interval
        )
        self._client = client
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, settings.broker.queue_max))
        self._known: Set[str] = set()
        self._tasks: list[asyncio.Task] = []
        self._on_publish: Optional[PublishHandler] = None
        self._on_disconnect: Optional[DisconnectHandler] = None

    async def start(self, on_publish: PublishHandler, on_disconnect: DisconnectHandler) -> None:
        if self._tasks:
            return
        self._on_publish = on_publish
        self._on_disconnect = on_disconnect
        if self._client is None:
            self._client = await create_redis_client(self._url, self._namespace)
        self._tasks = [
            asyncio.create_task(self._listen(), name="redis-broker-ingress"),
            asyncio.create_task(self._dispatch_loop(), name="redis-broker-dispatch"),
        ]
        if self._sweep_interval and self._sweep_interval > 0:
            self._tasks.append(asyncio.create_task(self._sweep_loop(), name="redis-broker-sweep"))
        logger.info("redis_broker_started", ingress=self._client.format_channel(INGRESS_CHANNEL))

    async def deliver(self, topic: str, payload: bytes) -> None:
        await self._require_client().publish(topic_channel(topic), payload)

    async def aclose(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("redis_broker_closed")

    async def sweep_once(self) -> None:
        """Report known connections whose liveness channel lost its subscriber."""
        client = self._require_client()
        for connection_id in list(self._known):
            if await client.numsub(liveness_channel(connection_id)) == 0:
                self._known.discard(connection_id)
                logger.info("redis_connection_vanished", connection_id=connection_id)
                await self._queue.put((EVENT_DISCONNECT, connection_id, "", b""))

    async def _listen(self) -> None:
        client = self._require_client()
        try:
            async for message in client.subscribe(INGRESS_CHANNEL):
                parsed = parse_frame(message["data"])
                if parsed is None:
                    logger.warning("redis_frame_malformed")
                    continue
                await self._queue.put(parsed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("redis_ingress_listen_failed", error=str(exc))

    async def _dispatch_loop(self) -> None:
        on_publish, on_disconnect = self._on_publish, self._on_disconnect
        if on_publish is None or on_disconnect is None:
            raise RuntimeError("redis broker dispatcher started without handlers")
        while True:
            event, connection_id, topic, payload = await self._queue.get()
            try:
                if event == EVENT_DISCONNECT:
                    self._known.discard(connection_id)
                    await on_disconnect(connection_id)
                else:
                    self._known.add(connection_id)
                    await on_publish(connection_id, topic, payload)
            except Exception:
                logger.exception("redis_dispatch_failed", connection_id=connection_id, topic=topic)
            finally:
                self._queue.task_done()

    def _require_client(self) -> RedisClient:
        if self._client is None:
            raise BrokerConnectionError(self._url or "redis", "broker hub is not started")
        return self._client

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.warning("redis_presence_sweep_failed", error=str(exc))


class RedisBrokerConnection:
    def __init__(self, client: RedisClient, connection_id: str) -> None:
        self._client = client
        self._connection_id = connection_id
        self._pubsub = client.pubsub()
        self._handlers: Dict[str, MessageHandler] = {}
        self._listener: Optional[asyncio.Task] = None
        self._open = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> None:
        await self._pubsub.subscribe(self._client.format_channel(liveness_channel(self._connection_id)))
        self._listener = asyncio.create_task(
            self._listen(), name=f"redis-conn-{self._connection_id}"
        )
        self._open = True

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        channel = self._client.format_channel(topic_channel(topic))
        self._handlers[channel] = handler
        await self._pubsub.subscribe(channel)

    async def publish(self, topic: str, payload: bytes) -> None:
        if not self._open:
            raise BrokerConnectionError("redis", f"connection {self._connection_id} is closed")
        await self._client.publish(INGRESS_CHANNEL, build_frame(self._connection_id, EVENT_PUBLISH, topic, payload))

    async def aclose(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            await self._client.publish(INGRESS_CHANNEL, build_frame(self._connection_id, EVENT_DISCONNECT))
        except Exception as exc:
            # The presence sweep reports the disconnect instead
            logger.warning("redis_disconnect_frame_failed", connection_id=self._connection_id, error=str(exc))
        if self._listener is not None and self._listener is not asyncio.current_task():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        self._listener = None
        try:
            await self._pubsub.unsubscribe()
            await self._pubsub.aclose()
        finally:
            await self._client.aclose()

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                handler = self._handlers.get(message["channel"])
                if handler is None:
                    continue
                topic = self._client.strip_channel(message["channel"])[len("topic:"):]
                data = message["data"]
                payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
                try:
                    await handler(topic, payload)
                except Exception:
                    logger.exception("redis_handler_failed", connection_id=self._connection_id, topic=topic)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("redis_connection_listen_failed", connection_id=self._connection_id, error=str(exc))


class RedisBrokerConnector:
    def __init__(self, *, namespace: Optional[str] = None) -> None:
        self._namespace = namespace

    async def open_connection(self, address: str, client_id: str) -> RedisBrokerConnection:
        try:
            client = await create_redis_client(address, self._namespace)
        except Exception as exc:
            raise BrokerConnectionError(address, str(exc)) from exc
        conn = RedisBrokerConnection(client, client_id)
        try:
            await conn.open()
        except Exception as exc:
            await client.aclose()
            raise BrokerConnectionError(address, str(exc)) from exc
        return conn
