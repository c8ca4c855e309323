"""
Redis pub/sub client used by the Redis broker adapter.
"""
from __future__ import annotations

import json
import socket
from typing import Any, AsyncGenerator, Callable, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class RedisClient:
    """
    Namespaced Redis pub/sub client.

    Features:
    - namespace isolation for channel names
    - JSON serialization of non-string messages
    - subscriber counting for presence checks
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        serializer: Optional[Callable[[Any], str]] = None,
    ):
        self._client = client
        self._namespace = namespace.strip(":")
        self._serializer = serializer or self._default_serializer

    def format_channel(self, channel: str) -> str:
        """Prefix a channel name with the namespace."""
        if not self._namespace:
            return channel
        return f"{self._namespace}:{channel}"

    def strip_channel(self, channel: str) -> str:
        prefix = f"{self._namespace}:" if self._namespace else ""
        if prefix and channel.startswith(prefix):
            return channel[len(prefix):]
        return channel

    def _default_serializer(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8", errors="replace")
        try:
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as e:
            logger.error("redis_serialize_failed", error=str(e))
            raise

    async def publish(self, channel: str, message: Any) -> int:
        """Publish to a namespaced channel; returns the number of receivers."""
        formatted_channel = self.format_channel(channel)
        try:
            return await self._client.publish(formatted_channel, self._serializer(message))
        except RedisError as e:
            logger.error("redis_publish_failed", channel=formatted_channel, error=str(e))
            raise

    async def subscribe(self, *channels: str) -> AsyncGenerator[Dict[str, Any], None]:
        """Subscribe to channels and yield ``{"channel", "data"}`` dicts."""
        formatted_channels = [self.format_channel(c) for c in channels]
        pubsub = self._client.pubsub()
        try:
            await pubsub.subscribe(*formatted_channels)
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                yield {
                    "channel": self.strip_channel(message["channel"]),
                    "data": message["data"],
                }
        finally:
            await pubsub.unsubscribe(*formatted_channels)
            await pubsub.aclose()

    def pubsub(self) -> aioredis.client.PubSub:
        return self._client.pubsub()

    async def numsub(self, channel: str) -> int:
        """Number of subscribers on a namespaced channel."""
        formatted_channel = self.format_channel(channel)
        result = await self._client.pubsub_numsub(formatted_channel)
        for name, count in result:
            if name == formatted_channel:
                return int(count)
        return 0

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as e:
            logger.warning("redis_close_failed", error=str(e))


async def create_redis_client(
    url: Optional[str] = None,
    namespace: Optional[str] = None,
    **kwargs,
) -> RedisClient:
    """
    Create a standalone (non-singleton) Redis client and verify it with PING.

    Args:
        url: Redis URL; defaults to ``settings.redis.url``
        namespace: channel namespace; defaults to ``settings.redis.namespace``
        **kwargs: extra connection parameters
    """
    url = url or settings.redis.url
    if not url:
        raise RuntimeError("REDIS__URL is not configured")

    # Cross-platform keepalive options where available
    keepalive_opts = {}
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        keepalive_opts = {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }

    client = aioredis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.redis.max_connections,
        socket_keepalive=True,
        socket_keepalive_options=keepalive_opts,
        **kwargs,
    )
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise

    return RedisClient(
        client=client,
        namespace=settings.redis.namespace if namespace is None else namespace,
    )


__all__ = ["RedisClient", "create_redis_client"]
