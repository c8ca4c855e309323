"""Broker process service: wires the hub, the router and the registry together."""
from __future__ import annotations

import asyncio
from typing import Optional

from application.ports.broker import BrokerHubPort
from application.services.message_router import MessageRouter
from core.logging_config import get_logger
from domain.signaling.registry import IdentityRegistry


logger = get_logger(__name__)


class BrokerService:
    def __init__(self, *, hub: BrokerHubPort, registry: Optional[IdentityRegistry] = None) -> None:
        self._hub = hub
        self.registry = registry or IdentityRegistry()
        self.router = MessageRouter(registry=self.registry, hub=hub)
        self._started = False

    @property
    def hub(self) -> BrokerHubPort:
        return self._hub

    async def start(self) -> None:
        if self._started:
            return
        await self._hub.start(self.router.handle_publish, self.router.handle_disconnect)
        self._started = True
        logger.info("broker_started")

    async def shutdown(self, drain_timeout: float = 10.0, poll_interval: float = 0.1) -> None:
        """Stop taking registrations, wait for clients to leave, then close the hub."""
        if not self._started:
            return
        self.router.stop_accepting()
        remaining = len(self.registry)
        logger.info("broker_draining", registered=remaining, timeout=drain_timeout)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + drain_timeout
        while len(self.registry) and loop.time() < deadline:
            await asyncio.sleep(poll_interval)
        if len(self.registry):
            logger.warning("broker_drain_timeout", still_registered=self.registry.identities())
        await self._hub.aclose()
        self._started = False
        logger.info("broker_closed")
