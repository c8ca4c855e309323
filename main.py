"""
Signaling broker entry point.

Runs the identity registry and message router on top of the configured hub.
On SIGINT/SIGTERM the broker stops accepting registrations, waits for
registered clients to leave (bounded by ``BROKER__DRAIN_TIMEOUT_S``), then
closes the hub and exits 0.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Optional

from application.ports.broker import BrokerHubPort
from application.services.broker_service import BrokerService
from core.config import settings
from core.logging_config import configure_logging, get_logger
from infrastructure.realtime.brokers import InMemoryBroker, RedisBrokerHub


# Configure explicitly at the entry point
configure_logging()
logger = get_logger(__name__)


def select_hub(provider: Optional[str] = None, redis_url: Optional[str] = None) -> BrokerHubPort:
    """Pick the hub: auto -> redis (if a URL is configured) else inmemory."""
    provider = (provider or settings.broker.provider or "auto").lower()
    redis_url = redis_url or settings.redis.url
    if provider in ("redis", "auto"):
        if redis_url:
            logger.info("broker_hub_selected", provider="redis")
            return RedisBrokerHub(redis_url)
        if provider == "redis":
            logger.warning(
                "broker_hub_redis_missing_url",
                message="REDIS__URL not set, falling back to in-memory hub",
            )
    elif provider != "inmemory":
        logger.warning("broker_hub_unknown_provider", provider=provider)
    logger.info("broker_hub_selected", provider="inmemory")
    return InMemoryBroker(queue_max=settings.broker.queue_max)


async def run(provider: Optional[str] = None, redis_url: Optional[str] = None) -> int:
    service = BrokerService(hub=select_hub(provider, redis_url))
    await service.start()
    logger.info("application_started", name=settings.PROJECT_NAME, version=settings.VERSION)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    await stop.wait()
    logger.info("shutdown_requested")
    await service.shutdown(drain_timeout=settings.broker.drain_timeout_s)
    logger.info("application_shutdown")
    return 0


def main(argv: Optional[list] = None) -> int:
    ap = argparse.ArgumentParser(description="Signaling broker")
    ap.add_argument("--provider", choices=["auto", "redis", "inmemory"], default=None)
    ap.add_argument("--redis-url", default=None, help="Overrides REDIS__URL")
    args = ap.parse_args(argv)
    return asyncio.run(run(args.provider, args.redis_url))


if __name__ == "__main__":
    sys.exit(main())
