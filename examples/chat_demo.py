"""
Two in-process peers negotiating a real aiortc data channel.

Both clients share an in-memory broker; pass ``--redis-url`` to run the
broker and both clients over Redis instead.

    python -m examples.chat_demo
    python -m examples.chat_demo --redis-url redis://localhost:6379/0
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional

from application.services.broker_service import BrokerService
from application.services.peer_client import PeerClient
from core.logging_config import configure_logging, get_logger
from infrastructure.realtime.brokers import InMemoryBroker, RedisBrokerConnector, RedisBrokerHub
from infrastructure.transport import AiortcTransportEngine, transport_config_from_settings


configure_logging()
logger = get_logger("chat_demo")


async def run(redis_url: Optional[str], timeout: float) -> int:
    if redis_url:
        hub = RedisBrokerHub(redis_url)
        connector = RedisBrokerConnector()
        address = redis_url
    else:
        hub = InMemoryBroker()
        connector = hub
        address = "memory://local"
    broker = BrokerService(hub=hub)
    await broker.start()

    engine = AiortcTransportEngine()
    config = transport_config_from_settings()
    alice = PeerClient(connector=connector, engine=engine, transport_config=config)
    bob = PeerClient(connector=connector, engine=engine, transport_config=config)

    received = asyncio.Event()
    alice_ready = asyncio.Event()

    def on_alice_peer(identity: str) -> None:
        logger.info("demo_peer_connected", me="alice", peer=identity)
        alice_ready.set()

    def on_bob_message(identity: str, payload) -> None:
        logger.info("demo_message", me="bob", sender=identity, payload=payload)
        bob.send_message(identity, f"echo: {payload}")

    def on_alice_message(identity: str, payload) -> None:
        logger.info("demo_message", me="alice", sender=identity, payload=payload)
        received.set()

    alice.on_peer_connected = on_alice_peer
    alice.on_message = on_alice_message
    bob.on_message = on_bob_message

    exit_code = 1
    try:
        if not await alice.connect(address, "alice") or not await bob.connect(address, "bob"):
            logger.error("demo_registration_failed")
            return exit_code
        alice.connect_to_peer("bob")
        await asyncio.wait_for(alice_ready.wait(), timeout)
        alice.send_message("bob", "hi")
        await asyncio.wait_for(received.wait(), timeout)
        exit_code = 0
    except asyncio.TimeoutError:
        logger.error("demo_timeout", peers=alice.peers)
    finally:
        await alice.disconnect()
        await bob.disconnect()
        await broker.shutdown(drain_timeout=1.0)
    return exit_code


def main() -> int:
    ap = argparse.ArgumentParser(description="Peer chat demo")
    ap.add_argument("--redis-url", default=None)
    ap.add_argument("--timeout", type=float, default=15.0)
    args = ap.parse_args()
    return asyncio.run(run(args.redis_url, args.timeout))


if __name__ == "__main__":
    sys.exit(main())
