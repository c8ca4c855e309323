"""Pytest bootstrap configuration.

Pins the environment before application settings are imported and provides
an in-memory broker plus a scripted transport engine, so negotiation runs
end to end without sockets.
"""
import asyncio
import itertools
import os
from typing import Any, Callable, Dict, List, Optional

# Deterministic settings regardless of the developer's .env
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
import pytest_asyncio

from application.services.broker_service import BrokerService
from application.services.peer_client import PeerClient
from domain.signaling.envelope import IceCandidate, SessionDescription
from infrastructure.realtime.brokers import InMemoryBroker


BROKER_ADDRESS = "memory://test"


class FakeDataChannel:
    def __init__(self, label: str, ready_state: str = "connecting") -> None:
        self.label = label
        self.ready_state = ready_state
        self.peer: Optional["FakeDataChannel"] = None
        self.sent: List[Any] = []
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    def open(self) -> None:
        self.ready_state = "open"
        self.emit("open")

    def send(self, payload: Any) -> None:
        if self.ready_state != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(payload)
        if self.peer is not None and self.peer.ready_state == "open":
            self.peer.emit("message", payload)

    def close(self) -> None:
        if self.ready_state == "closed":
            return
        self.ready_state = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


class FakeNetwork:
    """Pairs transport sessions through the SDP strings they exchange."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.offers: Dict[str, "FakeTransportSession"] = {}

    def next_id(self) -> int:
        return next(self._ids)


class FakeTransportSession:
    def __init__(self, network: FakeNetwork, *, fail_offer: bool = False, fail_answer: bool = False) -> None:
        self.network = network
        self.fail_offer = fail_offer
        self.fail_answer = fail_answer
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.peer: Optional["FakeTransportSession"] = None
        self.channel: Optional[FakeDataChannel] = None
        self.added_candidates: List[IceCandidate] = []
        self.connected = False
        self.closed = False
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)

    def create_data_channel(self, label: str, *, ordered: bool = True) -> FakeDataChannel:
        self.channel = FakeDataChannel(label)
        return self.channel

    async def create_offer(self) -> SessionDescription:
        await asyncio.sleep(0)
        if self.fail_offer:
            raise RuntimeError("offer failed")
        sdp = f"offer-{self.network.next_id()}"
        self.network.offers[sdp] = self
        return SessionDescription(type="offer", sdp=sdp)

    async def create_answer(self) -> SessionDescription:
        await asyncio.sleep(0)
        if self.fail_answer:
            raise RuntimeError("answer failed")
        return SessionDescription(type="answer", sdp=f"answer-to-{self.remote_description.sdp}")

    async def set_local_description(self, description: SessionDescription) -> None:
        await asyncio.sleep(0)
        self.local_description = description
        n = self.network.next_id()
        self.emit(
            "icecandidate",
            IceCandidate(candidate=f"candidate:{n} 1 udp 2130706431 127.0.0.1 {40000 + n} typ host", sdpMid="0", sdpMLineIndex=0),
        )
        self.emit("icecandidate", None)
        self._maybe_connect()

    async def set_remote_description(self, description: SessionDescription) -> None:
        await asyncio.sleep(0)
        if description.type == "offer":
            initiator = self.network.offers.get(description.sdp)
            if initiator is not None and not initiator.closed:
                self.peer = initiator
                initiator.peer = self
        self.remote_description = description
        self._maybe_connect()

    async def add_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            raise RuntimeError("remote description required")
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        peer = self.peer
        if peer is not None and not peer.closed:
            peer.emit("connectionstatechange", "disconnected")

    def _ready(self) -> bool:
        return not self.closed and self.local_description is not None and self.remote_description is not None

    def _maybe_connect(self) -> None:
        peer = self.peer
        if peer is None or self.connected or not (self._ready() and peer._ready()):
            return
        initiator, responder = (self, peer) if self.channel is not None else (peer, self)
        initiator.connected = responder.connected = True
        initiator.emit("connectionstatechange", "connected")
        responder.emit("connectionstatechange", "connected")
        remote_channel = FakeDataChannel(initiator.channel.label, ready_state="open")
        remote_channel.peer = initiator.channel
        initiator.channel.peer = remote_channel
        responder.channel = remote_channel
        initiator.channel.open()
        responder.emit("datachannel", remote_channel)


class FakeTransportEngine:
    def __init__(self, network: FakeNetwork, *, fail_offer: bool = False, fail_answer: bool = False, fail_create: bool = False) -> None:
        self.network = network
        self.fail_offer = fail_offer
        self.fail_answer = fail_answer
        self.fail_create = fail_create
        self.sessions: List[FakeTransportSession] = []

    def create_session(self, config) -> FakeTransportSession:
        if self.fail_create:
            raise RuntimeError("engine unavailable")
        session = FakeTransportSession(self.network, fail_offer=self.fail_offer, fail_answer=self.fail_answer)
        self.sessions.append(session)
        return session


class Recorder:
    """Captures the application callbacks of a PeerClient."""

    def __init__(self, client: PeerClient) -> None:
        self.connected: List[str] = []
        self.disconnected: List[str] = []
        self.messages: List[tuple] = []
        self.statuses: List[tuple] = []
        client.on_peer_connected = self.connected.append
        client.on_peer_disconnected = self.disconnected.append
        client.on_message = lambda peer, payload: self.messages.append((peer, payload))
        client.on_connection_status = lambda peer, status: self.statuses.append((peer, status))


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def make_engine(network):
    def _make(**opts) -> FakeTransportEngine:
        return FakeTransportEngine(network, **opts)

    return _make


@pytest.fixture
def record():
    return Recorder


@pytest_asyncio.fixture
async def broker_service():
    service = BrokerService(hub=InMemoryBroker())
    await service.start()
    yield service
    await service.shutdown(drain_timeout=0)


@pytest.fixture
def hub(broker_service) -> InMemoryBroker:
    return broker_service.hub


@pytest_asyncio.fixture
async def make_client(hub, network):
    clients: List[PeerClient] = []

    def _make(engine: Optional[FakeTransportEngine] = None, **kwargs) -> PeerClient:
        client = PeerClient(
            connector=hub,
            engine=engine or FakeTransportEngine(network),
            register_timeout=kwargs.pop("register_timeout", 1.0),
            **kwargs,
        )
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.disconnect()


@pytest.fixture
def settle(hub):
    """Run the broker and the given clients until no work is pending."""

    async def _settle(*clients: PeerClient, rounds: int = 12) -> None:
        for _ in range(rounds):
            await hub.wait_idle()
            for client in clients:
                await client.wait_idle()
            await asyncio.sleep(0)

    return _settle
