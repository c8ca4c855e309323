"""
Peer session negotiator.

Drives one transport session through offer/answer/candidate exchange with a
single remote identity. Every operation runs as a task owned by the session
and serialized by the session lock, so one peer's transitions are sequential
while other peers proceed concurrently. Teardown cancels outstanding work and
hands the transport and channel back to the owner for closing.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Set

from application.ports.transport import (
    EVENT_CLOSE,
    EVENT_CONNECTION_STATE,
    EVENT_DATA_CHANNEL,
    EVENT_ERROR,
    EVENT_ICE_CANDIDATE,
    EVENT_MESSAGE,
    EVENT_OPEN,
    DataChannelPort,
    TransportConfig,
    TransportEnginePort,
    TransportSessionPort,
)
from core.logging_config import get_logger
from domain.signaling.envelope import (
    AnswerEnvelope,
    CandidateEnvelope,
    IceCandidate,
    OfferEnvelope,
    SessionDescription,
)
from domain.signaling.session import (
    TERMINAL_TRANSPORT_STATES,
    PeerSession,
    ReleasedHandles,
    SessionRole,
    SessionState,
)


logger = get_logger(__name__)


STATUS_FAILED = "failed"
STATUS_UNREACHABLE = "unreachable"

CHANNEL_OPEN = "open"

SendSignal = Callable[[str, Any], Awaitable[Any]]


def _noop(*args: Any) -> None:
    return None


@dataclass(slots=True)
class SessionCallbacks:
    """Application hooks; all are plain callables invoked on the event loop."""

    on_peer_connected: Callable[[str], Any] = _noop
    on_peer_disconnected: Callable[[str], Any] = _noop
    on_message: Callable[[str, Any], Any] = _noop
    on_connection_status: Callable[[str, str], Any] = _noop


class PeerSessionNegotiator:
    def __init__(
        self,
        *,
        local_identity: str,
        remote_identity: str,
        role: SessionRole,
        engine: TransportEnginePort,
        send_signal: SendSignal,
        callbacks: Optional[SessionCallbacks] = None,
        transport_config: Optional[TransportConfig] = None,
        channel_label: str = "chat",
        on_closed: Optional[Callable[["PeerSessionNegotiator", ReleasedHandles], None]] = None,
    ) -> None:
        self.session = PeerSession(
            local_identity=local_identity, remote_identity=remote_identity, role=role
        )
        self._engine = engine
        self._send_signal = send_signal
        self._callbacks = callbacks or SessionCallbacks()
        self._transport_config = transport_config or TransportConfig()
        self._channel_label = channel_label
        self._on_closed = on_closed
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def remote_identity(self) -> str:
        return self.session.remote_identity

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def is_closed(self) -> bool:
        return self.session.is_closed

    @property
    def is_negotiating(self) -> bool:
        return self.session.is_negotiating

    @property
    def pending_tasks(self) -> tuple:
        return tuple(self._tasks)

    # Operations

    def start_offer(self) -> None:
        """Create the transport and data channel, then offer in the background."""
        transport = self._open_transport()
        if transport is None:
            return
        channel = transport.create_data_channel(self._channel_label, ordered=True)
        self.session.channel = channel
        self._watch_channel(channel)
        self.session.state = SessionState.NEGOTIATING_LOCAL_OFFER
        logger.info("peer_offer_started", peer=self.remote_identity)
        self._spawn("offer", self._do_offer)

    def accept_offer(self, offer: SessionDescription) -> None:
        transport = self._open_transport()
        if transport is None:
            return
        self.session.state = SessionState.NEGOTIATING_REMOTE_OFFER
        logger.info("peer_offer_received", peer=self.remote_identity)
        self._spawn("answer", self._do_answer, offer)

    def accept_answer(self, answer: SessionDescription) -> None:
        self._spawn("accept-answer", self._do_accept_answer, answer)

    def add_remote_candidate(self, candidate: IceCandidate) -> None:
        self._spawn("add-candidate", self._do_add_candidate, candidate)

    def send_message(self, payload: Any) -> bool:
        channel = self.session.channel
        if self.session.state is not SessionState.CONNECTED or channel is None:
            return False
        if channel.ready_state != CHANNEL_OPEN:
            return False
        try:
            channel.send(payload)
        except Exception as exc:
            logger.warning("peer_send_failed", peer=self.remote_identity, error=str(exc))
            return False
        return True

    def abort(self, status: str, reason: str) -> None:
        """Report ``status`` to the application, then tear down."""
        if self.session.is_closed:
            return
        if status == STATUS_FAILED:
            self.session.state = SessionState.FAILED
        self._notify("on_connection_status", self.remote_identity, status)
        self.teardown(reason)

    def teardown(self, reason: str) -> bool:
        """Close the session once; returns False if it was already closed."""
        handles = self.session.release(reason)
        if handles is None:
            return False
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        logger.info("peer_session_closed", peer=self.remote_identity, reason=reason)
        self._notify("on_peer_disconnected", self.remote_identity)
        if self._on_closed is not None:
            self._on_closed(self, handles)
        return True

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Negotiation steps, each run under the session lock

    async def _do_offer(self) -> None:
        transport = self.session.transport
        try:
            offer = await transport.create_offer()
            await transport.set_local_description(offer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail("offer-failed", exc)
            return
        description = transport.local_description or offer
        await self._send(OfferEnvelope(from_=self.session.local_identity, offer=description))

    async def _do_answer(self, offer: SessionDescription) -> None:
        transport = self.session.transport
        try:
            await transport.set_remote_description(offer)
            self.session.remote_description_set = True
            answer = await transport.create_answer()
            await transport.set_local_description(answer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail("answer-failed", exc)
            return
        description = transport.local_description or answer
        await self._send(AnswerEnvelope(from_=self.session.local_identity, answer=description))

    async def _do_accept_answer(self, answer: SessionDescription) -> None:
        if (
            self.session.state is not SessionState.NEGOTIATING_LOCAL_OFFER
            or self.session.remote_description_set
        ):
            logger.warning(
                "peer_answer_unexpected", peer=self.remote_identity, state=self.session.state.value
            )
            return
        try:
            await self.session.transport.set_remote_description(answer)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._fail("answer-rejected", exc)
            return
        self.session.remote_description_set = True
        logger.debug("peer_answer_applied", peer=self.remote_identity)

    async def _do_add_candidate(self, candidate: IceCandidate) -> None:
        if not self.session.remote_description_set:
            logger.warning(
                "peer_candidate_dropped",
                peer=self.remote_identity,
                state=self.session.state.value,
                reason="no remote description",
            )
            return
        try:
            await self.session.transport.add_candidate(candidate)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("peer_candidate_rejected", peer=self.remote_identity, error=str(exc))

    async def _do_send_candidate(self, candidate: IceCandidate) -> None:
        await self._send(CandidateEnvelope(from_=self.session.local_identity, candidate=candidate))

    # Transport and channel events

    def _open_transport(self) -> Optional[TransportSessionPort]:
        if self.session.is_closed:
            return None
        if self.session.transport is not None:
            logger.warning("peer_transport_exists", peer=self.remote_identity)
            return None
        try:
            transport = self._engine.create_session(self._transport_config)
        except Exception as exc:
            self._fail("transport-create-failed", exc)
            return None
        self.session.transport = transport
        transport.on(EVENT_ICE_CANDIDATE, lambda c: self._on_local_candidate(transport, c))
        transport.on(EVENT_CONNECTION_STATE, lambda s: self._on_connection_state(transport, s))
        transport.on(EVENT_DATA_CHANNEL, lambda ch: self._on_remote_channel(transport, ch))
        return transport

    def _watch_channel(self, channel: DataChannelPort) -> None:
        channel.on(EVENT_OPEN, lambda: self._on_channel_open(channel))
        channel.on(EVENT_MESSAGE, lambda payload: self._on_channel_message(channel, payload))
        channel.on(EVENT_CLOSE, lambda: self._on_channel_close(channel))
        channel.on(EVENT_ERROR, lambda error=None: self._on_channel_error(channel, error))

    def _on_local_candidate(self, transport: Any, candidate: Optional[IceCandidate]) -> None:
        if self.session.transport is not transport:
            return
        if candidate is None:
            logger.debug("ice_gathering_complete", peer=self.remote_identity)
            return
        self._spawn("send-candidate", self._do_send_candidate, candidate)

    def _on_connection_state(self, transport: Any, state: str) -> None:
        if self.session.transport is not transport:
            return
        logger.info("peer_connection_state", peer=self.remote_identity, state=state)
        self._notify("on_connection_status", self.remote_identity, state)
        if state in TERMINAL_TRANSPORT_STATES:
            if state == STATUS_FAILED:
                self.session.state = SessionState.FAILED
            self.teardown(f"transport-{state}")

    def _on_remote_channel(self, transport: Any, channel: DataChannelPort) -> None:
        if self.session.transport is not transport:
            channel.close()
            return
        if self.session.channel is not None:
            logger.warning("peer_extra_channel_ignored", peer=self.remote_identity, label=channel.label)
            return
        self.session.channel = channel
        self._watch_channel(channel)
        if channel.ready_state == CHANNEL_OPEN:
            self._on_channel_open(channel)

    def _on_channel_open(self, channel: DataChannelPort) -> None:
        if self.session.channel is not channel or self.session.state is SessionState.CONNECTED:
            return
        self.session.state = SessionState.CONNECTED
        logger.info("peer_connected", peer=self.remote_identity, role=self.session.role.value)
        self._notify("on_peer_connected", self.remote_identity)

    def _on_channel_message(self, channel: DataChannelPort, payload: Any) -> None:
        if self.session.channel is not channel:
            return
        self._notify("on_message", self.remote_identity, payload)

    def _on_channel_close(self, channel: DataChannelPort) -> None:
        if self.session.channel is not channel:
            return
        self.teardown("channel-closed")

    def _on_channel_error(self, channel: DataChannelPort, error: Any) -> None:
        if self.session.channel is not channel:
            return
        logger.warning("peer_channel_error", peer=self.remote_identity, error=str(error))

    # Helpers

    def _spawn(self, operation: str, step: Callable[..., Awaitable[None]], *args: Any) -> None:
        if self.session.is_closed:
            logger.debug("peer_operation_skipped", peer=self.remote_identity, operation=operation)
            return
        task = asyncio.create_task(
            self._run_locked(step, *args), name=f"peer-{self.remote_identity}-{operation}"
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._task_done(t, operation))

    async def _run_locked(self, step: Callable[..., Awaitable[None]], *args: Any) -> None:
        async with self._lock:
            if self.session.is_closed:
                return
            await step(*args)

    def _task_done(self, task: asyncio.Task, operation: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "peer_operation_failed",
                peer=self.remote_identity,
                operation=operation,
                error=repr(exc),
            )

    def _fail(self, reason: str, exc: BaseException) -> None:
        logger.warning("peer_negotiation_failed", peer=self.remote_identity, reason=reason, error=str(exc))
        self.abort(STATUS_FAILED, reason)

    async def _send(self, envelope: Any) -> None:
        try:
            await self._send_signal(self.remote_identity, envelope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "peer_signal_not_sent", peer=self.remote_identity, type=envelope.type, error=str(exc)
            )

    def _notify(self, hook: str, *args: Any) -> None:
        callback = getattr(self._callbacks, hook)
        try:
            callback(*args)
        except Exception:
            logger.exception("application_callback_failed", hook=hook, peer=self.remote_identity)
