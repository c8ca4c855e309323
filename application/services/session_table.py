"""Client-side table of peer sessions, one per remote identity."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

from application.ports.transport import TransportConfig, TransportEnginePort
from application.services.negotiator import (
    STATUS_UNREACHABLE,
    PeerSessionNegotiator,
    SendSignal,
    SessionCallbacks,
)
from core.logging_config import get_logger
from domain.common.exceptions import InvalidIdentityError
from domain.signaling.envelope import (
    AnswerEnvelope,
    CandidateEnvelope,
    DeliveryFailedEnvelope,
    OfferEnvelope,
    validate_identity,
)
from domain.signaling.session import PeerSession, ReleasedHandles, SessionRole


logger = get_logger(__name__)


class SessionTable:
    """
    Owns every peer session of one client.

    Opening a session for a remote identity always tears down the previous
    one first (last request wins), so at most one live session exists per
    remote identity.
    """

    def __init__(
        self,
        *,
        local_identity: str,
        engine: TransportEnginePort,
        send_signal: SendSignal,
        callbacks: Optional[SessionCallbacks] = None,
        transport_config: Optional[TransportConfig] = None,
        channel_label: str = "chat",
    ) -> None:
        self.local_identity = local_identity
        self._engine = engine
        self._send_signal = send_signal
        self._callbacks = callbacks or SessionCallbacks()
        self._transport_config = transport_config
        self._channel_label = channel_label
        self._sessions: Dict[str, PeerSessionNegotiator] = {}
        self._release_tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, remote: str) -> bool:
        return remote in self._sessions

    def get(self, remote: str) -> Optional[PeerSession]:
        negotiator = self._sessions.get(remote)
        return negotiator.session if negotiator is not None else None

    def identities(self) -> List[str]:
        return list(self._sessions)

    def open(self, remote: str, role: SessionRole) -> PeerSessionNegotiator:
        previous = self._sessions.pop(remote, None)
        if previous is not None:
            previous.teardown("replaced")
        negotiator = PeerSessionNegotiator(
            local_identity=self.local_identity,
            remote_identity=remote,
            role=role,
            engine=self._engine,
            send_signal=self._send_signal,
            callbacks=self._callbacks,
            transport_config=self._transport_config,
            channel_label=self._channel_label,
            on_closed=self._on_negotiator_closed,
        )
        self._sessions[remote] = negotiator
        logger.debug("peer_session_opened", peer=remote, role=role.value)
        return negotiator

    def connect_to_peer(self, remote: str) -> bool:
        try:
            validate_identity(remote)
        except InvalidIdentityError as exc:
            logger.warning("connect_to_peer_rejected", peer=remote, reason=exc.message)
            return False
        if remote == self.local_identity:
            logger.warning("connect_to_peer_rejected", peer=remote, reason="self connection")
            return False
        self.open(remote, SessionRole.INITIATOR).start_offer()
        return True

    def dispatch(self, envelope: Any) -> None:
        """Route one inbound envelope to the session it concerns."""
        if isinstance(envelope, DeliveryFailedEnvelope):
            self._on_delivery_failed(envelope)
            return
        sender = getattr(envelope, "from_", None)
        if sender == self.local_identity:
            logger.warning("envelope_from_self_dropped", type=envelope.type)
            return
        if isinstance(envelope, OfferEnvelope):
            self.open(sender, SessionRole.RESPONDER).accept_offer(envelope.offer)
            return

        negotiator = self._sessions.get(sender) if sender else None
        if isinstance(envelope, AnswerEnvelope):
            if negotiator is None:
                logger.warning("answer_without_session", peer=sender)
                return
            negotiator.accept_answer(envelope.answer)
        elif isinstance(envelope, CandidateEnvelope):
            if negotiator is None:
                logger.warning("candidate_without_session", peer=sender)
                return
            negotiator.add_remote_candidate(envelope.candidate)
        else:
            logger.debug("envelope_ignored", type=envelope.type)

    def send_message(self, remote: str, payload: Any) -> bool:
        negotiator = self._sessions.get(remote)
        if negotiator is None:
            return False
        return negotiator.send_message(payload)

    def close_all(self, reason: str = "client-disconnect") -> None:
        for remote in list(self._sessions):
            negotiator = self._sessions.pop(remote)
            negotiator.teardown(reason)

    async def wait_idle(self) -> None:
        """Wait for pending negotiation steps and handle releases to finish."""
        while True:
            pending = [t for n in self._sessions.values() for t in n.pending_tasks]
            pending.extend(self._release_tasks)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_delivery_failed(self, envelope: DeliveryFailedEnvelope) -> None:
        negotiator = self._sessions.get(envelope.target)
        logger.info("peer_unreachable", peer=envelope.target, reason=envelope.reason)
        if negotiator is not None and negotiator.is_negotiating:
            negotiator.abort(STATUS_UNREACHABLE, "peer-unreachable")

    def _on_negotiator_closed(self, negotiator: PeerSessionNegotiator, handles: ReleasedHandles) -> None:
        remote = negotiator.remote_identity
        if self._sessions.get(remote) is negotiator:
            del self._sessions[remote]
        task = asyncio.create_task(self._release(negotiator, handles), name=f"peer-{remote}-release")
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)

    async def _release(self, negotiator: PeerSessionNegotiator, handles: ReleasedHandles) -> None:
        if handles.channel is not None:
            try:
                handles.channel.close()
            except Exception as exc:
                logger.warning("peer_channel_close_failed", peer=negotiator.remote_identity, error=str(exc))
        if handles.transport is not None:
            try:
                await handles.transport.close()
            except Exception as exc:
                logger.warning("peer_transport_close_failed", peer=negotiator.remote_identity, error=str(exc))
        await negotiator.wait_idle()
