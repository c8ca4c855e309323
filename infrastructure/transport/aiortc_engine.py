"""
aiortc implementation of the transport engine ports.

aiortc gathers every local candidate while ``setLocalDescription`` runs and
writes them into the SDP, so there is no trickle: the session only emits the
end-of-candidates marker (``None``) on ``icecandidate`` and callers send the
gathered ``local_description``. Trickled candidates coming from browser peers
are still accepted through ``add_candidate``.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from application.ports.transport import (
    EVENT_CONNECTION_STATE,
    EVENT_DATA_CHANNEL,
    EVENT_ICE_CANDIDATE,
    IceServer,
    TransportConfig,
)
from core.config import TransportSettings, settings
from core.logging_config import get_logger
from domain.common.exceptions import TransportNegotiationError
from domain.signaling.envelope import IceCandidate, SessionDescription


logger = get_logger(__name__)


CANDIDATE_PREFIX = "candidate:"


def transport_config_from_settings(transport: Optional[TransportSettings] = None) -> TransportConfig:
    """Build a ``TransportConfig`` from ``TRANSPORT__*`` settings."""
    transport = transport or settings.transport
    if not transport.ice_servers:
        return TransportConfig()
    return TransportConfig(
        ice_servers=[
            IceServer(
                urls=list(transport.ice_servers),
                username=transport.ice_username,
                credential=transport.ice_credential,
            )
        ]
    )


def parse_remote_candidate(candidate: IceCandidate):
    """Turn a trickled ``candidate:...`` line into an aiortc ``RTCIceCandidate``.

    Returns ``None`` for the empty end-of-candidates marker.
    """
    line = candidate.candidate.strip()
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    try:
        parsed = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as exc:
        raise TransportNegotiationError(None, f"unparsable candidate {candidate.candidate!r}") from exc
    parsed.sdpMid = candidate.sdp_mid
    parsed.sdpMLineIndex = candidate.sdp_mline_index
    return parsed


def _to_description(desc: Optional[RTCSessionDescription]) -> Optional[SessionDescription]:
    if desc is None:
        return None
    return SessionDescription(type=desc.type, sdp=desc.sdp)


class AiortcDataChannel:
    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, payload: Any) -> None:
        self._channel.send(payload)

    def close(self) -> None:
        self._channel.close()

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        # Event names match aiortc's own
        self._channel.on(event, handler)


class AiortcTransportSession:
    def __init__(self, pc: RTCPeerConnection) -> None:
        self._pc = pc
        self._handlers: Dict[str, List[Callable[..., Any]]] = {}

        @pc.on("connectionstatechange")
        def _on_state() -> None:
            self._emit(EVENT_CONNECTION_STATE, pc.connectionState)

        @pc.on("datachannel")
        def _on_channel(channel: RTCDataChannel) -> None:
            self._emit(EVENT_DATA_CHANNEL, AiortcDataChannel(channel))

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return _to_description(self._pc.localDescription)

    @property
    def remote_description(self) -> Optional[SessionDescription]:
        return _to_description(self._pc.remoteDescription)

    def create_data_channel(self, label: str, *, ordered: bool = True) -> AiortcDataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label, ordered=ordered))

    async def create_offer(self) -> SessionDescription:
        return _to_description(await self._pc.createOffer())

    async def create_answer(self) -> SessionDescription:
        return _to_description(await self._pc.createAnswer())

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        # Gathering is complete once setLocalDescription returns
        self._emit(EVENT_ICE_CANDIDATE, None)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_candidate(self, candidate: IceCandidate) -> None:
        parsed = parse_remote_candidate(candidate)
        if parsed is None:
            return
        await self._pc.addIceCandidate(parsed)

    async def close(self) -> None:
        await self._pc.close()

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("transport_handler_failed", event=event)


class AiortcTransportEngine:
    """Creates one ``RTCPeerConnection`` per peer session."""

    def create_session(self, config: TransportConfig) -> AiortcTransportSession:
        ice_servers = [
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in config.ice_servers
        ]
        pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=ice_servers))
        logger.debug("transport_session_created", ice_servers=len(ice_servers))
        return AiortcTransportSession(pc)


__all__ = [
    "AiortcTransportEngine",
    "AiortcTransportSession",
    "AiortcDataChannel",
    "parse_remote_candidate",
    "transport_config_from_settings",
]
