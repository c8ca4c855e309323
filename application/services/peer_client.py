"""Application-facing peer client: signaling link plus session table."""
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from application.ports.broker import BrokerConnectorPort
from application.ports.transport import TransportConfig, TransportEnginePort
from application.services.negotiator import SessionCallbacks
from application.services.session_table import SessionTable
from application.services.signaling_link import SignalingLink
from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)


class PeerClient:
    """
    One chat participant.

    Assign the ``on_*`` attributes to observe peers; they are invoked on the
    event loop and any exception they raise is logged and swallowed:

    - ``on_peer_connected(identity)``
    - ``on_peer_disconnected(identity)``
    - ``on_message(identity, payload)``
    - ``on_connection_status(identity, status)``
    """

    def __init__(
        self,
        *,
        connector: BrokerConnectorPort,
        engine: TransportEnginePort,
        transport_config: Optional[TransportConfig] = None,
        channel_label: Optional[str] = None,
        register_timeout: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._transport_config = transport_config
        self._channel_label = channel_label or settings.transport.data_channel_label
        self.on_peer_connected: Optional[Callable[[str], Any]] = None
        self.on_peer_disconnected: Optional[Callable[[str], Any]] = None
        self.on_message: Optional[Callable[[str, Any], Any]] = None
        self.on_connection_status: Optional[Callable[[str, str], Any]] = None
        self._link = SignalingLink(
            connector=connector,
            register_timeout=register_timeout,
            on_envelope=self._dispatch,
            on_disconnect=self._close_sessions,
        )
        self._table: Optional[SessionTable] = None

    @property
    def identity(self) -> Optional[str]:
        return self._link.identity

    @property
    def is_connected(self) -> bool:
        return self._link.is_connected

    @property
    def peers(self) -> Dict[str, str]:
        """Remote identity to session status."""
        if self._table is None:
            return {}
        return {
            remote: self._table.get(remote).status.value for remote in self._table.identities()
        }

    async def connect(self, broker_address: str, identity: str) -> bool:
        # The table exists before registration so early inbound offers have a home
        await self._link.disconnect()
        self._table = SessionTable(
            local_identity=identity,
            engine=self._engine,
            send_signal=self._link.send,
            callbacks=SessionCallbacks(
                on_peer_connected=self._peer_connected,
                on_peer_disconnected=self._peer_disconnected,
                on_message=self._message,
                on_connection_status=self._connection_status,
            ),
            transport_config=self._transport_config,
            channel_label=self._channel_label,
        )
        return await self._link.connect(broker_address, identity)

    def connect_to_peer(self, identity: str) -> bool:
        if not self.is_connected or self._table is None:
            logger.warning("connect_to_peer_while_disconnected", peer=identity)
            return False
        return self._table.connect_to_peer(identity)

    def send_message(self, identity: str, payload: Any) -> bool:
        if self._table is None:
            return False
        return self._table.send_message(identity, payload)

    async def disconnect(self) -> None:
        await self._link.disconnect()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        if self._table is not None:
            await self._table.wait_idle()

    def _dispatch(self, envelope: Any) -> None:
        if self._table is not None:
            self._table.dispatch(envelope)

    def _close_sessions(self) -> None:
        if self._table is not None:
            self._table.close_all()

    def _peer_connected(self, identity: str) -> None:
        if self.on_peer_connected is not None:
            self.on_peer_connected(identity)

    def _peer_disconnected(self, identity: str) -> None:
        if self.on_peer_disconnected is not None:
            self.on_peer_disconnected(identity)

    def _message(self, identity: str, payload: Any) -> None:
        if self.on_message is not None:
            self.on_message(identity, payload)

    def _connection_status(self, identity: str, status: str) -> None:
        if self.on_connection_status is not None:
            self.on_connection_status(identity, status)
