"""
Client-side signaling link.

Owns the single broker connection of a client: registers the identity,
listens on the client's inbox and publishes envelopes to other inboxes.
"""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Optional

from application.ports.broker import BrokerConnectionPort, BrokerConnectorPort
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import EnvelopeDecodeError, InvalidIdentityError
from domain.signaling.envelope import (
    REGISTRATION_TOPIC,
    RegisterAckEnvelope,
    RegisterEnvelope,
    decode,
    encode,
    inbox_address,
    validate_identity,
)


logger = get_logger(__name__)


def _connection_id_for(identity: str) -> str:
    # Unique per attempt so a duplicate identity cannot take over the owner's connection
    return f"{identity}-{uuid.uuid4().hex[:8]}"


class SignalingLink:
    def __init__(
        self,
        *,
        connector: BrokerConnectorPort,
        register_timeout: Optional[float] = None,
        on_envelope: Optional[Callable[[Any], None]] = None,
        on_disconnect: Optional[Callable[[], None]] = None,
    ) -> None:
        self._connector = connector
        self._register_timeout = (
            settings.client.register_timeout_s if register_timeout is None else register_timeout
        )
        self.on_envelope = on_envelope
        self.on_disconnect = on_disconnect
        self._connection: Optional[BrokerConnectionPort] = None
        self._identity: Optional[str] = None
        self._registered = False
        self._pending_ack: Optional[asyncio.Future] = None
        self._pending_nonce: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def is_connected(self) -> bool:
        return self._registered and self._connection is not None and self._connection.is_open

    async def connect(self, address: str, identity: str) -> bool:
        """Connect to the broker and register ``identity``.

        Returns False when the identity is invalid, taken, refused or not
        acknowledged in time, and when ``disconnect`` is called before the ack
        arrives; the connection is closed in those cases.

        Raises:
            BrokerConnectionError: the broker could not be reached.
        """
        try:
            validate_identity(identity)
        except InvalidIdentityError as exc:
            logger.warning("identity_invalid", identity=identity, reason=exc.message)
            return False

        await self.disconnect()
        connection = await self._connector.open_connection(address, _connection_id_for(identity))
        self._connection = connection
        self._identity = identity
        ack_future = asyncio.get_running_loop().create_future()
        self._pending_ack = ack_future
        self._pending_nonce = connection.connection_id
        try:
            # Subscribe first so the ack cannot be missed
            await connection.subscribe(inbox_address(identity), self._on_inbox)
            register = RegisterEnvelope(username=identity, from_=identity, nonce=self._pending_nonce)
            await connection.publish(REGISTRATION_TOPIC, encode(register))
            ack = await asyncio.wait_for(ack_future, timeout=self._register_timeout)
        except asyncio.TimeoutError:
            logger.warning("registration_timeout", identity=identity, timeout=self._register_timeout)
            await self.disconnect()
            return False
        except asyncio.CancelledError:
            await self.disconnect()
            raise
        except Exception:
            if ack_future.done() and ack_future.result() is None:
                logger.info("registration_abandoned", identity=identity)
                return False
            await self.disconnect()
            raise
        finally:
            if self._pending_ack is ack_future:
                self._pending_ack = None
                self._pending_nonce = None

        if ack is None:
            # disconnect() was called while the ack was pending
            logger.info("registration_abandoned", identity=identity)
            return False
        if not ack.success:
            logger.warning("registration_refused", identity=identity, message=ack.message)
            await self.disconnect()
            return False

        self._registered = True
        logger.info("registered", identity=identity, connection_id=connection.connection_id)
        return True

    async def send(self, target: str, envelope: Any) -> bool:
        connection = self._connection
        if not self._registered or connection is None or not connection.is_open:
            logger.info("signal_not_sent", target=target, type=envelope.type, reason="disconnected")
            return False
        await connection.publish(inbox_address(target), encode(envelope))
        return True

    async def disconnect(self) -> None:
        connection = self._connection
        identity = self._identity
        was_registered = self._registered
        self._connection = None
        self._identity = None
        self._registered = False
        if self._pending_ack is not None and not self._pending_ack.done():
            self._pending_ack.set_result(None)
        if was_registered and self.on_disconnect is not None:
            try:
                self.on_disconnect()
            except Exception:
                logger.exception("disconnect_hook_failed", identity=identity)
        if connection is not None:
            await connection.aclose()
            logger.info("signaling_disconnected", identity=identity)

    async def _on_inbox(self, topic: str, payload: bytes) -> None:
        try:
            envelope = decode(payload)
        except EnvelopeDecodeError as exc:
            logger.warning("inbound_envelope_malformed", topic=topic, error=exc.message)
            return

        if isinstance(envelope, RegisterAckEnvelope):
            pending = self._pending_ack
            if pending is not None and not pending.done() and envelope.nonce == self._pending_nonce:
                pending.set_result(envelope)
            else:
                # Acks for other attempts on the same inbox
                logger.debug("register_ack_ignored", success=envelope.success, nonce=envelope.nonce)
            return
        if not self._registered:
            logger.debug("inbound_envelope_before_registration", type=envelope.type)
            return
        if isinstance(envelope, RegisterEnvelope):
            logger.debug("envelope_ignored", type=envelope.type)
            return
        if self.on_envelope is None:
            return
        try:
            self.on_envelope(envelope)
        except Exception:
            logger.exception("inbound_envelope_failed", type=envelope.type)
