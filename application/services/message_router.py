"""Broker-side message router.

Inspects every payload a client publishes and decides its fate: registration
requests go to the identity registry and are always answered with a
``register-ack``; envelopes addressed to an inbox are checked on their
``type`` and ``from`` fields only and forwarded untouched when both ends are
registered, or answered with ``delivery-failed`` when the
target is offline. Other topics are delivered without inspection.
"""
from __future__ import annotations

from application.ports.broker import BrokerHubPort
from core.logging_config import get_logger
from domain.common.exceptions import EnvelopeDecodeError
from domain.signaling.envelope import (
    BROKER_ONLY_TYPES,
    REGISTRATION_TOPIC,
    DeliveryFailedEnvelope,
    RegisterAckEnvelope,
    RegisterEnvelope,
    decode,
    decode_header,
    encode,
    inbox_address,
    is_inbox_address,
    target_of,
)
from domain.signaling.registry import IdentityRegistry, RegistrationResult
from shared.codes import REASON_BROKER_DRAINING, SignalingCode


logger = get_logger(__name__)


ACK_MESSAGE_OK = "Registration successful"
ACK_MESSAGE_TAKEN = "Username taken!"
ACK_MESSAGE_DRAINING = "Broker is shutting down"


class MessageRouter:
    def __init__(self, *, registry: IdentityRegistry, hub: BrokerHubPort) -> None:
        self._registry = registry
        self._hub = hub
        self._accepting = True

    @property
    def accepting_registrations(self) -> bool:
        return self._accepting

    def stop_accepting(self) -> None:
        """Refuse further registrations; existing identities keep routing."""
        self._accepting = False

    async def handle_publish(self, connection_id: str, topic: str, payload: bytes) -> None:
        # One bad payload must never take the dispatcher down
        try:
            if topic == REGISTRATION_TOPIC:
                await self._handle_registration(connection_id, payload)
            elif is_inbox_address(topic):
                await self._handle_addressed(connection_id, topic, payload)
            else:
                await self._hub.deliver(topic, payload)
        except Exception:
            logger.exception("router_unexpected_error", connection_id=connection_id, topic=topic)

    async def handle_disconnect(self, connection_id: str) -> None:
        removed = self._registry.unregister_connection(connection_id)
        if removed:
            logger.info("identities_released", connection_id=connection_id, identities=removed)
        else:
            logger.debug("connection_closed", connection_id=connection_id)

    async def _handle_registration(self, connection_id: str, payload: bytes) -> None:
        try:
            envelope = decode(payload)
        except EnvelopeDecodeError as exc:
            logger.warning(
                "registration_malformed", connection_id=connection_id, error=exc.message, code=exc.code
            )
            return
        if not isinstance(envelope, RegisterEnvelope):
            logger.warning(
                "registration_unexpected_type",
                connection_id=connection_id,
                type=envelope.type,
                code=SignalingCode.UNKNOWN_ENVELOPE_TYPE,
            )
            return

        username = envelope.username
        if not self._accepting:
            result = RegistrationResult(success=False, reason=REASON_BROKER_DRAINING)
            message = ACK_MESSAGE_DRAINING
            code = SignalingCode.BROKER_DRAINING
        else:
            result = self._registry.register(username, connection_id)
            message = ACK_MESSAGE_OK if result.success else ACK_MESSAGE_TAKEN
            code = SignalingCode.USERNAME_TAKEN

        if result.success:
            logger.info("user_registered", username=username, connection_id=connection_id)
        else:
            logger.info(
                "registration_refused",
                username=username,
                connection_id=connection_id,
                reason=result.reason,
                code=code,
            )
        # Everyone listening on the inbox sees the ack; the nonce names the attempt it answers
        ack = RegisterAckEnvelope(success=result.success, message=message, nonce=envelope.nonce)
        await self._hub.deliver(inbox_address(username), encode(ack))

    async def _handle_addressed(self, connection_id: str, topic: str, payload: bytes) -> None:
        target = target_of(topic)
        try:
            header = decode_header(payload)
        except EnvelopeDecodeError as exc:
            logger.warning(
                "envelope_malformed",
                connection_id=connection_id,
                target=target,
                error=exc.message,
                code=exc.code,
            )
            return
        if header.type in BROKER_ONLY_TYPES:
            logger.warning(
                "envelope_not_addressable",
                connection_id=connection_id,
                target=target,
                type=header.type,
                code=SignalingCode.UNKNOWN_ENVELOPE_TYPE,
            )
            return

        sender = header.from_
        owner = self._registry.owner(sender)
        if owner is None:
            logger.warning(
                "unknown_sender",
                sender=sender,
                connection_id=connection_id,
                target=target,
                code=SignalingCode.UNKNOWN_SENDER,
            )
            return
        if owner != connection_id:
            logger.warning(
                "spoofed_sender",
                sender=sender,
                connection_id=connection_id,
                target=target,
                code=SignalingCode.SPOOFED_SENDER,
            )
            return

        logger.debug("envelope_attempted", sender=sender, target=target, type=header.type)
        if not self._registry.is_registered(target):
            logger.info(
                "delivery_failed",
                sender=sender,
                target=target,
                type=header.type,
                code=SignalingCode.USER_OFFLINE,
            )
            failure = DeliveryFailedEnvelope.user_offline(target)
            await self._hub.deliver(inbox_address(sender), encode(failure))
            return

        await self._hub.deliver(topic, payload)
        logger.debug("envelope_forwarded", sender=sender, target=target, type=header.type)
