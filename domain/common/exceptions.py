"""Signaling exceptions shared by the domain, application and infrastructure layers.

Malformed input and negotiation failures are normally caught close to where
they are raised, logged and dropped; only broker connectivity problems reach
application callers as exceptions.
"""
from __future__ import annotations

from typing import Optional

from shared.codes import SignalingCode


class SignalingException(Exception):
    """Base class for signaling errors."""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "SignalingError",
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        super().__init__(self.message)


class EnvelopeDecodeError(SignalingException):
    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(
            code=SignalingCode.MALFORMED_ENVELOPE,
            message=message,
            error_type="EnvelopeDecodeError",
            details=details,
        )


class InvalidIdentityError(SignalingException):
    def __init__(self, identity: object, reason: str):
        super().__init__(
            code=SignalingCode.INVALID_IDENTITY,
            message=f"Invalid identity {identity!r}: {reason}",
            error_type="InvalidIdentity",
            details={"identity": identity, "reason": reason},
        )


class BrokerConnectionError(SignalingException):
    def __init__(self, address: str, reason: str):
        super().__init__(
            code=SignalingCode.BROKER_UNAVAILABLE,
            message=f"Cannot reach broker at {address}: {reason}",
            error_type="BrokerConnectionError",
            details={"address": address, "reason": reason},
        )


class TransportNegotiationError(SignalingException):
    def __init__(self, peer: Optional[str], message: str):
        details = {"peer": peer} if peer else None
        super().__init__(
            code=SignalingCode.TRANSPORT_FAILED,
            message=message,
            error_type="TransportNegotiationError",
            details=details,
        )


__all__ = [
    "SignalingException",
    "EnvelopeDecodeError",
    "InvalidIdentityError",
    "BrokerConnectionError",
    "TransportNegotiationError",
]
