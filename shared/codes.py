"""
Shared signaling codes used across layers (Domain/Application/Infrastructure).

This module provides a single source of truth to avoid drift between
error codes and the reason strings carried on the wire.
"""
from enum import IntEnum


class SignalingCode(IntEnum):
    """Signaling status codes (single source)."""

    # Malformed input (1xxxx)
    MALFORMED_ENVELOPE = 10000
    UNKNOWN_ENVELOPE_TYPE = 10001
    INVALID_IDENTITY = 10002

    # Policy violations (2xxxx)
    USERNAME_TAKEN = 20001
    USER_OFFLINE = 20002
    UNKNOWN_SENDER = 20003
    SPOOFED_SENDER = 20004
    BROKER_DRAINING = 20005

    # Session errors (3xxxx)
    TRANSPORT_FAILED = 30002

    # System errors (4xxxx)
    BROKER_UNAVAILABLE = 40001


# Reason strings as they appear on the wire
REASON_USERNAME_TAKEN = "username-taken"
REASON_USER_OFFLINE = "user-offline"
REASON_BROKER_DRAINING = "broker-shutting-down"


__all__ = [
    "SignalingCode",
    "REASON_USERNAME_TAKEN",
    "REASON_USER_OFFLINE",
    "REASON_BROKER_DRAINING",
]
