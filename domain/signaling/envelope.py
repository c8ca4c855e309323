"""
Signaling envelopes and their wire codec.

Every payload exchanged over the broker is one UTF-8 JSON document whose
``type`` field selects the variant. Clients decode payloads exactly once, at
the boundary, into one of the frozen models below; anything that fails to
decode is rejected here rather than deeper in the session code. The broker
reads only the routing header of addressed envelopes and forwards the rest.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from domain.common.exceptions import EnvelopeDecodeError, InvalidIdentityError
from shared.codes import REASON_USER_OFFLINE


REGISTRATION_TOPIC = "system/register"
INBOX_SUFFIX = "/incoming"
SERVER_IDENTITY = "server"

MAX_IDENTITY_LENGTH = 64
_FORBIDDEN_IDENTITY_CHARS = frozenset("/+#")


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def validate_identity(identity: object) -> str:
    """Return ``identity`` if it can be used as a routing name.

    Identities are embedded in topic names, so separators and wildcards are
    rejected along with the reserved broker sender name.
    """
    if not isinstance(identity, str):
        raise InvalidIdentityError(identity, "must be a string")
    if not identity:
        raise InvalidIdentityError(identity, "must not be empty")
    if len(identity) > MAX_IDENTITY_LENGTH:
        raise InvalidIdentityError(identity, f"longer than {MAX_IDENTITY_LENGTH} characters")
    if any(ch in _FORBIDDEN_IDENTITY_CHARS or ch.isspace() for ch in identity):
        raise InvalidIdentityError(identity, "contains a topic separator, wildcard or whitespace")
    if identity == SERVER_IDENTITY:
        raise InvalidIdentityError(identity, "reserved")
    return identity


def inbox_address(identity: str) -> str:
    return f"{identity}{INBOX_SUFFIX}"


def is_inbox_address(topic: str) -> bool:
    if not topic.endswith(INBOX_SUFFIX):
        return False
    target = topic[: -len(INBOX_SUFFIX)]
    return bool(target) and "/" not in target


def target_of(topic: str) -> str:
    """Identity addressed by an inbox topic."""
    if not is_inbox_address(topic):
        raise ValueError(f"not an inbox address: {topic!r}")
    return topic[: -len(INBOX_SUFFIX)]


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class SessionDescription(_WireModel):
    type: Literal["offer", "answer", "pranswer", "rollback"]
    sdp: str


class IceCandidate(_WireModel):
    candidate: str
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


NonEmptyStr = Annotated[str, Field(min_length=1)]


class RegisterEnvelope(_WireModel):
    type: Literal["register"] = "register"
    username: str
    from_: Optional[str] = Field(default=None, alias="from")
    # Echoed by the ack so a client can tell its own answer from a rival's
    nonce: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _check_username(cls, v: str) -> str:
        try:
            return validate_identity(v)
        except InvalidIdentityError as exc:
            raise ValueError(exc.message) from exc


class RegisterAckEnvelope(_WireModel):
    type: Literal["register-ack"] = "register-ack"
    from_: str = Field(default=SERVER_IDENTITY, alias="from")
    success: bool
    message: str = ""
    nonce: Optional[str] = None


class OfferEnvelope(_WireModel):
    type: Literal["offer"] = "offer"
    from_: NonEmptyStr = Field(alias="from")
    offer: SessionDescription


class AnswerEnvelope(_WireModel):
    type: Literal["answer"] = "answer"
    from_: NonEmptyStr = Field(alias="from")
    answer: SessionDescription


class CandidateEnvelope(_WireModel):
    type: Literal["candidate"] = "candidate"
    from_: NonEmptyStr = Field(alias="from")
    candidate: IceCandidate


class DeliveryFailedEnvelope(_WireModel):
    type: Literal["delivery-failed"] = "delivery-failed"
    target: str
    reason: str = REASON_USER_OFFLINE
    timestamp: int = Field(default_factory=now_ms)

    @classmethod
    def user_offline(cls, target: str) -> "DeliveryFailedEnvelope":
        return cls(target=target, reason=REASON_USER_OFFLINE)


Envelope = Annotated[
    Union[
        RegisterEnvelope,
        RegisterAckEnvelope,
        OfferEnvelope,
        AnswerEnvelope,
        CandidateEnvelope,
        DeliveryFailedEnvelope,
    ],
    Field(discriminator="type"),
]

# Only the broker may put these on an inbox
BROKER_ONLY_TYPES = frozenset({"register", "register-ack", "delivery-failed"})

_ENVELOPE_ADAPTER: TypeAdapter = TypeAdapter(Envelope)


class RoutingHeader(BaseModel):
    """Routing fields of an addressed envelope; the rest is carried untouched."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    type: NonEmptyStr
    from_: NonEmptyStr = Field(alias="from")


def _decode_error(exc: ValidationError) -> EnvelopeDecodeError:
    first = exc.errors()[0] if exc.error_count() else {}
    return EnvelopeDecodeError(
        f"malformed envelope: {first.get('msg', 'invalid payload')}",
        details={"loc": list(first.get("loc", ())), "error_type": first.get("type")},
    )


def encode(envelope: BaseModel) -> bytes:
    """Serialize an envelope with its wire field names."""
    return envelope.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")


def decode(payload: Union[bytes, bytearray, str]) -> Envelope:
    """Parse and validate a payload into its envelope variant.

    Raises:
        EnvelopeDecodeError: invalid JSON, unknown ``type`` or missing fields.
    """
    try:
        return _ENVELOPE_ADAPTER.validate_json(payload)
    except ValidationError as exc:
        raise _decode_error(exc) from exc


def decode_header(payload: Union[bytes, bytearray, str]) -> RoutingHeader:
    """Parse only the routing fields of an addressed envelope.

    Raises:
        EnvelopeDecodeError: invalid JSON or missing or empty ``type``/``from``.
    """
    try:
        return RoutingHeader.model_validate_json(payload)
    except ValidationError as exc:
        raise _decode_error(exc) from exc


__all__ = [
    "REGISTRATION_TOPIC",
    "INBOX_SUFFIX",
    "SERVER_IDENTITY",
    "MAX_IDENTITY_LENGTH",
    "now_ms",
    "validate_identity",
    "inbox_address",
    "is_inbox_address",
    "target_of",
    "SessionDescription",
    "IceCandidate",
    "RegisterEnvelope",
    "RegisterAckEnvelope",
    "OfferEnvelope",
    "AnswerEnvelope",
    "CandidateEnvelope",
    "DeliveryFailedEnvelope",
    "Envelope",
    "BROKER_ONLY_TYPES",
    "RoutingHeader",
    "encode",
    "decode",
    "decode_header",
]
