import json

import pytest

from domain.common.exceptions import EnvelopeDecodeError, InvalidIdentityError
from domain.signaling.envelope import (
    AnswerEnvelope,
    CandidateEnvelope,
    DeliveryFailedEnvelope,
    IceCandidate,
    OfferEnvelope,
    RegisterAckEnvelope,
    RegisterEnvelope,
    SessionDescription,
    decode,
    decode_header,
    encode,
    inbox_address,
    is_inbox_address,
    target_of,
    validate_identity,
)
from shared.codes import SignalingCode


ENVELOPES = [
    RegisterEnvelope(username="alice", from_="alice"),
    RegisterEnvelope(username="alice"),
    RegisterAckEnvelope(success=True, message="Registration successful"),
    RegisterAckEnvelope(success=False, message="Username taken!"),
    OfferEnvelope(from_="alice", offer=SessionDescription(type="offer", sdp="v=0\r\n")),
    AnswerEnvelope(from_="bob", answer=SessionDescription(type="answer", sdp="v=0\r\n")),
    CandidateEnvelope(
        from_="bob",
        candidate=IceCandidate(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdpMid="0", sdpMLineIndex=0),
    ),
    DeliveryFailedEnvelope.user_offline("carol"),
]


@pytest.mark.parametrize("envelope", ENVELOPES, ids=lambda e: e.type)
def test_round_trip(envelope):
    assert decode(encode(envelope)) == envelope


def test_wire_field_names():
    env = CandidateEnvelope(
        from_="bob",
        candidate=IceCandidate(candidate="candidate:1", sdpMid="0", sdpMLineIndex=0),
    )
    doc = json.loads(encode(env))
    assert doc == {
        "type": "candidate",
        "from": "bob",
        "candidate": {"candidate": "candidate:1", "sdpMid": "0", "sdpMLineIndex": 0},
    }


def test_register_ack_comes_from_server():
    doc = json.loads(encode(RegisterAckEnvelope(success=True)))
    assert doc["from"] == "server"


def test_delivery_failed_shape():
    doc = json.loads(encode(DeliveryFailedEnvelope.user_offline("carol")))
    assert doc["type"] == "delivery-failed"
    assert doc["target"] == "carol"
    assert doc["reason"] == "user-offline"
    assert isinstance(doc["timestamp"], int) and doc["timestamp"] > 0


def test_decode_accepts_text():
    env = decode('{"type": "register", "username": "alice"}')
    assert isinstance(env, RegisterEnvelope)
    assert env.from_ is None


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[]",
        b'{"from": "alice"}',
        b'{"type": "hello", "from": "alice"}',
        b'{"type": "offer", "from": "alice"}',
        b'{"type": "offer", "from": "", "offer": {"type": "offer", "sdp": "x"}}',
        b'{"type": "answer", "answer": {"type": "answer", "sdp": "x"}}',
        b'{"type": "register", "username": "a/b"}',
        b'{"type": "register", "username": "server"}',
    ],
)
def test_malformed_payloads_are_rejected(payload):
    with pytest.raises(EnvelopeDecodeError) as exc_info:
        decode(payload)
    assert exc_info.value.code == SignalingCode.MALFORMED_ENVELOPE


def test_envelopes_are_immutable():
    env = OfferEnvelope(from_="alice", offer=SessionDescription(type="offer", sdp="x"))
    with pytest.raises(Exception):
        env.from_ = "mallory"


def test_inbox_addresses():
    assert inbox_address("bob") == "bob/incoming"
    assert is_inbox_address("bob/incoming")
    assert not is_inbox_address("system/register")
    assert not is_inbox_address("/incoming")
    assert not is_inbox_address("a/b/incoming")
    assert target_of("bob/incoming") == "bob"
    with pytest.raises(ValueError):
        target_of("bob/outgoing")


@pytest.mark.parametrize("identity", ["alice", "Bob_2", "x" * 64, "dash-name"])
def test_valid_identities(identity):
    assert validate_identity(identity) == identity


@pytest.mark.parametrize("identity", ["", "x" * 65, "a/b", "a+b", "a#b", "a b", "server", None, 42])
def test_invalid_identities(identity):
    with pytest.raises(InvalidIdentityError) as exc_info:
        validate_identity(identity)
    assert exc_info.value.code == SignalingCode.INVALID_IDENTITY


def test_routing_header_keeps_unknown_fields():
    header = decode_header(b'{"type": "renegotiate", "from": "alice", "reason": "ice-restart"}')
    assert header.type == "renegotiate"
    assert header.from_ == "alice"
    assert header.model_extra == {"reason": "ice-restart"}


@pytest.mark.parametrize(
    "payload",
    [b"{nope", b'{"type": "offer"}', b'{"from": "alice"}', b'{"type": "offer", "from": ""}'],
)
def test_routing_header_requires_type_and_sender(payload):
    with pytest.raises(EnvelopeDecodeError) as exc_info:
        decode_header(payload)
    assert exc_info.value.code == SignalingCode.MALFORMED_ENVELOPE


def test_registration_nonce_is_echoed_on_the_wire():
    register = json.loads(encode(RegisterEnvelope(username="alice", nonce="alice-1234")))
    assert register["nonce"] == "alice-1234"
    ack = decode(encode(RegisterAckEnvelope(success=True, nonce="alice-1234")))
    assert ack.nonce == "alice-1234"
