import pytest

from application.services.negotiator import SessionCallbacks
from application.services.session_table import SessionTable
from domain.signaling.envelope import (
    AnswerEnvelope,
    CandidateEnvelope,
    DeliveryFailedEnvelope,
    IceCandidate,
    OfferEnvelope,
    SessionDescription,
)
from domain.signaling.session import SessionRole, SessionState


class Outbox:
    def __init__(self):
        self.sent = []

    async def __call__(self, target, envelope):
        self.sent.append((target, envelope))


@pytest.fixture
def outbox():
    return Outbox()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def table(engine, outbox):
    return SessionTable(local_identity="alice", engine=engine, send_signal=outbox)


def _offer(sender="bob", sdp="remote-offer"):
    return OfferEnvelope(from_=sender, offer=SessionDescription(type="offer", sdp=sdp))


@pytest.mark.asyncio
async def test_connect_to_peer_twice_leaves_one_live_session(table, engine):
    assert table.connect_to_peer("bob")
    first_transport = engine.sessions[0]
    assert table.connect_to_peer("bob")
    await table.wait_idle()

    assert table.identities() == ["bob"]
    assert len(engine.sessions) == 2
    assert first_transport.closed
    assert not engine.sessions[1].closed
    assert table.get("bob").transport is engine.sessions[1]


@pytest.mark.asyncio
async def test_connect_to_self_or_invalid_identity_is_rejected(table, engine):
    assert not table.connect_to_peer("alice")
    assert not table.connect_to_peer("bad/name")
    assert len(table) == 0
    assert engine.sessions == []


@pytest.mark.asyncio
async def test_offer_replaces_existing_session_with_responder(table, engine, outbox):
    table.connect_to_peer("bob")
    await table.wait_idle()
    table.dispatch(_offer())
    await table.wait_idle()

    session = table.get("bob")
    assert session.role is SessionRole.RESPONDER
    assert session.state is SessionState.NEGOTIATING_REMOTE_OFFER
    assert engine.sessions[0].closed
    assert any(isinstance(env, AnswerEnvelope) for _, env in outbox.sent)


@pytest.mark.asyncio
async def test_answer_and_candidate_without_session_are_dropped(table, engine):
    table.dispatch(AnswerEnvelope(from_="bob", answer=SessionDescription(type="answer", sdp="x")))
    table.dispatch(CandidateEnvelope(from_="bob", candidate=IceCandidate(candidate="candidate:1")))
    await table.wait_idle()
    assert len(table) == 0
    assert engine.sessions == []


@pytest.mark.asyncio
async def test_delivery_failed_tears_down_negotiating_session(engine, outbox):
    statuses = []
    table = SessionTable(
        local_identity="alice",
        engine=engine,
        send_signal=outbox,
        callbacks=SessionCallbacks(on_connection_status=lambda peer, status: statuses.append((peer, status))),
    )
    table.connect_to_peer("carol")
    await table.wait_idle()
    table.dispatch(DeliveryFailedEnvelope.user_offline("carol"))
    await table.wait_idle()

    assert "carol" not in table
    assert ("carol", "unreachable") in statuses
    assert engine.sessions[0].closed


@pytest.mark.asyncio
async def test_delivery_failed_for_unknown_target_is_harmless(table):
    table.dispatch(DeliveryFailedEnvelope.user_offline("nobody"))
    await table.wait_idle()
    assert len(table) == 0


@pytest.mark.asyncio
async def test_envelope_from_self_is_dropped(table, engine):
    table.dispatch(_offer(sender="alice"))
    await table.wait_idle()
    assert len(table) == 0
    assert engine.sessions == []


@pytest.mark.asyncio
async def test_close_all_releases_every_handle(table, engine):
    table.connect_to_peer("bob")
    table.connect_to_peer("carol")
    await table.wait_idle()
    table.close_all()
    await table.wait_idle()
    assert len(table) == 0
    assert all(t.closed for t in engine.sessions)
    assert all(t.channel.ready_state == "closed" for t in engine.sessions)


@pytest.mark.asyncio
async def test_send_message_to_unknown_peer_fails(table):
    assert table.send_message("bob", "hi") is False
