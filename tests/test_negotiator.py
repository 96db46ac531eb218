import json

import pytest

from client.negotiator import CandidateBuffer, NegotiationState, SessionNegotiator
from client.signaling import SignalingChannel
from shared.protocol import Role, SessionKey, SignalingMessage

from fakes import DummyConnection, DummyPeer, single_connector, wait_for_condition

OFFER = {"type": "offer", "sdp": "remote-offer"}
ANSWER = {"type": "answer", "sdp": "remote-answer"}


def _candidate(index: int) -> dict:
    return {"candidate": f"candidate:{index} 1 udp 2122260223 10.0.0.{index} 5000{index} typ host", "sdpMid": "0", "sdpMLineIndex": 0}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


async def _negotiator(role: Role) -> tuple[SessionNegotiator, DummyPeer, DummyConnection, SignalingChannel]:
    domain_role = "doctor" if role is Role.INITIATOR else "patient"
    key = SessionKey(appointment_id="42", role=role, domain_role=domain_role)
    connection = DummyConnection()
    channel = SignalingChannel("ws://relay.test/ws", connector=single_connector(connection))
    await channel.open()
    peer = DummyPeer()
    negotiator = SessionNegotiator(key, peer, channel)
    return negotiator, peer, connection, channel


def _sent(connection: DummyConnection) -> list[dict]:
    return [json.loads(raw) for raw in connection.sent]


def test_candidate_buffer_drains_in_arrival_order() -> None:
    buffer = CandidateBuffer()
    buffer.push("a")
    buffer.push("b")
    assert len(buffer) == 2
    assert buffer.drain() == ["a", "b"]
    assert len(buffer) == 0


@pytest.mark.anyio
async def test_initiator_offer_then_answer_reaches_connected() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.INITIATOR)
    states: list[NegotiationState] = []
    negotiator.on_state_change(states.append)

    await negotiator.begin()
    assert negotiator.state is NegotiationState.OFFER_SENT
    assert _sent(connection) == [{"type": "offer", "data": {"type": "offer", "sdp": f"offer-sdp-{peer.number}"}}]

    await negotiator.handle_message(SignalingMessage.answer(ANSWER))

    assert states == [NegotiationState.OFFER_SENT, NegotiationState.ANSWER_RECEIVED, NegotiationState.CONNECTED]
    assert peer.remote_description == ANSWER
    assert peer.calls.count("create_offer") == 1
    assert await negotiator.wait_connected() is True


@pytest.mark.anyio
async def test_begin_is_sent_once() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.INITIATOR)
    await negotiator.begin()
    await negotiator.begin()
    assert connection.sent_types() == ["offer"]
    assert peer.calls.count("create_offer") == 1


@pytest.mark.anyio
async def test_responder_answers_offer_and_reaches_connected() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.RESPONDER)
    states: list[NegotiationState] = []
    negotiator.on_state_change(states.append)

    await negotiator.begin()
    assert connection.sent == []

    await negotiator.handle_message(SignalingMessage.offer(OFFER))

    assert states == [NegotiationState.OFFER_RECEIVED, NegotiationState.ANSWER_SENT, NegotiationState.CONNECTED]
    assert peer.remote_description == OFFER
    assert _sent(connection) == [{"type": "answer", "data": {"type": "answer", "sdp": f"answer-sdp-{peer.number}"}}]


@pytest.mark.anyio
async def test_early_candidates_are_buffered_then_applied_in_order() -> None:
    negotiator, peer, _, _ = await _negotiator(Role.RESPONDER)
    for index in (1, 2, 3):
        await negotiator.handle_message(SignalingMessage.candidate(_candidate(index)))

    assert negotiator.pending_candidates == 3
    assert peer.applied_candidates == []

    await negotiator.handle_message(SignalingMessage.offer(OFFER))

    assert negotiator.state is NegotiationState.CONNECTED
    assert negotiator.pending_candidates == 0
    assert peer.applied_candidates == [_candidate(1), _candidate(2), _candidate(3)]

    await negotiator.handle_message(SignalingMessage.candidate(_candidate(4)))
    assert peer.applied_candidates[-1] == _candidate(4)
    assert negotiator.pending_candidates == 0


@pytest.mark.anyio
async def test_candidate_apply_failure_is_ignored(caplog) -> None:
    negotiator, peer, _, _ = await _negotiator(Role.RESPONDER)
    await negotiator.handle_message(SignalingMessage.offer(OFFER))
    peer.reject_candidates = True

    await negotiator.handle_message(SignalingMessage.candidate(_candidate(1)))

    assert negotiator.state is NegotiationState.CONNECTED
    assert "could not be applied" in caplog.text


@pytest.mark.anyio
async def test_malformed_remote_description_fails_negotiation() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.RESPONDER)

    await negotiator.handle_message(SignalingMessage.offer({"type": "offer"}))

    assert negotiator.state is NegotiationState.FAILED
    assert negotiator.failure is not None
    assert peer.closed is True
    assert connection.sent == []
    assert await negotiator.wait_connected() is False


@pytest.mark.anyio
async def test_initiator_ignores_offer_from_peer() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.INITIATOR)
    await negotiator.begin()

    await negotiator.handle_message(SignalingMessage.offer(OFFER))

    assert negotiator.state is NegotiationState.OFFER_SENT
    assert "create_answer" not in peer.calls
    assert connection.sent_types() == ["offer"]


@pytest.mark.anyio
async def test_unexpected_answer_is_ignored() -> None:
    negotiator, peer, _, _ = await _negotiator(Role.RESPONDER)
    await negotiator.handle_message(SignalingMessage.answer(ANSWER))
    assert negotiator.state is NegotiationState.IDLE
    assert peer.remote_description is None


@pytest.mark.anyio
async def test_closed_state_is_absorbing() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.RESPONDER)
    await negotiator.close()
    await negotiator.close()

    await negotiator.handle_message(SignalingMessage.offer(OFFER))
    await negotiator.begin()

    assert negotiator.state is NegotiationState.CLOSED
    assert peer.close_count == 1
    assert peer.handler_count() == 0
    assert connection.sent == []


@pytest.mark.anyio
async def test_channel_close_closes_negotiation() -> None:
    negotiator, peer, connection, channel = await _negotiator(Role.INITIATOR)
    channel.listen()
    await negotiator.begin()

    connection.drop()
    await wait_for_condition(lambda: negotiator.state is NegotiationState.CLOSED)
    assert peer.closed is True


@pytest.mark.anyio
async def test_local_candidates_are_signaled() -> None:
    negotiator, peer, connection, _ = await _negotiator(Role.INITIATOR)
    await negotiator.begin()

    await peer.emit("candidate", _candidate(9))

    assert connection.sent_types() == ["offer", "candidate"]
    assert _sent(connection)[-1]["data"] == _candidate(9)
