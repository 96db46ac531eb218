import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from relay.rooms import RoomRegistry
from relay.signaling_server import SignalingRelay
from shared.protocol import SignalingMessage


class DummySocket:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_code = None

    async def send_text(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason=None) -> None:
        self.closed = True
        self.close_code = code


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_frames_are_forwarded_to_the_other_role_only() -> None:
    registry = RoomRegistry()
    doctor_socket, patient_socket, other_socket = DummySocket(), DummySocket(), DummySocket()
    doctor, _ = await registry.join("42", "doctor", doctor_socket)

    assert await registry.forward(doctor, "early offer") is False

    await registry.join("42", "patient", patient_socket)
    await registry.join("43", "patient", other_socket)
    frame = SignalingMessage.offer({"type": "offer", "sdp": "v=0"}).encode()
    assert await registry.forward(doctor, frame) is True

    assert patient_socket.sent == [frame]
    assert other_socket.sent == []
    assert doctor_socket.sent == []
    assert doctor.messages_forwarded == 1


@pytest.mark.anyio
async def test_newer_connection_replaces_stale_slot() -> None:
    registry = RoomRegistry()
    stale_socket, fresh_socket = DummySocket(), DummySocket()
    stale, replaced = await registry.join("42", "patient", stale_socket)
    assert replaced is None

    fresh, replaced = await registry.join("42", "patient", fresh_socket)
    assert replaced is stale

    # the stale handler leaving must not evict the fresh connection
    assert await registry.leave(stale) is None
    doctor, _ = await registry.join("42", "doctor", DummySocket())
    await registry.forward(doctor, "answer")
    assert fresh_socket.sent == ["answer"]
    assert stale_socket.sent == []


@pytest.mark.anyio
async def test_leaving_disconnects_the_peer_by_default() -> None:
    registry = RoomRegistry()
    doctor, _ = await registry.join("42", "doctor", DummySocket())
    patient, _ = await registry.join("42", "patient", DummySocket())

    assert await registry.leave(doctor) is patient
    assert await registry.leave(patient) is None

    snapshot = await registry.snapshot()
    assert snapshot["room_count"] == 0
    assert [event["type"] for event in snapshot["events"]] == [
        "participant_joined",
        "participant_joined",
        "participant_left",
        "participant_disconnected",
    ]


@pytest.mark.anyio
async def test_peer_can_stay_when_configured() -> None:
    registry = RoomRegistry(close_peer_on_leave=False)
    doctor, _ = await registry.join("42", "doctor", DummySocket())
    await registry.join("42", "patient", DummySocket())

    assert await registry.leave(doctor) is None
    snapshot = await registry.snapshot()
    assert snapshot["participant_count"] == 1
    assert snapshot["rooms"][0]["participants"][0]["role"] == "patient"


@pytest.mark.anyio
async def test_join_rejects_unknown_roles() -> None:
    registry = RoomRegistry()
    with pytest.raises(ValueError):
        await registry.join("42", "nurse", DummySocket())
    with pytest.raises(ValueError):
        await registry.join("", "doctor", DummySocket())


@pytest.mark.anyio
async def test_close_all_disconnects_everyone() -> None:
    registry = RoomRegistry()
    sockets = [DummySocket(), DummySocket()]
    await registry.join("42", "doctor", sockets[0])
    await registry.join("43", "patient", sockets[1])

    await registry.close_all()

    assert all(socket.closed for socket in sockets)
    assert (await registry.snapshot())["participant_count"] == 0


def test_relay_rejects_missing_parameters() -> None:
    with TestClient(SignalingRelay().app) as client:
        for query in ("", "?appointment_id=42", "?appointment_id=42&role=nurse", "?role=doctor"):
            with pytest.raises(WebSocketDisconnect) as excinfo:
                with client.websocket_connect(f"/ws{query}"):
                    pass
            assert excinfo.value.code == 1008


def test_relay_forwards_and_closes_peer_on_leave() -> None:
    relay = SignalingRelay()
    with TestClient(relay.app) as client:
        frame = SignalingMessage.answer({"type": "answer", "sdp": "v=0"}).encode()

        with client.websocket_connect("/ws?appointment_id=42&role=patient") as patient:
            with client.websocket_connect("/ws?appointment_id=42&role=doctor") as doctor:
                doctor.send_text('{"type":"offer","data":{"type":"offer","sdp":"v=0"}}')
                assert patient.receive_text() == '{"type":"offer","data":{"type":"offer","sdp":"v=0"}}'
                patient.send_text(frame)
                assert doctor.receive_text() == frame

                health = client.get("/api/health").json()
                assert health["status"] == "ok"
                assert health["participant_count"] == 2

            with pytest.raises(WebSocketDisconnect):
                patient.receive_text()

        rooms = client.get("/api/rooms").json()
        assert rooms["room_count"] == 0


class OfferOnJoinRegistry(RoomRegistry):
    """Forwards an offer from the waiting doctor the moment the patient joins."""

    def __init__(self, offer: str) -> None:
        super().__init__()
        self.offer = offer
        self.delivered = []

    async def join(self, appointment_id, role, socket, **kwargs):
        participant, replaced = await super().join(appointment_id, role, socket, **kwargs)
        if role == "patient":
            doctor = await self.peer_of(participant)
            if doctor is not None:
                self.delivered.append(await self.forward(doctor, self.offer))
        return participant, replaced


def test_frame_forwarded_during_join_reaches_new_participant() -> None:
    offer = SignalingMessage.offer({"type": "offer", "sdp": "v=0"}).encode()
    registry = OfferOnJoinRegistry(offer)
    with TestClient(SignalingRelay(registry).app) as client:

        with client.websocket_connect("/ws?appointment_id=42&role=doctor"):
            with client.websocket_connect("/ws?appointment_id=42&role=patient") as patient:
                assert patient.receive_text() == offer

        assert registry.delivered == [True]
