import json

import pytest

from shared.config import ChatTransportKind, SessionConfig
from shared.protocol import (
    ChatMessage,
    IceServer,
    ProtocolError,
    Role,
    SessionKey,
    SignalingMessage,
    SignalingType,
    peer_domain_role,
    relay_url,
    role_for,
)


def test_signaling_message_uses_wrapped_envelope() -> None:
    message = SignalingMessage.offer({"type": "offer", "sdp": "v=0"})
    assert json.loads(message.encode()) == {"type": "offer", "data": {"type": "offer", "sdp": "v=0"}}

    decoded = SignalingMessage.decode(message.encode().encode("utf-8"))
    assert decoded == message


def test_chat_signaling_payload() -> None:
    message = SignalingMessage.chat("doctor", "hello")
    assert message.type is SignalingType.CHAT
    assert message.data == {"sender": "doctor", "content": "hello"}


@pytest.mark.parametrize(
    "raw",
    [
        b"\xff\xfe",
        "not json",
        "[1, 2]",
        '{"data": {}}',
        '{"type": "renegotiate", "data": {}}',
        '{"type": "answer"}',
    ],
)
def test_decode_rejects_malformed_frames(raw) -> None:
    with pytest.raises(ProtocolError):
        SignalingMessage.decode(raw)


def test_role_mapping_has_exactly_one_initiator() -> None:
    assert role_for("doctor") is Role.INITIATOR
    assert role_for("Patient") is Role.RESPONDER
    assert role_for("patient", initiator_domain_role="patient") is Role.INITIATOR
    assert role_for("doctor", initiator_domain_role="patient") is Role.RESPONDER


def test_peer_domain_role() -> None:
    assert peer_domain_role("doctor") == "patient"
    assert peer_domain_role("PATIENT") == "doctor"
    with pytest.raises(ValueError):
        peer_domain_role("bot")


def test_relay_url_mirrors_transport_security() -> None:
    key = SessionKey(appointment_id="42", role=Role.INITIATOR, domain_role="doctor")
    assert relay_url("https://clinic.example", key) == "wss://clinic.example/ws?appointment_id=42&role=doctor"
    assert relay_url("http://localhost:8080", key) == "ws://localhost:8080/ws?appointment_id=42&role=doctor"


def test_chat_message_from_store_row_is_tolerant() -> None:
    message = ChatMessage.from_dict({"sender": "patient", "content": "hi", "timestamp": "not-a-number", "id": 7})
    assert message.sender == "patient"
    assert message.content == "hi"
    assert message.timestamp > 0

    empty = ChatMessage.from_dict({})
    assert empty.sender == ""
    assert empty.content == ""


def test_ice_server_accepts_single_url() -> None:
    server = IceServer.from_dict({"urls": "turn:turn.example:3478", "username": "u", "credential": "c"})
    assert server.urls == ("turn:turn.example:3478",)
    assert server.to_dict() == {"urls": ["turn:turn.example:3478"], "username": "u", "credential": "c"}


def test_session_config_derives_key_and_url() -> None:
    config = SessionConfig(api_base_url="https://clinic.example/api", appointment_id="42", domain_role="Patient")
    assert config.role is Role.RESPONDER
    assert config.peer_domain_role == "doctor"
    assert config.session_key.domain_role == "patient"
    assert config.signaling_url == "wss://clinic.example/ws?appointment_id=42&role=patient"
    assert config.chat_transport is ChatTransportKind.STORE


def test_session_config_relay_override() -> None:
    config = SessionConfig(
        api_base_url="https://clinic.example/api",
        appointment_id="7",
        domain_role="doctor",
        relay_url_override="ws://127.0.0.1:9000/signal",
    )
    assert config.signaling_url == "ws://127.0.0.1:9000/signal?appointment_id=7&role=doctor"


@pytest.mark.parametrize(
    "overrides",
    [
        {"appointment_id": ""},
        {"domain_role": "nurse"},
        {"initiator_domain_role": "bot"},
        {"chat_poll_interval": 0},
    ],
)
def test_session_config_validation(overrides) -> None:
    values = {"api_base_url": "http://localhost:8080/api", "appointment_id": "1", "domain_role": "doctor"}
    values.update(overrides)
    with pytest.raises(ValueError):
        SessionConfig(**values)


def test_session_config_is_hashable() -> None:
    turn = IceServer.from_dict({"urls": ["turn:turn.example:3478"], "username": "u", "credential": "c"})
    first = SessionConfig(api_base_url="https://clinic.example/api", appointment_id="42", domain_role="doctor")
    second = SessionConfig(
        api_base_url="https://clinic.example/api",
        appointment_id="42",
        domain_role="doctor",
        ice_servers=(turn,),
    )

    assert hash(first) == hash(SessionConfig(api_base_url="https://clinic.example/api", appointment_id="42", domain_role="doctor"))
    assert len({first, second}) == 2
