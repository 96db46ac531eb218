"""Core protocol primitives shared between the relay and the call client.

Signaling travels as one UTF-8 JSON object per websocket text frame using the
wrapped ``{"type": ..., "data": ...}`` envelope. The ``data`` member is opaque
to the negotiation layer; only the peer connection adapter looks inside it.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, TypedDict
from urllib.parse import urlencode, urlsplit, urlunsplit


class Role(str, Enum):
    """Asymmetric negotiation roles."""

    INITIATOR = "initiator"
    RESPONDER = "responder"


DOCTOR = "doctor"
PATIENT = "patient"
BOT = "bot"
PARTICIPANT_ROLES = (DOCTOR, PATIENT)


class SignalingType(str, Enum):
    """Signaling message variants exchanged through the relay."""

    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    CHAT = "chat"


class ProtocolError(ValueError):
    """Raised when a signaling frame cannot be decoded."""


class SignalingEnvelope(TypedDict):
    """Wire representation of a signaling message."""

    type: str
    data: Any


@dataclass(slots=True, frozen=True)
class SignalingMessage:
    type: SignalingType
    data: Any

    def encode(self) -> str:
        envelope: SignalingEnvelope = {"type": self.type.value, "data": self.data}
        return json.dumps(envelope, separators=(",", ":"))

    @classmethod
    def decode(cls, raw: str | bytes) -> "SignalingMessage":
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ProtocolError("Signaling frame is not valid UTF-8") from exc
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError("Signaling frame is not valid JSON") from exc
        if not isinstance(envelope, dict) or "type" not in envelope:
            raise ProtocolError("Signaling frame has no type")
        try:
            message_type = SignalingType(envelope["type"])
        except ValueError as exc:
            raise ProtocolError(f"Unknown signaling type {envelope['type']!r}") from exc
        if "data" not in envelope:
            raise ProtocolError(f"Signaling frame {message_type.value} has no data")
        return cls(message_type, envelope["data"])

    @classmethod
    def offer(cls, description: Any) -> "SignalingMessage":
        return cls(SignalingType.OFFER, description)

    @classmethod
    def answer(cls, description: Any) -> "SignalingMessage":
        return cls(SignalingType.ANSWER, description)

    @classmethod
    def candidate(cls, candidate: Any) -> "SignalingMessage":
        return cls(SignalingType.CANDIDATE, candidate)

    @classmethod
    def chat(cls, sender: str, content: str) -> "SignalingMessage":
        return cls(SignalingType.CHAT, {"sender": sender, "content": content})


@dataclass(slots=True, frozen=True)
class SessionKey:
    """Addresses one participant of one appointment on the relay."""

    appointment_id: str
    role: Role
    domain_role: str

    def query_params(self) -> Dict[str, str]:
        return {"appointment_id": self.appointment_id, "role": self.domain_role}


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """Payload for chat history entries."""

    sender: str
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        timestamp = data.get("timestamp")
        try:
            parsed = float(timestamp) if timestamp is not None else time.time()
        except (TypeError, ValueError):
            parsed = time.time()
        return cls(
            sender=str(data.get("sender", "")),
            content=str(data.get("content", "")),
            timestamp=parsed,
        )


@dataclass(slots=True, frozen=True)
class IceServer:
    """Static STUN/TURN entry handed to the peer connection."""

    urls: Tuple[str, ...]
    username: Optional[str] = None
    credential: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"urls": list(self.urls)}
        if self.username:
            data["username"] = self.username
        if self.credential:
            data["credential"] = self.credential
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceServer":
        urls = data["urls"]
        if isinstance(urls, str):
            urls = [urls]
        return cls(
            urls=tuple(str(url) for url in urls),
            username=data.get("username"),
            credential=data.get("credential"),
        )


DEFAULT_API_PORT = 8080
DEFAULT_RELAY_PORT = 8080
DEFAULT_RELAY_PATH = "/ws"
DEFAULT_STUN_SERVER = "stun:stun.l.google.com:19302"
CHAT_POLL_INTERVAL_SECONDS = 3.0
CHAT_DATA_CHANNEL_LABEL = "chat"
TERMINAL_APPOINTMENT_STATUS = "completed"


def role_for(domain_role: str, initiator_domain_role: str = DOCTOR) -> Role:
    """Map a domain role to its negotiation role; exactly one domain role initiates."""

    if domain_role.lower() == initiator_domain_role.lower():
        return Role.INITIATOR
    return Role.RESPONDER


def peer_domain_role(domain_role: str) -> str:
    """Return the domain role on the other end of the call."""

    lowered = domain_role.lower()
    if lowered == DOCTOR:
        return PATIENT
    if lowered == PATIENT:
        return DOCTOR
    raise ValueError(f"Unknown participant role {domain_role!r}")


def relay_url(base_url: str, key: SessionKey, path: str = DEFAULT_RELAY_PATH) -> str:
    """Build the relay websocket URL for ``key``.

    The scheme mirrors the transport security of ``base_url``: ``https`` maps
    to ``wss`` and anything else to plain ``ws``.
    """

    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    return urlunsplit((scheme, parts.netloc, path, urlencode(key.query_params()), ""))
