"""Immutable per-session configuration passed to every client component."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from shared.protocol import (
    CHAT_POLL_INTERVAL_SECONDS,
    DEFAULT_STUN_SERVER,
    DOCTOR,
    PARTICIPANT_ROLES,
    TERMINAL_APPOINTMENT_STATUS,
    IceServer,
    Role,
    SessionKey,
    peer_domain_role,
    relay_url,
    role_for,
)


class ChatTransportKind(str, Enum):
    """Selects the chat strategy for a session; only one runs at a time."""

    RELAY = "relay"
    STORE = "store"


@dataclass(slots=True, frozen=True)
class MediaConstraints:
    audio: bool = True
    video: bool = True
    camera_index: int = 0
    width: int = 640
    height: int = 360
    fps: int = 15
    sample_rate: int = 48000


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """Everything a session needs, fixed at construction time."""

    api_base_url: str
    appointment_id: str
    domain_role: str
    initiator_domain_role: str = DOCTOR
    relay_url_override: Optional[str] = None
    ice_servers: Tuple[IceServer, ...] = (IceServer(urls=(DEFAULT_STUN_SERVER,)),)
    chat_transport: ChatTransportKind = ChatTransportKind.STORE
    chat_poll_interval: float = CHAT_POLL_INTERVAL_SECONDS
    terminal_status: str = TERMINAL_APPOINTMENT_STATUS
    media: MediaConstraints = field(default_factory=MediaConstraints)
    receive_only_on_media_error: bool = False
    handshake_timeout: Optional[float] = None
    media_timeout: Optional[float] = None
    notify_end_call: bool = True
    http_timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.appointment_id:
            raise ValueError("appointment_id is required")
        if self.domain_role.lower() not in PARTICIPANT_ROLES:
            raise ValueError(f"role must be one of {', '.join(PARTICIPANT_ROLES)}")
        if self.initiator_domain_role.lower() not in PARTICIPANT_ROLES:
            raise ValueError("initiator role must be a participant role")
        if self.chat_poll_interval <= 0:
            raise ValueError("chat_poll_interval must be positive")

    @property
    def role(self) -> Role:
        return role_for(self.domain_role, self.initiator_domain_role)

    @property
    def peer_domain_role(self) -> str:
        return peer_domain_role(self.domain_role)

    @property
    def session_key(self) -> SessionKey:
        return SessionKey(
            appointment_id=self.appointment_id,
            role=self.role,
            domain_role=self.domain_role.lower(),
        )

    @property
    def signaling_url(self) -> str:
        if self.relay_url_override:
            parts = urlsplit(self.relay_url_override)
            base = urlunsplit((parts.scheme, parts.netloc, "", "", ""))
            return relay_url(base, self.session_key, path=parts.path or "/ws")
        parts = urlsplit(self.api_base_url)
        return relay_url(urlunsplit((parts.scheme, parts.netloc, "", "", "")), self.session_key)
