from __future__ import annotations

from enum import Enum
from typing import Optional


class SessionError(Exception):
    """Base class for failures surfaced by the call session."""


class ConnectError(SessionError, ConnectionError):
    """The signaling relay could not be reached."""


class MediaErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"


class MediaError(SessionError):
    """Local capture could not produce a single usable track."""

    def __init__(self, kind: MediaErrorKind, message: Optional[str] = None) -> None:
        super().__init__(message or kind.value)
        self.kind = kind


class NegotiationError(SessionError):
    """The remote session description was rejected."""


class CandidateApplyError(SessionError):
    """A single remote ICE candidate could not be applied; never surfaced."""


class ChatTransportError(SessionError):
    """A chat send or fetch failed; the next attempt is unaffected."""


class RelayClosedUnexpectedly(SessionError):
    """The relay dropped the signaling connection while the call was live."""
