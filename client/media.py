from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Set

from shared.config import MediaConstraints

from .errors import MediaError, MediaErrorKind
from .events import HandlerRegistry, Unregister
from .peer import PeerConnection

logger = logging.getLogger(__name__)


class MediaKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


@dataclass(slots=True, frozen=True)
class MediaTrackState:
    kind: MediaKind
    enabled: bool


class LocalTrack(Protocol):
    """A capture track whose ``enabled`` flag mutes it without stopping it."""

    id: str
    kind: str
    enabled: bool

    def stop(self) -> None: ...


CaptureBackend = Callable[[MediaConstraints], Awaitable[List[LocalTrack]]]
RemoteTrackHandler = Callable[[Any], Awaitable[None] | None]


class LocalMediaHandle:
    """Tracks granted by one acquisition; released exactly once."""

    def __init__(self, tracks: List[LocalTrack]) -> None:
        self._tracks = list(tracks)
        self._released = False

    @property
    def tracks(self) -> List[LocalTrack]:
        return list(self._tracks)

    @property
    def released(self) -> bool:
        return self._released

    def first(self, kind: MediaKind) -> Optional[LocalTrack]:
        return next((track for track in self._tracks if track.kind == kind.value), None)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for track in self._tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track", track.kind)


class MediaController:
    """Local capture, per-track mute, and remote track hand-off for one session."""

    def __init__(self, backend: CaptureBackend) -> None:
        self._backend = backend
        self._handle: Optional[LocalMediaHandle] = None
        self._attached: Set[str] = set()
        self._remote_handlers: HandlerRegistry[RemoteTrackHandler] = HandlerRegistry("Remote track")
        self._remote_tracks: List[Any] = []

    @property
    def handle(self) -> Optional[LocalMediaHandle]:
        return self._handle

    @property
    def remote_tracks(self) -> List[Any]:
        return list(self._remote_tracks)

    async def acquire(self, constraints: MediaConstraints, *, timeout: Optional[float] = None) -> LocalMediaHandle:
        if self._handle is not None:
            return self._handle
        if not constraints.audio and not constraints.video:
            raise MediaError(MediaErrorKind.DEVICE_UNAVAILABLE, "No media kinds requested")
        try:
            if timeout is not None:
                tracks = await asyncio.wait_for(self._backend(constraints), timeout)
            else:
                tracks = await self._backend(constraints)
        except asyncio.TimeoutError as exc:
            raise MediaError(MediaErrorKind.DEVICE_UNAVAILABLE, "Timed out acquiring media") from exc
        except PermissionError as exc:
            raise MediaError(MediaErrorKind.PERMISSION_DENIED, str(exc)) from exc
        if not tracks:
            raise MediaError(MediaErrorKind.DEVICE_UNAVAILABLE, "No capture device produced a track")
        self._handle = LocalMediaHandle(tracks)
        logger.info("Acquired local media: %s", ", ".join(track.kind for track in tracks))
        return self._handle

    def attach(self, peer: PeerConnection) -> int:
        """Add local tracks to ``peer``; each track is added at most once."""

        if self._handle is None or self._handle.released:
            return 0
        added = 0
        for track in self._handle.tracks:
            if track.id in self._attached:
                continue
            peer.add_track(track)
            self._attached.add(track.id)
            added += 1
        return added

    def toggle(self, kind: MediaKind) -> Optional[bool]:
        track = self._handle.first(kind) if self._handle is not None else None
        if track is None:
            logger.warning("No local %s track to toggle", kind.value)
            return None
        track.enabled = not track.enabled
        logger.info("Local %s %s", kind.value, "enabled" if track.enabled else "disabled")
        return track.enabled

    def track_states(self) -> List[MediaTrackState]:
        if self._handle is None:
            return []
        return [MediaTrackState(MediaKind(track.kind), bool(track.enabled)) for track in self._handle.tracks]

    def on_remote_track(self, handler: RemoteTrackHandler) -> Unregister:
        return self._remote_handlers.add(handler)

    async def attach_remote(self, track: Any) -> None:
        logger.info("Remote %s track received", getattr(track, "kind", "unknown"))
        self._remote_tracks.append(track)
        await self._remote_handlers.emit(track)

    def release(self) -> None:
        if self._handle is not None:
            self._handle.release()
        self._attached.clear()
        self._remote_tracks.clear()
        self._remote_handlers.clear()
