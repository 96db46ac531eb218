"""Peer connection seam used by the negotiator, plus the aiortc adapter."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    MediaStreamTrack,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from shared.protocol import IceServer

from .events import Unregister

logger = logging.getLogger(__name__)

TrackHandler = Callable[[Any], Awaitable[None] | None]
CandidateHandler = Callable[[Dict[str, Any]], Awaitable[None] | None]
DataChannelHandler = Callable[["DataChannel"], Awaitable[None] | None]
StateHandler = Callable[[str], Awaitable[None] | None]
TextHandler = Callable[[str], Awaitable[None] | None]


class DataChannel(Protocol):
    """Side channel multiplexed over the peer connection."""

    @property
    def label(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    def send(self, text: str) -> None: ...

    def on_message(self, handler: TextHandler) -> Unregister: ...

    def close(self) -> None: ...


class PeerConnection(Protocol):
    """The operations the negotiator and lifecycle need from a peer connection.

    Descriptions and candidates cross this boundary in their wire shape
    (``{"type", "sdp"}`` and ``{"candidate", "sdpMid", "sdpMLineIndex"}``).
    """

    async def create_offer(self) -> Dict[str, Any]: ...

    async def create_answer(self) -> Dict[str, Any]: ...

    async def set_remote_description(self, description: Any) -> None: ...

    async def add_ice_candidate(self, candidate: Any) -> None: ...

    def add_track(self, track: Any) -> None: ...

    def create_data_channel(self, label: str) -> DataChannel: ...

    def on_ice_candidate(self, handler: CandidateHandler) -> Unregister: ...

    def on_track(self, handler: TrackHandler) -> Unregister: ...

    def on_data_channel(self, handler: DataChannelHandler) -> Unregister: ...

    def on_connection_state(self, handler: StateHandler) -> Unregister: ...

    async def close(self) -> None: ...


PeerFactory = Callable[[Iterable[IceServer]], PeerConnection]


def _description_to_dict(description: Optional[RTCSessionDescription]) -> Dict[str, Any]:
    if description is None:
        raise RuntimeError("Local description was not set")
    return {"type": description.type, "sdp": description.sdp}


class AiortcDataChannel:
    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def is_open(self) -> bool:
        return self._channel.readyState == "open"

    def send(self, text: str) -> None:
        self._channel.send(text)

    def on_message(self, handler: TextHandler) -> Unregister:
        def _on_message(message: Any) -> Any:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            return handler(message)

        self._channel.on("message", _on_message)
        return lambda: self._channel.remove_listener("message", _on_message)

    def close(self) -> None:
        self._channel.close()


class AiortcPeerConnection:
    """Adapts :class:`aiortc.RTCPeerConnection` to :class:`PeerConnection`.

    aiortc gathers all local candidates while setting the local description
    and embeds them in the SDP, so ``on_ice_candidate`` handlers are only
    called by peers that trickle candidates.
    """

    def __init__(self, ice_servers: Iterable[IceServer] = ()) -> None:
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=list(server.urls), username=server.username, credential=server.credential)
                for server in ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=configuration)

    async def create_offer(self) -> Dict[str, Any]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return _description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> Dict[str, Any]:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return _description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: Any) -> None:
        if not isinstance(description, dict) or "sdp" not in description or "type" not in description:
            raise ValueError("Remote description must contain type and sdp")
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=str(description["sdp"]), type=str(description["type"]))
        )

    async def add_ice_candidate(self, candidate: Any) -> None:
        if not isinstance(candidate, dict):
            raise ValueError("Candidate must be an object")
        raw = str(candidate.get("candidate") or "")
        if not raw:
            # end-of-candidates marker
            return
        if raw.startswith("candidate:"):
            raw = raw.split(":", 1)[1]
        ice_candidate = candidate_from_sdp(raw)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice_candidate)

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    def create_data_channel(self, label: str) -> DataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label))

    def on_ice_candidate(self, handler: CandidateHandler) -> Unregister:
        def _on_candidate(candidate: Any) -> Any:
            if candidate is None:
                return None
            return handler(
                {
                    "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                }
            )

        self._pc.on("icecandidate", _on_candidate)
        return lambda: self._pc.remove_listener("icecandidate", _on_candidate)

    def on_track(self, handler: TrackHandler) -> Unregister:
        self._pc.on("track", handler)
        return lambda: self._pc.remove_listener("track", handler)

    def on_data_channel(self, handler: DataChannelHandler) -> Unregister:
        def _on_datachannel(channel: RTCDataChannel) -> Any:
            return handler(AiortcDataChannel(channel))

        self._pc.on("datachannel", _on_datachannel)
        return lambda: self._pc.remove_listener("datachannel", _on_datachannel)

    def on_connection_state(self, handler: StateHandler) -> Unregister:
        def _on_state_change() -> Any:
            return handler(self._pc.connectionState)

        self._pc.on("connectionstatechange", _on_state_change)
        return lambda: self._pc.remove_listener("connectionstatechange", _on_state_change)

    async def close(self) -> None:
        logger.debug("Closing peer connection (state %s)", self._pc.connectionState)
        await self._pc.close()


def create_aiortc_peer(ice_servers: Iterable[IceServer]) -> PeerConnection:
    return AiortcPeerConnection(ice_servers)
