from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

from shared.protocol import PARTICIPANT_ROLES, peer_domain_role

logger = logging.getLogger(__name__)

EVENT_LOG_LIMIT = 1000
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001


class RelaySocket(Protocol):
    """The part of a server-side websocket the registry needs."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


@dataclass(slots=True, eq=False)
class Participant:
    appointment_id: str
    role: str
    socket: RelaySocket
    connected_at: float = field(default_factory=lambda: time.time())
    peer_ip: Optional[str] = None
    messages_forwarded: int = 0
    bytes_forwarded: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "role": self.role,
            "connected_at": self.connected_at,
            "peer_ip": self.peer_ip,
            "messages_forwarded": self.messages_forwarded,
            "bytes_forwarded": self.bytes_forwarded,
        }


class RoomRegistry:
    """Pairs the two participants of each appointment and tracks relay events.

    Each room has one slot per participant role. A newer connection for an
    occupied slot takes it over; the stale socket is closed by the caller.
    """

    def __init__(self, *, close_peer_on_leave: bool = True) -> None:
        self._rooms: Dict[str, Dict[str, Participant]] = {}
        self._lock = asyncio.Lock()
        self._event_log: List[dict] = []
        self._close_peer_on_leave = close_peer_on_leave
        self._started_at = time.time()

    @property
    def close_peer_on_leave(self) -> bool:
        return self._close_peer_on_leave

    async def join(
        self,
        appointment_id: str,
        role: str,
        socket: RelaySocket,
        *,
        peer_ip: Optional[str] = None,
    ) -> Tuple[Participant, Optional[Participant]]:
        """Register ``socket`` in its slot; returns the participant and any replaced one."""

        role = role.lower()
        if not appointment_id:
            raise ValueError("appointment_id is required")
        if role not in PARTICIPANT_ROLES:
            raise ValueError(f"Unknown participant role {role!r}")
        async with self._lock:
            room = self._rooms.setdefault(appointment_id, {})
            replaced = room.get(role)
            participant = Participant(appointment_id=appointment_id, role=role, socket=socket, peer_ip=peer_ip)
            room[role] = participant
            if replaced is not None:
                logger.info("Replacing stale %s connection for appointment %s", role, appointment_id)
                self._record_event("participant_replaced", {"appointment_id": appointment_id, "role": role})
            logger.info("%s joined appointment %s", role, appointment_id)
            self._record_event("participant_joined", {"appointment_id": appointment_id, "role": role})
            return participant, replaced

    async def leave(self, participant: Participant) -> Optional[Participant]:
        """Drop ``participant`` if it still holds its slot.

        Returns the other participant when it should be disconnected as well.
        """

        async with self._lock:
            room = self._rooms.get(participant.appointment_id)
            if room is None or room.get(participant.role) is not participant:
                return None
            del room[participant.role]
            peer = room.get(peer_domain_role(participant.role))
            if not room:
                del self._rooms[participant.appointment_id]
            logger.info("%s left appointment %s", participant.role, participant.appointment_id)
            self._record_event(
                "participant_left",
                {"appointment_id": participant.appointment_id, "role": participant.role},
            )
            if peer is None or not self._close_peer_on_leave:
                return None
            del room[peer.role]
            if not room:
                self._rooms.pop(participant.appointment_id, None)
            self._record_event(
                "participant_disconnected",
                {"appointment_id": peer.appointment_id, "role": peer.role, "cause": "peer_left"},
            )
            return peer

    async def peer_of(self, participant: Participant) -> Optional[Participant]:
        async with self._lock:
            room = self._rooms.get(participant.appointment_id)
            if room is None:
                return None
            return room.get(peer_domain_role(participant.role))

    async def forward(self, sender: Participant, text: str) -> bool:
        """Send ``text`` unmodified to the other participant; dropped when absent."""

        peer = await self.peer_of(sender)
        if peer is None:
            logger.debug("No peer for %s in appointment %s; dropping frame", sender.role, sender.appointment_id)
            return False
        try:
            await peer.socket.send_text(text)
        except Exception:
            logger.warning(
                "Failed to forward frame to %s in appointment %s",
                peer.role,
                peer.appointment_id,
                exc_info=True,
            )
            return False
        sender.messages_forwarded += 1
        sender.bytes_forwarded += len(text.encode("utf-8"))
        return True

    async def close_all(self, reason: str = "Relay shutting down") -> None:
        async with self._lock:
            participants = [p for room in self._rooms.values() for p in room.values()]
            self._rooms.clear()
            self._record_event("relay_shutdown", {"reason": reason, "participants": len(participants)})
        for participant in participants:
            await close_socket(participant.socket, CLOSE_GOING_AWAY, reason)

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            rooms = [
                {
                    "appointment_id": appointment_id,
                    "participants": [participant.to_dict() for participant in room.values()],
                }
                for appointment_id, room in self._rooms.items()
            ]
            return {
                "started_at": self._started_at,
                "room_count": len(rooms),
                "participant_count": sum(len(room["participants"]) for room in rooms),
                "rooms": rooms,
                "events": list(self._event_log[-50:]),
            }

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)


async def close_socket(socket: RelaySocket, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None:
    try:
        await socket.close(code=code, reason=reason)
    except Exception:  # pragma: no cover - cleanup best effort
        logger.debug("Error while closing relay socket", exc_info=True)
