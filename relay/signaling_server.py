from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

from fastapi import FastAPI, WebSocket, status
from starlette.websockets import WebSocketDisconnect

from shared.protocol import DEFAULT_RELAY_PATH, PARTICIPANT_ROLES

from .rooms import CLOSE_NORMAL, RoomRegistry, close_socket

logger = logging.getLogger(__name__)


class SignalingRelay:
    """FastAPI application forwarding signaling frames between paired participants."""

    def __init__(self, registry: Optional[RoomRegistry] = None, *, path: str = DEFAULT_RELAY_PATH) -> None:
        self._registry = registry or RoomRegistry()
        self._app = FastAPI()

        @self._app.websocket(path)
        async def signaling(websocket: WebSocket) -> None:
            await self._handle(websocket)

        @self._app.get("/api/health")
        async def health() -> dict:
            snapshot = await self._registry.snapshot()
            return {
                "status": "ok",
                "room_count": snapshot["room_count"],
                "participant_count": snapshot["participant_count"],
                "timestamp": time.time(),
            }

        @self._app.get("/api/rooms")
        async def rooms() -> dict:
            snapshot = await self._registry.snapshot()
            snapshot["timestamp"] = time.time()
            return snapshot

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    async def _handle(self, websocket: WebSocket) -> None:
        appointment_id = websocket.query_params.get("appointment_id", "").strip()
        role = websocket.query_params.get("role", "").strip().lower()
        if not appointment_id or role not in PARTICIPANT_ROLES:
            logger.warning("Rejecting relay connection with appointment_id=%r role=%r", appointment_id, role)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        # must be accepted before join makes it reachable from the peer
        await websocket.accept()
        peer_ip = websocket.client.host if websocket.client else None
        participant, replaced = await self._registry.join(appointment_id, role, websocket, peer_ip=peer_ip)
        if replaced is not None:
            await close_socket(replaced.socket, CLOSE_NORMAL, "Replaced by a newer connection")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    logger.debug("Dropping binary frame from %s in appointment %s", role, appointment_id)
                    continue
                await self._registry.forward(participant, text)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error handling relay connection for %s in appointment %s", role, appointment_id)
        finally:
            peer = await self._registry.leave(participant)
            if peer is not None:
                logger.info("Closing %s in appointment %s after peer left", peer.role, peer.appointment_id)
                await close_socket(peer.socket, CLOSE_NORMAL, "Peer left the call")


class RelayServer:
    """Background task helper for running the relay with uvicorn."""

    def __init__(self, relay: SignalingRelay, *, host: str, port: int) -> None:
        self._relay = relay
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._relay.app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Signaling relay listening on ws://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
