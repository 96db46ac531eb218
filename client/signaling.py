from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI, WebSocketException

from shared.protocol import ProtocolError, SignalingMessage

from .errors import ConnectError
from .events import HandlerRegistry, Unregister

logger = logging.getLogger(__name__)

CLOSED_BY_CLIENT = "closed_by_client"
RELAY_CLOSED = "relay_closed"
RECV_ERROR = "recv_error"

MessageHandler = Callable[[SignalingMessage], Awaitable[None] | None]
CloseHandler = Callable[[str], Awaitable[None] | None]


class RelayConnection(Protocol):
    """Subset of a websocket client connection used by the channel."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[Any]: ...


Connector = Callable[[str], Awaitable[RelayConnection]]


async def _default_connector(url: str) -> RelayConnection:
    return await websocket_connect(url)


class SignalingChannel:
    """Duplex websocket link to the relay for one session key."""

    def __init__(self, url: str, *, connector: Optional[Connector] = None) -> None:
        self._url = url
        self._connector = connector or _default_connector
        self._connection: Optional[RelayConnection] = None
        self._recv_task: Optional[asyncio.Task[None]] = None
        self._message_handlers: HandlerRegistry[MessageHandler] = HandlerRegistry("Signaling message")
        self._close_handlers: HandlerRegistry[CloseHandler] = HandlerRegistry("Signaling close")
        self._opened = False
        self._closing = False
        self._closed = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._connection is not None and not self._closing and not self._closed

    async def open(self) -> None:
        if self._opened:
            raise RuntimeError("Signaling channel already opened")
        self._opened = True
        logger.info("Connecting to relay %s", self._url)
        try:
            connection = await self._connector(self._url)
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI, WebSocketException) as exc:
            self._closed = True
            raise ConnectError(f"Relay unreachable at {self._url}: {exc}") from exc
        if self._closing or self._closed:
            logger.info("Signaling channel closed while connecting; dropping relay connection")
            try:
                await connection.close()
            except Exception:
                logger.debug("Error while closing relay connection", exc_info=True)
            return
        self._connection = connection

    def listen(self) -> None:
        """Start delivering inbound frames to the registered message handlers."""

        if self._connection is None or self._recv_task is not None:
            return
        self._recv_task = asyncio.create_task(self._recv_loop(self._connection))

    def on_message(self, handler: MessageHandler) -> Unregister:
        return self._message_handlers.add(handler)

    def on_close(self, handler: CloseHandler) -> Unregister:
        return self._close_handlers.add(handler)

    async def send(self, message: SignalingMessage) -> bool:
        if not self.is_open:
            logger.warning("Dropping %s message; signaling channel is not open", message.type.value)
            return False
        assert self._connection is not None
        try:
            await self._connection.send(message.encode())
        except Exception:
            logger.exception("Failed to send %s message", message.type.value)
            return False
        return True

    async def close(self) -> None:
        if self._closing or self._closed:
            return
        self._closing = True
        connection = self._connection
        if connection is not None:
            try:
                await connection.close()
            except Exception:
                logger.debug("Error while closing relay connection", exc_info=True)
        task = self._recv_task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        was_closed = self._closed
        self._closed = True
        self._connection = None
        if not was_closed and task is None and connection is not None:
            await self._close_handlers.emit(CLOSED_BY_CLIENT)

    async def _recv_loop(self, connection: RelayConnection) -> None:
        reason = RELAY_CLOSED
        try:
            async for raw in connection:
                if self._closing:
                    break
                try:
                    message = SignalingMessage.decode(raw)
                except ProtocolError:
                    logger.warning("Ignoring malformed signaling frame", exc_info=True)
                    continue
                await self._message_handlers.emit(message)
        except ConnectionClosed:
            logger.info("Relay connection closed abnormally")
        except Exception:
            logger.exception("Error while receiving from relay")
            reason = RECV_ERROR
        if self._closing:
            reason = CLOSED_BY_CLIENT
        else:
            logger.info("Relay closed signaling connection")
        self._closed = True
        self._connection = None
        await self._close_handlers.emit(reason)

