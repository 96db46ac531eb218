"""Chat strategies sharing one contract.

``DataChannelChatRelay`` rides the peer connection's ``chat`` data channel and
keeps nothing once the call ends. ``PollingChatRelay`` posts to the message
store and re-fetches the whole list on a fixed interval; every poll replaces
the local history. Neither variant deduplicates: a retried send can appear
twice in the store.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from shared.protocol import (
    BOT,
    CHAT_POLL_INTERVAL_SECONDS,
    DOCTOR,
    PATIENT,
    ChatMessage,
    ProtocolError,
    SignalingMessage,
    SignalingType,
)

from .backend import BackendClient
from .errors import ChatTransportError
from .events import HandlerRegistry, Subscriptions, Unregister
from .peer import DataChannel

logger = logging.getLogger(__name__)

SELF_LABEL = "You"
UNKNOWN_LABEL = "Unknown"
SENDER_LABELS: Dict[str, str] = {
    DOCTOR: "Doctor",
    PATIENT: "Patient",
    BOT: "System",
}


@dataclass(slots=True, frozen=True)
class ChatLine:
    """One rendered chat entry."""

    label: str
    content: str
    is_self: bool
    timestamp: float


ChatViewHandler = Callable[[List[ChatLine]], Awaitable[None] | None]


def resolve_sender_label(sender: str, local_role: str) -> Tuple[str, bool]:
    lowered = (sender or "").lower()
    if lowered == local_role.lower():
        return SELF_LABEL, True
    return SENDER_LABELS.get(lowered, UNKNOWN_LABEL), False


def render_chat(messages: List[ChatMessage], local_role: str) -> List[ChatLine]:
    lines: List[ChatLine] = []
    for message in messages:
        label, is_self = resolve_sender_label(message.sender, local_role)
        lines.append(ChatLine(label=label, content=message.content, is_self=is_self, timestamp=message.timestamp))
    return lines


class ChatRelay(ABC):
    def __init__(self, local_role: str) -> None:
        self._local_role = local_role.lower()
        self._messages: List[ChatMessage] = []
        self._subscribers: HandlerRegistry[ChatViewHandler] = HandlerRegistry("Chat view")

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def view(self) -> List[ChatLine]:
        return render_chat(self._messages, self._local_role)

    def subscribe(self, handler: ChatViewHandler) -> Unregister:
        return self._subscribers.add(handler)

    async def _publish(self) -> None:
        await self._subscribers.emit(self.view())

    async def start(self) -> None:
        """Begin delivering messages; no-op by default."""

    @abstractmethod
    async def send(self, text: str) -> Optional[ChatMessage]:
        """Send ``text`` as the local participant; ``None`` when nothing was sent."""

    async def close(self) -> None:
        self._subscribers.clear()


class DataChannelChatRelay(ChatRelay):
    """Best-effort chat multiplexed over the peer connection side channel."""

    def __init__(self, local_role: str, peer_role: str) -> None:
        super().__init__(local_role)
        self._peer_role = peer_role.lower()
        self._channel: Optional[DataChannel] = None
        self._subscriptions = Subscriptions()
        self._closed = False

    @property
    def channel(self) -> Optional[DataChannel]:
        return self._channel

    def attach(self, channel: DataChannel) -> None:
        if self._closed:
            channel.close()
            return
        if self._channel is not None:
            logger.warning("Ignoring extra data channel %s", channel.label)
            return
        self._channel = channel
        self._subscriptions.add(channel.on_message(self._on_text))
        logger.info("Chat data channel %s attached", channel.label)

    async def send(self, text: str) -> Optional[ChatMessage]:
        text = text.strip()
        if not text:
            return None
        channel = self._channel
        if channel is None or not channel.is_open:
            logger.warning("Chat channel is not open; message not sent")
            return None
        message = ChatMessage(sender=self._local_role, content=text)
        try:
            channel.send(SignalingMessage.chat(message.sender, message.content).encode())
        except Exception as exc:
            logger.warning("Chat send failed: %s", ChatTransportError(str(exc)))
            return None
        self._messages.append(message)
        await self._publish()
        return message

    async def _on_text(self, text: str) -> None:
        try:
            envelope = SignalingMessage.decode(text)
        except ProtocolError:
            # plain text from peers that do not wrap chat frames
            message = ChatMessage(sender=self._peer_role, content=text)
        else:
            if envelope.type is not SignalingType.CHAT or not isinstance(envelope.data, dict):
                logger.debug("Ignoring non-chat frame on chat channel")
                return
            message = ChatMessage.from_dict(envelope.data)
        self._messages.append(message)
        await self._publish()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscriptions.detach_all()
        if self._channel is not None:
            try:
                self._channel.close()
            except Exception:
                logger.debug("Error while closing chat channel", exc_info=True)
        await super().close()


class PollingChatRelay(ChatRelay):
    """Store-and-poll chat backed by the REST message store."""

    def __init__(
        self,
        backend: BackendClient,
        appointment_id: str,
        local_role: str,
        *,
        interval: float = CHAT_POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(local_role)
        self._backend = backend
        self._appointment_id = appointment_id
        self._interval = interval
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def start(self) -> None:
        if self._task is not None or self._closed:
            return
        self._task = asyncio.create_task(self._poll_loop())

    async def poll_once(self) -> bool:
        """Fetch the full history; on success it replaces local state."""

        try:
            messages = await self._backend.list_messages(self._appointment_id)
        except ChatTransportError as exc:
            logger.warning("Chat poll failed: %s", exc)
            return False
        if self._closed:
            return False
        self._messages = messages
        await self._publish()
        return True

    async def send(self, text: str) -> Optional[ChatMessage]:
        text = text.strip()
        if not text or self._closed:
            return None
        try:
            ack = await self._backend.post_message(self._appointment_id, self._local_role, text)
        except ChatTransportError as exc:
            logger.warning("Chat send failed: %s", exc)
            return None
        await self.poll_once()
        if ack:
            return ChatMessage.from_dict({"sender": self._local_role, "content": text, **ack})
        return ChatMessage(sender=self._local_role, content=text)

    async def _poll_loop(self) -> None:
        try:
            while not self._closed:
                await self.poll_once()
                await asyncio.sleep(self._interval)
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await super().close()
