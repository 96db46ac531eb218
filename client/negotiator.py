"""Offer/answer/candidate state machine layered on the signaling channel.

The initiator role is fixed per deployment, so only one side ever builds an
offer. Offers that reach the initiator (glare) are logged and dropped rather
than resolved.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from shared.protocol import Role, SessionKey, SignalingMessage, SignalingType

from .errors import CandidateApplyError, NegotiationError
from .events import HandlerRegistry, Subscriptions, Unregister
from .peer import PeerConnection
from .signaling import SignalingChannel

logger = logging.getLogger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"
    ANSWER_RECEIVED = "answer_received"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NegotiationState.CLOSED, NegotiationState.FAILED)


StateChangeHandler = Callable[[NegotiationState], Awaitable[None] | None]


class CandidateBuffer:
    """Remote candidates that arrived before the remote description was set."""

    def __init__(self) -> None:
        self._pending: Deque[Any] = deque()

    def push(self, candidate: Any) -> None:
        self._pending.append(candidate)

    def drain(self) -> List[Any]:
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def clear(self) -> None:
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)


class SessionNegotiator:
    def __init__(self, key: SessionKey, peer: PeerConnection, channel: SignalingChannel) -> None:
        self._key = key
        self._peer = peer
        self._channel = channel
        self._state = NegotiationState.IDLE
        self._buffer = CandidateBuffer()
        self._remote_description_set = False
        self._began = False
        self._peer_closed = False
        self._lock = asyncio.Lock()
        self._connected = asyncio.Event()
        self._settled = asyncio.Event()
        self._state_handlers: HandlerRegistry[StateChangeHandler] = HandlerRegistry("Negotiation state")
        self._subscriptions = Subscriptions()
        self._failure: Optional[NegotiationError] = None
        self._subscriptions.add(channel.on_message(self.handle_message))
        self._subscriptions.add(channel.on_close(self._on_channel_close))
        self._subscriptions.add(peer.on_ice_candidate(self._on_local_candidate))

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def role(self) -> Role:
        return self._key.role

    @property
    def pending_candidates(self) -> int:
        return len(self._buffer)

    @property
    def remote_description_set(self) -> bool:
        return self._remote_description_set

    @property
    def failure(self) -> Optional[NegotiationError]:
        return self._failure

    def on_state_change(self, handler: StateChangeHandler) -> Unregister:
        return self._state_handlers.add(handler)

    async def wait_connected(self) -> bool:
        """Wait until the handshake settles; ``True`` when it reached ``connected``."""

        await self._settled.wait()
        return self._connected.is_set()

    async def begin(self) -> None:
        """Local media is ready and the channel is open: the initiator sends its offer."""

        if self._began or self._state.is_terminal:
            return
        self._began = True
        if self._key.role is not Role.INITIATOR:
            logger.debug("Responder for appointment %s waiting for offer", self._key.appointment_id)
            return
        if not self._channel.is_open:
            logger.warning("Cannot send offer; signaling channel is not open")
            return
        async with self._lock:
            if self._state is not NegotiationState.IDLE:
                return
            try:
                offer = await self._peer.create_offer()
            except Exception as exc:
                await self._fail(NegotiationError(f"Unable to create offer: {exc}"))
                return
            if self._state.is_terminal:
                return
            await self._set_state(NegotiationState.OFFER_SENT)
            await self._send(SignalingMessage.offer(offer))

    async def handle_message(self, message: SignalingMessage) -> None:
        if self._state.is_terminal:
            return
        async with self._lock:
            if self._state.is_terminal:
                return
            if message.type is SignalingType.OFFER:
                await self._handle_offer(message.data)
            elif message.type is SignalingType.ANSWER:
                await self._handle_answer(message.data)
            elif message.type is SignalingType.CANDIDATE:
                await self._handle_candidate(message.data)

    async def close(self) -> None:
        """End the negotiation from any state; safe to call repeatedly."""

        if not self._state.is_terminal:
            await self._set_state(NegotiationState.CLOSED)
        await self._shutdown()

    async def fail(self, error: NegotiationError) -> None:
        await self._fail(error)

    async def _handle_offer(self, description: Any) -> None:
        if self._key.role is Role.INITIATOR:
            logger.warning("Initiator received an offer; ignoring (glare is not negotiated)")
            return
        if self._state is not NegotiationState.IDLE:
            logger.warning("Ignoring offer received in state %s", self._state.value)
            return
        await self._set_state(NegotiationState.OFFER_RECEIVED)
        if not await self._apply_remote_description(description):
            return
        try:
            answer = await self._peer.create_answer()
        except Exception as exc:
            await self._fail(NegotiationError(f"Unable to create answer: {exc}"))
            return
        if self._state.is_terminal:
            return
        await self._set_state(NegotiationState.ANSWER_SENT)
        if await self._send(SignalingMessage.answer(answer)):
            await self._set_state(NegotiationState.CONNECTED)

    async def _handle_answer(self, description: Any) -> None:
        if self._state is not NegotiationState.OFFER_SENT:
            logger.warning("Ignoring answer received in state %s", self._state.value)
            return
        await self._set_state(NegotiationState.ANSWER_RECEIVED)
        if not await self._apply_remote_description(description):
            return
        await self._set_state(NegotiationState.CONNECTED)

    async def _handle_candidate(self, candidate: Any) -> None:
        if not self._remote_description_set:
            self._buffer.push(candidate)
            logger.debug("Buffered remote candidate (%d pending)", len(self._buffer))
            return
        await self._apply_candidate(candidate)

    async def _apply_remote_description(self, description: Any) -> bool:
        try:
            await self._peer.set_remote_description(description)
        except Exception as exc:
            await self._fail(NegotiationError(f"Remote description rejected: {exc}"))
            return False
        if self._state.is_terminal:
            return False
        self._remote_description_set = True
        for candidate in self._buffer.drain():
            if self._state.is_terminal:
                break
            await self._apply_candidate(candidate)
        return not self._state.is_terminal

    async def _apply_candidate(self, candidate: Any) -> None:
        try:
            await self._peer.add_ice_candidate(candidate)
        except Exception as exc:
            error = CandidateApplyError(str(exc))
            logger.warning("Ignoring remote candidate that could not be applied: %s", error)

    async def _on_local_candidate(self, candidate: Any) -> None:
        if self._state.is_terminal or not self._channel.is_open:
            return
        await self._send(SignalingMessage.candidate(candidate))

    async def _on_channel_close(self, reason: str) -> None:
        if self._state.is_terminal:
            return
        logger.info("Signaling channel closed (%s); closing negotiation", reason)
        await self.close()

    async def _send(self, message: SignalingMessage) -> bool:
        if self._state.is_terminal:
            logger.debug("Dropping %s message after session end", message.type.value)
            return False
        return await self._channel.send(message)

    async def _fail(self, error: NegotiationError) -> None:
        if self._state.is_terminal:
            return
        logger.error("Negotiation failed: %s", error)
        self._failure = error
        await self._set_state(NegotiationState.FAILED)
        await self._shutdown()

    async def _set_state(self, state: NegotiationState) -> None:
        if self._state is state or self._state.is_terminal:
            return
        logger.info("Negotiation %s -> %s", self._state.value, state.value)
        self._state = state
        if state is NegotiationState.CONNECTED:
            self._connected.set()
            self._settled.set()
        elif state.is_terminal:
            self._buffer.clear()
            self._settled.set()
        await self._state_handlers.emit(state)

    async def _shutdown(self) -> None:
        self._buffer.clear()
        self._subscriptions.detach_all()
        if self._peer_closed:
            return
        self._peer_closed = True
        try:
            await self._peer.close()
        except Exception:
            logger.exception("Error while closing peer connection")
