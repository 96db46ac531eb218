"""Session lifecycle for one participant of one appointment.

A ``Session`` owns its signaling channel, peer connection, negotiator, local
media and chat relay; nothing is shared between sessions. ``end`` is the only
teardown path and every trigger (local hang-up, relay closure, peer failure,
negotiation failure, handshake timeout) goes through it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from shared.config import ChatTransportKind, SessionConfig
from shared.protocol import CHAT_DATA_CHANNEL_LABEL, Role

from .backend import BackendClient, BackendError
from .chat import ChatRelay, ChatViewHandler, DataChannelChatRelay, PollingChatRelay
from .errors import MediaError, NegotiationError, RelayClosedUnexpectedly, SessionError
from .events import HandlerRegistry, Subscriptions, Unregister
from .media import CaptureBackend, MediaController, MediaKind, RemoteTrackHandler
from .negotiator import NegotiationState, SessionNegotiator, StateChangeHandler
from .peer import DataChannel, PeerFactory, create_aiortc_peer
from .signaling import CLOSED_BY_CLIENT, Connector, SignalingChannel

logger = logging.getLogger(__name__)

END_REASON_USER = "user"
END_REASON_RELAY_CLOSED = "relay_closed"
END_REASON_PEER_DISCONNECTED = "peer_disconnected"
END_REASON_NEGOTIATION_FAILED = "negotiation_failed"
END_REASON_HANDSHAKE_TIMEOUT = "handshake_timeout"
END_REASON_START_FAILED = "start_failed"

CALL_ENDED_MESSAGE = "Call ended successfully"
SESSION_ALREADY_ENDED_MESSAGE = "This appointment has already been completed"


class SessionPhase(str, Enum):
    CREATED = "created"
    STARTING = "starting"
    ACTIVE = "active"
    ENDING = "ending"
    ENDED = "ended"
    READ_ONLY = "read_only"


@dataclass(slots=True, frozen=True)
class SessionOutcome:
    success: bool
    message: str
    reason: str
    read_only: bool = False
    error: Optional[BaseException] = None


EndedHandler = Callable[[SessionOutcome], Awaitable[None] | None]


class Session:
    def __init__(
        self,
        config: SessionConfig,
        *,
        capture: CaptureBackend,
        backend: Optional[BackendClient] = None,
        peer_factory: PeerFactory = create_aiortc_peer,
        connector: Optional[Connector] = None,
    ) -> None:
        self._config = config
        self._key = config.session_key
        self._owns_backend = backend is None
        self._backend = backend or BackendClient(config.api_base_url, timeout=config.http_timeout)
        self._capture = capture
        self._peer_factory = peer_factory
        self._connector = connector
        self._phase = SessionPhase.CREATED
        self._channel: Optional[SignalingChannel] = None
        self._negotiator: Optional[SessionNegotiator] = None
        self._peer = None
        self._media = MediaController(capture)
        self._chat = self._build_chat()
        self._subscriptions = Subscriptions()
        self._state_handlers: HandlerRegistry[StateChangeHandler] = HandlerRegistry("Session negotiation state")
        self._ended_handlers: HandlerRegistry[EndedHandler] = HandlerRegistry("Session ended")
        self._end_task: Optional[asyncio.Task[SessionOutcome]] = None
        self._handshake_task: Optional[asyncio.Task[None]] = None
        self._outcome: Optional[SessionOutcome] = None
        self._ended = asyncio.Event()

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def read_only(self) -> bool:
        return self._phase is SessionPhase.READ_ONLY

    @property
    def negotiation_state(self) -> NegotiationState:
        if self._negotiator is None:
            return NegotiationState.CLOSED if self._phase in (SessionPhase.ENDED, SessionPhase.READ_ONLY) else NegotiationState.IDLE
        return self._negotiator.state

    @property
    def media(self) -> MediaController:
        return self._media

    @property
    def chat(self) -> ChatRelay:
        return self._chat

    @property
    def channel(self) -> Optional[SignalingChannel]:
        return self._channel

    @property
    def outcome(self) -> Optional[SessionOutcome]:
        return self._outcome

    def on_negotiation_state(self, handler: StateChangeHandler) -> Unregister:
        return self._state_handlers.add(handler)

    def on_chat(self, handler: ChatViewHandler) -> Unregister:
        return self._chat.subscribe(handler)

    def on_remote_track(self, handler: RemoteTrackHandler) -> Unregister:
        return self._media.on_remote_track(handler)

    def on_ended(self, handler: EndedHandler) -> Unregister:
        return self._ended_handlers.add(handler)

    async def start(self) -> bool:
        """Run pre-flight and bring the call up.

        Returns ``False`` when the appointment is already completed; the session
        is then read-only and nothing was opened. Fatal start errors tear the
        session down and are re-raised.
        """

        if self._phase is not SessionPhase.CREATED:
            raise RuntimeError(f"Session cannot start from phase {self._phase.value}")
        if await self._appointment_completed():
            self._phase = SessionPhase.READ_ONLY
            self._outcome = SessionOutcome(
                success=False,
                message=SESSION_ALREADY_ENDED_MESSAGE,
                reason="completed",
                read_only=True,
            )
            logger.info("Appointment %s already completed; session is read-only", self._key.appointment_id)
            self._ended.set()
            await self._release_backend()
            return False

        if self._end_task is not None:
            # ended during pre-flight
            await self._end_task
            return True

        self._phase = SessionPhase.STARTING
        self._channel = SignalingChannel(self._config.signaling_url, connector=self._connector)
        self._peer = self._peer_factory(self._config.ice_servers)
        self._negotiator = SessionNegotiator(self._key, self._peer, self._channel)
        self._subscriptions.add(self._negotiator.on_state_change(self._on_negotiation_state))
        self._subscriptions.add(self._channel.on_close(self._on_channel_close))
        self._subscriptions.add(self._peer.on_track(self._media.attach_remote))
        self._subscriptions.add(self._peer.on_connection_state(self._on_peer_state))

        results = await asyncio.gather(
            self._channel.open(),
            self._media.acquire(self._config.media, timeout=self._config.media_timeout),
            return_exceptions=True,
        )
        connect_result, media_result = results
        if self._end_task is not None:
            # ended while devices and relay were coming up; tracks granted
            # after teardown released media are stopped here
            self._media.release()
            await self._end_task
            return True
        if isinstance(connect_result, BaseException):
            await self._abort_start(connect_result)
            raise connect_result
        if isinstance(media_result, MediaError):
            if not self._config.receive_only_on_media_error:
                await self._negotiator.fail(NegotiationError(f"Local media unavailable: {media_result}"))
                await self._abort_start(media_result)
                raise media_result
            logger.warning("Local media unavailable (%s); continuing receive-only", media_result.kind.value)
        elif isinstance(media_result, BaseException):
            await self._abort_start(media_result)
            raise media_result

        self._media.attach(self._peer)
        self._wire_chat(self._peer)
        self._channel.listen()
        await self._negotiator.begin()
        if self._negotiator.state is NegotiationState.FAILED:
            await self._abort_start(self._negotiator.failure or NegotiationError("Negotiation failed"))
            raise self._negotiator.failure or NegotiationError("Negotiation failed")
        await self._chat.start()
        if self._end_task is not None:
            return True
        self._phase = SessionPhase.ACTIVE
        if self._negotiator.state is NegotiationState.FAILED:
            self._schedule_end(END_REASON_NEGOTIATION_FAILED, self._negotiator.failure)
            return True
        if self._config.handshake_timeout is not None:
            self._handshake_task = asyncio.create_task(self._watch_handshake(self._config.handshake_timeout))
        logger.info(
            "Session started for appointment %s as %s (%s)",
            self._key.appointment_id,
            self._key.domain_role,
            self._key.role.value,
        )
        return True

    async def end(self, reason: str = END_REASON_USER, error: Optional[BaseException] = None) -> SessionOutcome:
        """Tear the session down; concurrent and repeated calls share one teardown."""

        if self._outcome is not None and self._end_task is None:
            return self._outcome
        if self._end_task is None:
            self._end_task = asyncio.create_task(self._teardown(reason, error))
        return await asyncio.shield(self._end_task)

    async def wait_ended(self) -> Optional[SessionOutcome]:
        await self._ended.wait()
        return self._outcome

    async def send_chat(self, text: str):
        if self._phase is not SessionPhase.ACTIVE:
            logger.warning("Chat unavailable while session is %s", self._phase.value)
            return None
        return await self._chat.send(text)

    def toggle_audio(self) -> Optional[bool]:
        return self._media.toggle(MediaKind.AUDIO)

    def toggle_video(self) -> Optional[bool]:
        return self._media.toggle(MediaKind.VIDEO)

    async def _appointment_completed(self) -> bool:
        try:
            status = await self._backend.get_appointment_status(self._key.appointment_id)
        except BackendError as exc:
            logger.warning("Could not check appointment status, continuing: %s", exc)
            return False
        return status.lower() == self._config.terminal_status.lower()

    def _build_chat(self) -> ChatRelay:
        if self._config.chat_transport is ChatTransportKind.RELAY:
            return DataChannelChatRelay(self._key.domain_role, self._config.peer_domain_role)
        return PollingChatRelay(
            self._backend,
            self._key.appointment_id,
            self._key.domain_role,
            interval=self._config.chat_poll_interval,
        )

    def _wire_chat(self, peer: Any) -> None:
        if not isinstance(self._chat, DataChannelChatRelay):
            return
        if self._key.role is Role.INITIATOR:
            # must exist before the offer so it is part of the SDP
            self._chat.attach(peer.create_data_channel(CHAT_DATA_CHANNEL_LABEL))
            return
        chat = self._chat

        def _on_data_channel(channel: DataChannel) -> None:
            if channel.label == CHAT_DATA_CHANNEL_LABEL:
                chat.attach(channel)

        self._subscriptions.add(peer.on_data_channel(_on_data_channel))

    async def _on_negotiation_state(self, state: NegotiationState) -> None:
        await self._state_handlers.emit(state)
        if state is NegotiationState.FAILED and self._phase is SessionPhase.ACTIVE:
            failure = self._negotiator.failure if self._negotiator else None
            self._schedule_end(END_REASON_NEGOTIATION_FAILED, failure)

    async def _on_channel_close(self, reason: str) -> None:
        if reason == CLOSED_BY_CLIENT or self._end_task is not None:
            return
        logger.warning("Relay closed the signaling connection (%s)", reason)
        self._schedule_end(END_REASON_RELAY_CLOSED, RelayClosedUnexpectedly(reason))

    async def _on_peer_state(self, state: str) -> None:
        if state in ("failed", "closed") and self._end_task is None and self._phase is SessionPhase.ACTIVE:
            logger.info("Peer connection %s", state)
            self._schedule_end(END_REASON_PEER_DISCONNECTED)

    def _schedule_end(self, reason: str, error: Optional[BaseException] = None) -> None:
        if self._end_task is None:
            self._end_task = asyncio.create_task(self._teardown(reason, error))

    async def _watch_handshake(self, timeout: float) -> None:
        assert self._negotiator is not None
        try:
            connected = await asyncio.wait_for(self._negotiator.wait_connected(), timeout)
        except asyncio.TimeoutError:
            logger.error("Handshake did not complete within %.1fs", timeout)
            self._schedule_end(END_REASON_HANDSHAKE_TIMEOUT, SessionError("Handshake timed out"))
            return
        if connected:
            logger.info("Handshake completed")

    async def _abort_start(self, error: BaseException) -> None:
        logger.error("Session start failed: %s", error)
        if self._end_task is None:
            self._end_task = asyncio.create_task(self._teardown(END_REASON_START_FAILED, error))
        await asyncio.shield(self._end_task)

    async def _teardown(self, reason: str, error: Optional[BaseException]) -> SessionOutcome:
        started = self._phase is not SessionPhase.CREATED
        self._phase = SessionPhase.ENDING
        logger.info("Ending session for appointment %s (%s)", self._key.appointment_id, reason)
        handshake_task, self._handshake_task = self._handshake_task, None
        if handshake_task is not None and handshake_task is not asyncio.current_task():
            handshake_task.cancel()
        try:
            await self._chat.close()
        except Exception:
            logger.exception("Error while closing chat")
        if self._negotiator is not None:
            try:
                await self._negotiator.close()
            except Exception:
                logger.exception("Error while closing negotiation")
        elif self._peer is not None:
            try:
                await self._peer.close()
            except Exception:
                logger.exception("Error while closing peer connection")
        if self._channel is not None:
            try:
                await self._channel.close()
            except Exception:
                logger.exception("Error while closing signaling channel")
        try:
            self._media.release()
        except Exception:
            logger.exception("Error while releasing media")
        self._subscriptions.detach_all()

        notified = True
        if started and self._config.notify_end_call:
            try:
                await self._backend.end_call(self._key.appointment_id)
            except BackendError as exc:
                logger.warning("Failed to report call end: %s", exc)
                notified = False
        await self._release_backend()

        success = error is None and notified
        if error is not None:
            message = f"Call ended: {error}"
        elif not notified:
            message = "Call ended, but the appointment status could not be updated"
        else:
            message = CALL_ENDED_MESSAGE
        self._outcome = SessionOutcome(success=success, message=message, reason=reason, error=error)
        self._phase = SessionPhase.ENDED
        self._ended.set()
        logger.info("Session ended: %s", message)
        await self._ended_handlers.emit(self._outcome)
        self._ended_handlers.clear()
        self._state_handlers.clear()
        return self._outcome

    async def _release_backend(self) -> None:
        if not self._owns_backend:
            return
        try:
            await self._backend.aclose()
        except Exception:
            logger.debug("Error while closing backend client", exc_info=True)
