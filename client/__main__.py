from __future__ import annotations

import argparse
import asyncio
import logging
from typing import List, Optional

import numpy as np

from shared.config import ChatTransportKind, MediaConstraints, SessionConfig
from shared.protocol import DEFAULT_API_PORT, DEFAULT_STUN_SERVER, DOCTOR, PARTICIPANT_ROLES, IceServer

from .capture import RemotePlayback, open_capture_devices
from .console import ConsoleUI
from .errors import SessionError
from .peer import create_aiortc_peer
from .session import Session

logger = logging.getLogger(__name__)


def _show_frame(frame: np.ndarray) -> None:
    import cv2

    cv2.imshow("Remote video", frame)
    cv2.waitKey(1)


def _ice_servers(args: argparse.Namespace) -> List[IceServer]:
    servers = [IceServer(urls=(url,)) for url in (args.stun or [DEFAULT_STUN_SERVER])]
    for url in args.turn or []:
        servers.append(IceServer(urls=(url,), username=args.turn_username, credential=args.turn_credential))
    return servers


def build_config(args: argparse.Namespace) -> SessionConfig:
    media = MediaConstraints(
        audio=not args.no_audio,
        video=not args.no_video,
        camera_index=args.camera_index,
    )
    return SessionConfig(
        api_base_url=args.api_base,
        appointment_id=args.appointment_id,
        domain_role=args.role,
        initiator_domain_role=args.initiator_role,
        relay_url_override=args.relay_url,
        ice_servers=tuple(_ice_servers(args)),
        chat_transport=ChatTransportKind(args.chat_transport),
        chat_poll_interval=args.chat_poll_interval,
        media=media,
        receive_only_on_media_error=args.receive_only,
        handshake_timeout=args.handshake_timeout,
        media_timeout=args.media_timeout,
        notify_end_call=not args.no_end_call_notify,
    )


async def run(config: SessionConfig, *, show_video: bool = False) -> int:
    playback = RemotePlayback(on_video_frame=_show_frame if show_video else None)
    session = Session(config, capture=open_capture_devices, peer_factory=create_aiortc_peer)
    session.on_remote_track(playback.attach)
    console = ConsoleUI(session)
    try:
        started = await session.start()
    except SessionError as exc:
        console.write(f"Unable to start call: {exc}")
        await playback.stop()
        return 1
    if not started:
        assert session.outcome is not None
        console.write(session.outcome.message)
        return 0
    try:
        outcome = await console.run()
    finally:
        await session.end()
        await playback.stop()
    return 0 if outcome is None or outcome.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Telemedicine call client")
    parser.add_argument("appointment_id", help="Appointment identifier shared by both participants")
    parser.add_argument("--role", required=True, choices=PARTICIPANT_ROLES, help="Local participant role")
    parser.add_argument(
        "--api-base",
        default=f"http://127.0.0.1:{DEFAULT_API_PORT}/api",
        help="Base URL of the appointment REST API",
    )
    parser.add_argument("--relay-url", help="Signaling relay URL (defaults to the API host with /ws)")
    parser.add_argument("--initiator-role", default=DOCTOR, choices=PARTICIPANT_ROLES, help="Role that sends the offer")
    parser.add_argument(
        "--chat-transport",
        default=ChatTransportKind.STORE.value,
        choices=[kind.value for kind in ChatTransportKind],
        help="Chat over the peer data channel (relay) or the REST message store (store)",
    )
    parser.add_argument("--chat-poll-interval", type=float, default=3.0, help="Seconds between message store polls")
    parser.add_argument("--stun", action="append", help="STUN server URL (repeatable)")
    parser.add_argument("--turn", action="append", help="TURN server URL (repeatable)")
    parser.add_argument("--turn-username", help="TURN username")
    parser.add_argument("--turn-credential", help="TURN credential")
    parser.add_argument("--no-audio", action="store_true", help="Do not capture the microphone")
    parser.add_argument("--no-video", action="store_true", help="Do not capture the camera")
    parser.add_argument("--camera-index", type=int, default=0, help="OpenCV camera index")
    parser.add_argument("--show-video", action="store_true", help="Display remote video in a window")
    parser.add_argument(
        "--receive-only",
        action="store_true",
        help="Join without local media if no capture device can be opened",
    )
    parser.add_argument("--handshake-timeout", type=float, help="Seconds to wait for the offer/answer exchange")
    parser.add_argument("--media-timeout", type=float, help="Seconds to wait for capture devices")
    parser.add_argument(
        "--no-end-call-notify",
        action="store_true",
        help="Do not mark the appointment completed when hanging up",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args(argv)

    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    try:
        return asyncio.run(run(config, show_video=args.show_video))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
