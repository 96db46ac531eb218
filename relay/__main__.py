from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from shared.protocol import DEFAULT_RELAY_PATH, DEFAULT_RELAY_PORT

from relay.rooms import RoomRegistry
from relay.signaling_server import RelayServer, SignalingRelay

logger = logging.getLogger(__name__)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Telemedicine call signaling relay")
    parser.add_argument("--host", default="0.0.0.0", help="Host/IP to bind the relay")
    parser.add_argument("--port", type=int, default=DEFAULT_RELAY_PORT, help="Relay HTTP/websocket port")
    parser.add_argument("--path", default=DEFAULT_RELAY_PATH, help="Websocket endpoint path")
    parser.add_argument(
        "--keep-peer-on-leave",
        action="store_true",
        help="Leave the remaining participant connected when the other one leaves",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging verbosity",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Optional path to a rotating log file")
    parser.add_argument("--log-max-bytes", type=int, default=5 * 1024 * 1024, help="Max size of the log file before rotation")
    parser.add_argument("--log-backup-count", type=int, default=5, help="Number of rotated log files to retain")
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = [logging.StreamHandler()]
    if args.log_file:
        from logging.handlers import RotatingFileHandler

        args.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            args.log_file,
            maxBytes=max(1024, args.log_max_bytes),
            backupCount=max(1, args.log_backup_count),
        )
        file_handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        log_handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, args.log_level, logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        handlers=log_handlers,
        force=True,
    )

    registry = RoomRegistry(close_peer_on_leave=not args.keep_peer_on_leave)
    relay_server = RelayServer(SignalingRelay(registry, path=args.path), host=args.host, port=args.port)

    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            asyncio.get_running_loop().add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Signals aren't implemented on Windows for ProactorEventLoop; fallback to keyboard interrupt.
            pass

    await relay_server.start()
    assert relay_server.task is not None
    # uvicorn exiting on its own (e.g. port in use) also stops the relay
    relay_server.task.add_done_callback(lambda _: stop_event.set())

    await stop_event.wait()
    logger.info("Stopping relay")

    try:
        await registry.close_all()
    except Exception:
        logger.exception("Failed to disconnect participants during shutdown")

    try:
        await relay_server.stop()
    except Exception:
        logger.exception("Error stopping relay server")

    logger.info("Shutdown complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
