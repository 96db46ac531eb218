"""Line-oriented terminal front-end for a running session."""
from __future__ import annotations

import asyncio
import logging
import sys
import threading
from datetime import datetime
from typing import Callable, List, Optional, TextIO

from .chat import ChatLine
from .negotiator import NegotiationState
from .session import Session, SessionOutcome

logger = logging.getLogger(__name__)

HELP_TEXT = "Commands: /mic toggle microphone, /cam toggle camera, /end hang up, /help. Anything else is sent as chat."

STATE_MESSAGES = {
    NegotiationState.OFFER_SENT: "Calling...",
    NegotiationState.OFFER_RECEIVED: "Incoming call, answering...",
    NegotiationState.CONNECTED: "Connected.",
    NegotiationState.FAILED: "Call setup failed.",
}


def format_chat_line(line: ChatLine) -> str:
    stamp = datetime.fromtimestamp(line.timestamp).strftime("%H:%M")
    return f"[{stamp}] {line.label}: {line.content}"


class ConsoleUI:
    def __init__(self, session: Session, *, stream: TextIO = sys.stdout, reader: Optional[Callable[[], str]] = None) -> None:
        self._session = session
        self._stream = stream
        self._reader = reader or sys.stdin.readline
        self._shown = 0
        self._lines: "asyncio.Queue[str]" = asyncio.Queue()
        session.on_chat(self._render_chat)
        session.on_negotiation_state(self._render_state)
        session.on_ended(self._render_outcome)

    def write(self, text: str) -> None:
        print(text, file=self._stream, flush=True)

    async def run(self) -> Optional[SessionOutcome]:
        self.write(HELP_TEXT)
        self._start_input_thread()
        ended = asyncio.create_task(self._session.wait_ended())
        while not ended.done():
            read = asyncio.create_task(self._lines.get())
            done, _ = await asyncio.wait({read, ended}, return_when=asyncio.FIRST_COMPLETED)
            if read not in done:
                read.cancel()
                break
            line = read.result()
            if line == "":
                logger.info("Input closed; ending session")
                await self._session.end()
                break
            await self.handle_command(line.strip())
        return await ended

    def _start_input_thread(self) -> None:
        loop = asyncio.get_running_loop()

        def _pump() -> None:
            while True:
                line = self._reader()
                try:
                    loop.call_soon_threadsafe(self._lines.put_nowait, line)
                except RuntimeError:
                    # loop already closed
                    return
                if line == "":
                    return

        # daemon so a pending stdin read never blocks interpreter exit
        threading.Thread(target=_pump, name="console-input", daemon=True).start()

    async def handle_command(self, line: str) -> None:
        if not line:
            return
        command = line.lower()
        if command == "/help":
            self.write(HELP_TEXT)
        elif command == "/mic":
            self._report_toggle("Microphone", self._session.toggle_audio())
        elif command == "/cam":
            self._report_toggle("Camera", self._session.toggle_video())
        elif command in ("/end", "/quit"):
            await self._session.end()
        elif command.startswith("/"):
            self.write(f"Unknown command {line}. {HELP_TEXT}")
        else:
            sent = await self._session.send_chat(line)
            if sent is None:
                self.write("Message not sent.")

    def _report_toggle(self, label: str, state: Optional[bool]) -> None:
        if state is None:
            self.write(f"{label} is not available.")
        else:
            self.write(f"{label} {'on' if state else 'off'}.")

    def _render_chat(self, lines: List[ChatLine]) -> None:
        # polling replaces the whole history; only print what is new
        if len(lines) < self._shown:
            self._shown = 0
        for line in lines[self._shown:]:
            self.write(format_chat_line(line))
        self._shown = len(lines)

    def _render_state(self, state: NegotiationState) -> None:
        message = STATE_MESSAGES.get(state)
        if message:
            self.write(message)

    def _render_outcome(self, outcome: SessionOutcome) -> None:
        self.write(outcome.message)
