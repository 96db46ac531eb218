import io

import pytest

from client.chat import ChatLine
from client.console import ConsoleUI
from client.negotiator import NegotiationState
from client.session import SessionOutcome


class DummySession:
    def __init__(self) -> None:
        self.chat_handlers = []
        self.state_handlers = []
        self.ended_handlers = []
        self.sent: list[str] = []
        self.ended = 0
        self.audio = True

    def on_chat(self, handler):
        self.chat_handlers.append(handler)

    def on_negotiation_state(self, handler):
        self.state_handlers.append(handler)

    def on_ended(self, handler):
        self.ended_handlers.append(handler)

    def toggle_audio(self):
        self.audio = not self.audio
        return self.audio

    def toggle_video(self):
        return None

    async def end(self) -> None:
        self.ended += 1

    async def send_chat(self, text: str):
        self.sent.append(text)
        return text


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_commands_and_chat_lines() -> None:
    session = DummySession()
    stream = io.StringIO()
    console = ConsoleUI(session, stream=stream)

    await console.handle_command("/mic")
    await console.handle_command("/cam")
    await console.handle_command("hello doctor")
    await console.handle_command("/bogus")
    await console.handle_command("/end")

    output = stream.getvalue()
    assert "Microphone off." in output
    assert "Camera is not available." in output
    assert "Unknown command /bogus" in output
    assert session.sent == ["hello doctor"]
    assert session.ended == 1


def test_chat_view_prints_only_new_lines() -> None:
    session = DummySession()
    stream = io.StringIO()
    ConsoleUI(session, stream=stream)
    render = session.chat_handlers[0]

    first = ChatLine("Doctor", "hi", False, 0.0)
    second = ChatLine("You", "hello", True, 60.0)
    render([first])
    render([first, second])

    lines = stream.getvalue().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("Doctor: hi")
    assert lines[1].endswith("You: hello")


def test_state_and_outcome_messages() -> None:
    session = DummySession()
    stream = io.StringIO()
    ConsoleUI(session, stream=stream)

    session.state_handlers[0](NegotiationState.CONNECTED)
    session.state_handlers[0](NegotiationState.ANSWER_SENT)
    session.ended_handlers[0](SessionOutcome(success=True, message="Call ended successfully", reason="user"))

    assert stream.getvalue().splitlines() == ["Connected.", "Call ended successfully"]
