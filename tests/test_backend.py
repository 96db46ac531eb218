import httpx
import pytest

from client.backend import BackendClient, BackendError
from client.errors import ChatTransportError

from fakes import API_BASE, DummyAppointmentApi


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_status_and_end_call_routes() -> None:
    api = DummyAppointmentApi(status="scheduled")
    client = api.client()

    assert await client.get_appointment_status("42") == "scheduled"
    result = await client.end_call("42")
    assert result == {"status": "completed", "message": "Call ended successfully"}
    assert await client.get_appointment_status("42") == "completed"
    assert api.requests == [
        ("GET", "/api/appointments/42/status"),
        ("PUT", "/api/appointments/42/end-call"),
        ("GET", "/api/appointments/42/status"),
    ]
    await client.aclose()


@pytest.mark.anyio
async def test_status_errors_raise_backend_error() -> None:
    api = DummyAppointmentApi()
    api.status_code = 503
    client = api.client()
    with pytest.raises(BackendError):
        await client.get_appointment_status("42")

    missing = BackendClient(API_BASE, transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    with pytest.raises(BackendError):
        await missing.get_appointment_status("42")


@pytest.mark.anyio
async def test_unreachable_backend_raises_backend_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = BackendClient(API_BASE, transport=httpx.MockTransport(refuse))
    with pytest.raises(BackendError):
        await client.end_call("42")


@pytest.mark.anyio
async def test_message_store_round_trip_and_errors() -> None:
    api = DummyAppointmentApi()
    client = api.client()

    saved = await client.post_message("42", "doctor", "hello")
    assert saved["sender"] == "doctor"
    messages = await client.list_messages("42")
    assert [(m.sender, m.content) for m in messages] == [("doctor", "hello")]

    api.fail_messages = True
    with pytest.raises(ChatTransportError):
        await client.list_messages("42")
    with pytest.raises(ChatTransportError):
        await client.post_message("42", "doctor", "again")
