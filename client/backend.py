"""HTTP client for the appointment REST backend (status, end-call, message store)."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from shared.protocol import ChatMessage

from .errors import ChatTransportError

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """The appointment backend returned an error or could not be reached."""


class BackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_appointment_status(self, appointment_id: str) -> str:
        payload = await self._request_json("GET", f"/appointments/{appointment_id}/status")
        if not isinstance(payload, dict) or "status" not in payload:
            raise BackendError("Status response has no status field")
        return str(payload["status"])

    async def end_call(self, appointment_id: str) -> Dict[str, Any]:
        payload = await self._request_json("PUT", f"/appointments/{appointment_id}/end-call")
        return payload if isinstance(payload, dict) else {}

    async def list_messages(self, appointment_id: str) -> List[ChatMessage]:
        try:
            payload = await self._request_json("GET", f"/appointments/{appointment_id}/messages")
        except BackendError as exc:
            raise ChatTransportError(str(exc)) from exc
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ChatTransportError("Message list response is not a list")
        return [ChatMessage.from_dict(item) for item in payload if isinstance(item, dict)]

    async def post_message(self, appointment_id: str, sender: str, content: str) -> Dict[str, Any]:
        try:
            payload = await self._request_json(
                "POST",
                f"/appointments/{appointment_id}/messages",
                json={"sender": sender, "content": content},
            )
        except BackendError as exc:
            raise ChatTransportError(str(exc)) from exc
        return payload if isinstance(payload, dict) else {}

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("%s %s%s", method, self._base_url, path)
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise BackendError(f"{method} {path} failed with status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise BackendError(f"{method} {path} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(f"{method} {path} returned invalid JSON") from exc
