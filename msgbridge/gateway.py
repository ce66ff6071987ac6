"""
Session gateway: the send primitive of the device layer.

The bridge never manages device connections. It hands a chat address and
content to whatever process holds the session and gets back the platform's
message id.
"""

import logging
from typing import Protocol

import httpx

from .errors import DeliveryError, PermanentDeliveryError

logger = logging.getLogger(__name__)


class SessionGateway(Protocol):
    async def send(
        self,
        session_id: str,
        chat_address: str,
        text: str | None,
        attachment_url: str | None = None,
    ) -> str:
        """Send a message, return the remote message id the platform assigned."""
        ...

    async def close(self) -> None:
        ...


class HttpSessionGateway:
    """
    Gateway reached over HTTP.

    POST {base_url}/sessions/{session_id}/messages with
    {"chat": ..., "text": ..., "media_url": ...}; the response must carry
    the platform id as "id". 401/403/404/410 mean the session is gone or
    not ours and are not retried.
    """

    PERMANENT_STATUSES = (401, 403, 404, 410)

    def __init__(self, base_url: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def send(
        self,
        session_id: str,
        chat_address: str,
        text: str | None,
        attachment_url: str | None = None,
    ) -> str:
        data = {"chat": chat_address, "text": text or ""}
        if attachment_url:
            data["media_url"] = attachment_url
        try:
            response = await self._client.post(f"/sessions/{session_id}/messages", json=data)
        except httpx.HTTPError as e:
            raise DeliveryError(f"send to {chat_address} via session {session_id} failed: {e}") from e

        if response.status_code in self.PERMANENT_STATUSES:
            raise PermanentDeliveryError(
                f"session {session_id} refused send to {chat_address}: HTTP {response.status_code}"
            )
        if response.is_error:
            raise DeliveryError(f"session {session_id} send failed: HTTP {response.status_code}")

        try:
            remote_id = response.json().get("id")
        except ValueError as e:
            raise DeliveryError(f"session {session_id} returned a non-JSON send response") from e
        if not remote_id:
            raise DeliveryError(f"session {session_id} did not return a message id")
        return str(remote_id)

    async def close(self) -> None:
        await self._client.aclose()


class UnavailableGateway:
    """Used when no gateway is configured: every send fails and is retried later."""

    async def send(self, session_id: str, chat_address: str, text: str | None, attachment_url: str | None = None) -> str:
        raise DeliveryError("no session gateway configured (set SESSION_GATEWAY_URL)")

    async def close(self) -> None:
        pass
