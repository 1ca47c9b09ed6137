"""
transport.py — outbound message transport (messaging gateway over HTTP).

The worker only depends on the Transport protocol:
    await transport.send(recipient, content, media_url=None) -> SendResult

HttpTransport posts JSON to settings.transport_url:
    {"chatId": "...", "text": "...", "mediaUrl": "..."}  →  {"success": true, "id": "..."}

Failure classification:
  - timeout / connection error / 5xx / 429 / success=false  → TransientDeliveryFailure
  - any other 4xx                                           → PermanentDeliveryFailure
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from funnelbot.config import settings
from funnelbot.errors import PermanentDeliveryFailure, TransientDeliveryFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    message_id: Optional[str]


class Transport(Protocol):
    async def send(
        self, recipient: str, content: str, media_url: Optional[str] = None
    ) -> SendResult: ...


class HttpTransport:
    """Messaging gateway client. Owns its httpx.AsyncClient unless one is injected."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url or settings.transport_url
        api_key = settings.transport_api_key if api_key is None else api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.send_timeout_seconds),
            headers=headers,
        )

    async def send(
        self, recipient: str, content: str, media_url: Optional[str] = None
    ) -> SendResult:
        body = {"chatId": recipient, "text": content}
        if media_url:
            body["mediaUrl"] = media_url
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            raise TransientDeliveryFailure(f"Transport timeout: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise TransientDeliveryFailure(f"Transport unreachable: {exc!r}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryFailure(
                f"Transport HTTP {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise PermanentDeliveryFailure(
                f"Transport rejected message HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientDeliveryFailure("Transport returned non-JSON body") from exc
        if not data.get("success", False):
            raise TransientDeliveryFailure(f"Transport reported failure: {data.get('error')}")

        logger.debug("Transport accepted message id=%s", data.get("id"))
        return SendResult(message_id=data.get("id"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
