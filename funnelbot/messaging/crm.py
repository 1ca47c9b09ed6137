"""
crm.py — best-effort lead upsert into the CRM board.

upsert_lead() returns the CRM item id, or None when the CRM is not configured.
Callers treat every failure as non-fatal: log it and keep the funnel moving.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from funnelbot.config import settings

logger = logging.getLogger(__name__)


class CRMClient:
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = settings.crm_url if url is None else url
        self.api_key = settings.crm_api_key if api_key is None else api_key
        self.timeout = timeout or settings.crm_timeout_seconds
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def upsert_lead(self, data: dict) -> Optional[str]:
        """
        Create or update a lead. Raises httpx.HTTPError on transport or HTTP
        errors and ValueError on a body that is not a JSON object; returns
        None if the CRM is disabled.
        """
        if not self.enabled:
            return None
        headers = {"Authorization": self.api_key} if self.api_key else {}
        if self._client is not None:
            response = await self._client.post(self.url, json=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=data, headers=headers)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"CRM response is not an object: {type(body).__name__}")
        lead_id = body.get("id")
        return str(lead_id) if lead_id is not None else None
