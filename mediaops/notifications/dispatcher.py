# mediaops/notifications/dispatcher.py
# Outbound notification requests to the messaging collaborator.
# Fire-and-forget from the orchestrator's side: a failure raises
# DispatchFailed, which the rule engine logs and counts.

import logging
from typing import Any, Dict, Optional

import httpx

from mediaops.config import Settings
from mediaops.errors import DispatchFailed

logger = logging.getLogger("uvicorn.error")


class Messenger:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "Messenger":
        return cls(settings.MESSAGING_API_URL, settings.MESSAGING_API_KEY)

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    async def dispatch(
        self,
        channel: str,
        recipient: str,
        template_id: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self.base_url:
            raise DispatchFailed("messaging collaborator is not configured (MESSAGING_API_URL)")
        body = {
            "channel": channel,
            "recipient": recipient,
            "template_id": template_id,
            "variables": variables or {},
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                r = await client.post("/dispatch", json=body)
        except httpx.HTTPError as e:
            raise DispatchFailed(f"{channel} to {recipient} failed: {e}", channel=channel) from e
        if r.status_code >= 400:
            raise DispatchFailed(
                f"{channel} to {recipient} rejected ({r.status_code}): {r.text[:300]}",
                channel=channel, status=r.status_code,
            )
        logger.info("[DISPATCH] %s -> %s template=%s", channel, recipient, template_id)
