#==========================================================================================
# mediaops/processing/provider.py
# HDR-merge provider API client. The provider works asynchronously: submit
# returns a provider job id, completion arrives via callback (or poll).
#==========================================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from mediaops.config import Settings
from mediaops.errors import ProviderError

logger = logging.getLogger("uvicorn.error")


@dataclass
class ProviderAccepted:
    provider_job_id: str
    status: str = "queued"


def _json_or_text(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class ProcessingProvider:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        callback_url: str = "",
        preset: str = "real_estate_standard",
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.callback_url = callback_url
        self.preset = preset
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessingProvider":
        return cls(
            settings.PROCESSING_API_URL,
            settings.PROCESSING_API_KEY,
            callback_url=settings.PROCESSING_CALLBACK_URL,
            preset=settings.PROCESSING_PRESET,
            timeout=settings.PROCESSING_HTTP_TIMEOUT,
        )

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.base_url:
            raise ProviderError("processing provider is not configured (PROCESSING_API_URL)")
        try:
            async with self._client() as client:
                r = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {path} failed: {e}") from e
        if r.status_code >= 400:
            raise ProviderError(f"{method} {path} failed ({r.status_code}): {_json_or_text(r)}")
        data = _json_or_text(r)
        if not isinstance(data, dict):
            raise ProviderError(f"{method} {path}: unexpected response body")
        return data

    async def submit(
        self,
        job_id: str,
        assets: List[Dict[str, str]],
        options: Optional[Dict[str, Any]] = None,
    ) -> ProviderAccepted:
        """
        assets: [{"asset_id", "ref"}] in bracket order.
        Our job id travels as metadata so callbacks can be matched even
        before the provider job id has been stored.
        """
        body = {
            "images": [a["ref"] for a in assets],
            "asset_ids": [a["asset_id"] for a in assets],
            "preset": self.preset,
            "options": options or {},
            "webhook_url": self.callback_url or None,
            "metadata": {"job_id": job_id},
        }
        data = await self._request("POST", "/jobs", json=body)
        pjid = data.get("jobId") or data.get("job_id") or data.get("id")
        if not pjid:
            raise ProviderError(f"provider accepted job {job_id} without returning a job id")
        logger.info("[PROVIDER] job=%s accepted as %s", job_id, pjid)
        return ProviderAccepted(provider_job_id=str(pjid), status=str(data.get("status") or "queued"))

    async def fetch_status(self, provider_job_id: str) -> Dict[str, Any]:
        """
        Normalized to {status, stage, percent, results, error}. status is one of
        queued/processing/completed/failed.
        """
        data = await self._request("GET", f"/jobs/{provider_job_id}")
        status = str(data.get("status") or "").lower()
        if status in ("pending", "queued"):
            status = "queued"
        elif status in ("running", "processing"):
            status = "processing"
        return {
            "status": status,
            "stage": data.get("stage"),
            "percent": data.get("percent") if data.get("percent") is not None else data.get("progress", 0),
            "results": data.get("results") or [],
            "error": data.get("error") or data.get("error_message"),
            "metrics": data.get("metrics") or {},
        }
