"""
Shared HTTP plumbing for provider REST clients.

Raw ``httpx`` calls against the Google and HubSpot REST APIs, without the
heavy vendor SDKs. Errors are classified here so that callers only ever
see the adapter taxonomy:

  401 / 403           → AuthExpiredError (never retried)
  429 / 5xx / network → retried once, then TransientAdapterError
  other 4xx           → AdapterError
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from app.agent.errors import AdapterError, AuthExpiredError, TransientAdapterError
from app.config import settings

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
RETRY_BACKOFF_SECONDS = 1.0


class ProviderClient:
    """Base class for an authenticated provider REST client."""

    provider = "provider"
    base_url = ""

    def __init__(
        self,
        access_token: Optional[str],
        http: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.access_token = access_token
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = settings.adapter_max_retries if max_retries is None else max_retries
        self._http = http
        self._owns_http = http is None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._http

    async def close(self):
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise AuthExpiredError(self.provider, f"{self.provider} is not connected")

        client = await self._client()
        headers = {"Authorization": f"Bearer {self.access_token}"}
        attempt = 0
        while True:
            try:
                resp = await client.request(method, path, params=params, json=json, headers=headers)
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.warning(f"[ADAPTER] {self.provider} {method} {path} network error, retrying: {e}")
                    await asyncio.sleep(RETRY_BACKOFF_SECONDS)
                    continue
                raise TransientAdapterError(f"{self.provider} request failed: {e}", provider=self.provider)

            if resp.status_code in (401, 403):
                raise AuthExpiredError(self.provider, status_code=resp.status_code)

            if resp.status_code in RETRY_STATUS_CODES:
                if attempt < self.max_retries:
                    attempt += 1
                    logger.warning(
                        f"[ADAPTER] {self.provider} {method} {path} returned {resp.status_code}, retrying"
                    )
                    await asyncio.sleep(RETRY_BACKOFF_SECONDS)
                    continue
                raise TransientAdapterError(
                    f"{self.provider} returned {resp.status_code}",
                    provider=self.provider,
                    status_code=resp.status_code,
                )

            if resp.status_code >= 400:
                raise AdapterError(
                    f"{self.provider} rejected the request ({resp.status_code}): {resp.text[:300]}",
                    provider=self.provider,
                    status_code=resp.status_code,
                )

            if not resp.content:
                return {}
            return resp.json()
