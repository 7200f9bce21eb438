# paygate/payments/http.py
from __future__ import annotations
from typing import Any, Dict, Optional

import httpx
import structlog

from paygate.core.errors import ProviderAPIError, ProviderTimeout

logger = structlog.get_logger(__name__)


class ProviderHTTPClient:
    """
    Thin async JSON client shared by the REST-based adapters.

    The underlying `httpx.AsyncClient` is created on first use unless one is
    injected (tests pass a client backed by `httpx.MockTransport`).
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        timeout: float,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            response = await self.client.request(
                method, url, headers=headers, json=json, params=params, timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json() if response.content else {}
        except httpx.TimeoutException as e:
            logger.error(f"{self.provider}_api_timeout", endpoint=endpoint, error=str(e))
            raise ProviderTimeout(self.provider) from e
        except httpx.HTTPStatusError as e:
            logger.error(
                f"{self.provider}_api_error",
                endpoint=endpoint,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise ProviderAPIError(self.provider) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"{self.provider}_api_error", endpoint=endpoint, error=str(e))
            raise ProviderAPIError(self.provider) from e

        if not isinstance(payload, dict):
            logger.error(f"{self.provider}_api_error", endpoint=endpoint, error="non-object response")
            raise ProviderAPIError(self.provider)
        return payload

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
